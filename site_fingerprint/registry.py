"""Mapping between integer labels and human-readable site names."""

import logging
import os
from typing import Dict, List, Optional, Sequence

import pandas as pd

from .errors import MalformedInputError

LABEL_MAP_COLUMNS = ["label", "site_name"]


def site_name_from_domain(domain: str) -> str:
    """www.baidu.com -> baidu. Domains without a dot are returned unchanged."""
    parts = domain.strip().split('.')
    if len(parts) >= 2:
        return parts[-2]
    logging.warning(f"Invalid domain format: {domain}")
    return domain.strip()


class SiteRegistry:
    """
    Ordered list of site names; a site's label is its position in the list.

    Only used for reporting, so unknown labels are rendered as 'label_<n>'
    instead of raising.
    """

    def __init__(self, names: Sequence[str]):
        self._names: List[str] = list(names)
        self._labels: Dict[str, int] = {}
        for label, name in enumerate(self._names):
            if name in self._labels:
                raise MalformedInputError(f"Duplicate site name '{name}' in registry")
            self._labels[name] = label

    @property
    def names(self) -> List[str]:
        return list(self._names)

    def __len__(self) -> int:
        return len(self._names)

    def name_for(self, label: int) -> str:
        if 0 <= label < len(self._names):
            return self._names[label]
        return f"label_{label}"

    def label_for(self, name: str) -> Optional[int]:
        return self._labels.get(name)

    @classmethod
    def from_domain_list(cls, path: str) -> 'SiteRegistry':
        """One domain per line; blank lines are ignored and repeated sites collapse."""
        names: List[str] = []
        with open(path, 'r', encoding='utf-8') as f:
            for line in f:
                if not line.strip():
                    continue
                name = site_name_from_domain(line)
                if name not in names:
                    names.append(name)
        logging.info(f"Initialized {len(names)} site labels from {path}: {names}")
        return cls(names)

    @classmethod
    def from_label_map(cls, path: str) -> 'SiteRegistry':
        """
        Reads a `label,site_name` CSV. Labels missing from the file are filled
        with 'label_<n>' placeholders so positions stay aligned.

        Raises:
            FileNotFoundError: If path does not exist.
            MalformedInputError: If the file is empty, lacks the label or
                                 site_name column, or holds a non-integer label.
        """
        try:
            df = pd.read_csv(path)
        except pd.errors.EmptyDataError as e:
            raise MalformedInputError(f"Label map {path} is empty") from e
        missing = [column for column in LABEL_MAP_COLUMNS if column not in df.columns]
        if missing:
            raise MalformedInputError(f"Label map {path} is missing columns {missing}")

        try:
            by_label = {int(row['label']): str(row['site_name']) for _, row in df.iterrows()}
        except ValueError as e:
            raise MalformedInputError(f"Label map {path} has a non-integer label: {e}") from e
        if not by_label:
            return cls([])
        names = [by_label.get(label, f"label_{label}") for label in range(max(by_label) + 1)]
        return cls(names)

    def to_label_map(self, path: str):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        df = pd.DataFrame({'label': range(len(self._names)), 'site_name': self._names},
                          columns=LABEL_MAP_COLUMNS)
        df.to_csv(path, index=False)
        logging.info(f"Label map saved to {path}")
