import pytest

from site_fingerprint.errors import MalformedInputError
from site_fingerprint.registry import SiteRegistry, site_name_from_domain


@pytest.mark.parametrize("domain, expected", [
    ("www.baidu.com", "baidu"),
    ("bing.com\n", "bing"),
    ("news.bbc.co.uk", "co"),
    ("localhost", "localhost"),
])
def test_site_name_from_domain(domain, expected):
    assert site_name_from_domain(domain) == expected


def test_labels_follow_list_order():
    registry = SiteRegistry(["baidu", "bing", "github"])

    assert len(registry) == 3
    assert registry.label_for("bing") == 1
    assert registry.label_for("unknown") is None
    assert registry.name_for(2) == "github"
    assert registry.name_for(5) == "label_5"


def test_duplicate_names_raise():
    with pytest.raises(MalformedInputError):
        SiteRegistry(["baidu", "baidu"])


def test_from_domain_list_collapses_repeats(tmp_path):
    path = tmp_path / "domains.txt"
    path.write_text("www.baidu.com\n\nwww.bing.com\nbaidu.com\nwww.github.com\n")

    registry = SiteRegistry.from_domain_list(str(path))

    assert registry.names == ["baidu", "bing", "github"]


def test_label_map_round_trip(tmp_path):
    path = tmp_path / "maps" / "site_labels.csv"

    SiteRegistry(["baidu", "bing"]).to_label_map(str(path))

    assert SiteRegistry.from_label_map(str(path)).names == ["baidu", "bing"]


def test_label_map_gaps_are_filled(tmp_path):
    path = tmp_path / "site_labels.csv"
    path.write_text("label,site_name\n0,baidu\n2,github\n")

    assert SiteRegistry.from_label_map(str(path)).names == ["baidu", "label_1", "github"]


def test_label_map_without_required_columns_raises(tmp_path):
    path = tmp_path / "site_labels.csv"
    path.write_text("id,name\n0,baidu\n")

    with pytest.raises(MalformedInputError):
        SiteRegistry.from_label_map(str(path))


@pytest.mark.parametrize("content", [
    "",
    "label,site_name\nfirst,baidu\n",
    "label,site_name\n0,baidu\n1,baidu\n",
])
def test_unusable_label_map_raises(tmp_path, content):
    path = tmp_path / "site_labels.csv"
    path.write_text(content)

    with pytest.raises(MalformedInputError):
        SiteRegistry.from_label_map(str(path))
