"""Website fingerprinting of encrypted sessions from packet size and direction metadata."""

__version__ = "0.1.0"
