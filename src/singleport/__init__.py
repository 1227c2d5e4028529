"""singleport - HTTP status and tunnel traffic on one public port."""

__version__ = "0.1.0"
