"""Campus transport reassignment service."""

__version__ = "0.1.0"
