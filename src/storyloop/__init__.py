"""Drive a CLI coding agent through story workflows."""

__version__ = "0.4.0"
