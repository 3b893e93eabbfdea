"""storymem: long-term memory for role-play conversations."""

__version__ = "0.1.0"
