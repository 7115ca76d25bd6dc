"""Voice-activated multi-track recorder with object-storage upload."""

__version__ = "0.1.0"
