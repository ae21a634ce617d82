"""CasiListo multi-device shopping list synchronization."""

__version__ = "1.0.0"
