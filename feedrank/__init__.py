"""Feed ranking and engagement synchronization."""

__version__ = "0.1.0"
