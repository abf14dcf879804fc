"""UDP <-> pub/sub topic bridge."""

__version__ = "0.1.0"
