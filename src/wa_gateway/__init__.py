"""Session gateway that keeps one messaging account connected, paired and tracked."""

__version__ = "0.1.0"
