"""Version information for promptcascade."""

__version__ = "0.1.0"
