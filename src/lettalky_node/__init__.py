"""LetTalky node — proximity-based peer registry and discovery server."""

__version__ = "0.1.0"
