"""Asset authorization registry and reconciling access cache."""

__version__ = "1.0.0"
