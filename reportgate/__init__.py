"""Access control for shared inspection-report links."""

__version__ = "1.0.0"
