"""renderflow: crash-safe video render job engine."""

__version__ = "1.0.0"
