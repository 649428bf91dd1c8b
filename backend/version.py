"""Backend version (exposed via the API)."""
__version__ = "0.1.0"
