"""Room control gateway: scoped access to per-room OBS switchers."""

__version__ = "0.4.0"
