"""clipgrade: AI video enhancement by frame groups and propagated color transforms."""

__version__ = "0.1.0"
