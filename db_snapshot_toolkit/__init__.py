"""Clone Oracle databases from ASM storage snapshots."""

__version__ = "0.1.0"
