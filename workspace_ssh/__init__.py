"""Remote workspace SSH connection resolution."""

__version__ = "0.1.0"
