"""Share attached Android devices between independent processes."""

__version__ = "0.3.0"
