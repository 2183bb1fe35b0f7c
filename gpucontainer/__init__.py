"""Device selection, requirement checks, cgroup device rules, CUDA compat filtering and CLI parsing for GPU containers."""

__version__ = "1.0.0"
__all__ = ["__version__"]