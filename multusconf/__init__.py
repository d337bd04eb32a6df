"""Multi-network CNI configuration loading, validation and runtime config construction."""

__version__ = "0.1.0"
__all__ = ["types", "conf", "runtime"]