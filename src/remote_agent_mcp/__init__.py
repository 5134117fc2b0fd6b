"""Remote coding-agent tasks on ephemeral compute, tracked through an object store."""

__version__ = "0.1.0"

__all__ = ["__version__"]
