"""Provider adapters."""

from .http import HttpJsonProvider

__all__ = ["HttpJsonProvider"]
