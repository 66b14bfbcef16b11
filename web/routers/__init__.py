"""HTTP routers mounted by ``web.main``."""

from . import generation, health

__all__ = ["generation", "health"]
