"""ORM models package -- re-exports all models and the Base class."""

from gallery.models.base import Base
from gallery.models.paint import Paint

__all__ = [
    "Base",
    "Paint",
]
