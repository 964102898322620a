"""Relation persistence."""

from .migrate import ensure_db
from .relations import RelationNotFoundError, RelationStore

__all__ = ["RelationNotFoundError", "RelationStore", "ensure_db"]
