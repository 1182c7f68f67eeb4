"""Database package for payout core."""
from .repository import InMemoryRepository, Repository

__all__ = ["InMemoryRepository", "Repository"]
