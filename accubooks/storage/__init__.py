"""Persistence adapters."""
from .repository import Repository, InMemoryRepository, SqlAlchemyRepository

__all__ = ["Repository", "InMemoryRepository", "SqlAlchemyRepository"]
