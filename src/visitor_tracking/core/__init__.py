"""Persistence layer: D1 client, stores and models."""

from .database import D1Database
from .events import EventStore
from .identity import IdentityStore

__all__ = ["D1Database", "EventStore", "IdentityStore"]
