"""Durable entities: keyed state mutated by a single serialized writer."""

from .dispatcher import EntityStore
from .models import DurableEntity, EntityId, EntityOperation, EntityRecord
from .store import EntityRecordStore, FileEntityRecordStore

__all__ = [
    "DurableEntity",
    "EntityId",
    "EntityOperation",
    "EntityRecord",
    "EntityRecordStore",
    "EntityStore",
    "FileEntityRecordStore",
]
