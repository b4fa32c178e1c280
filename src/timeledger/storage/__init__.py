"""Local persistence for connections and events."""

from timeledger.storage.base import ConnectionRepository, EventRepository
from timeledger.storage.connections import PgConnectionRepository
from timeledger.storage.events import PgEventRepository
from timeledger.storage.schema import ensure_schema

__all__ = [
    "ConnectionRepository",
    "EventRepository",
    "PgConnectionRepository",
    "PgEventRepository",
    "ensure_schema",
]
