"""
Session management.
Live sessions are kept by InMemorySessionManager; RedisSessionSnapshotStore
persists their snapshots.
"""

from .redis_session_manager import RedisSessionSnapshotStore
from ..core.session_manager import InMemorySessionManager

__all__ = ["RedisSessionSnapshotStore", "InMemorySessionManager"]
