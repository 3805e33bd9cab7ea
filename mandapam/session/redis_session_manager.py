"""
Registration session snapshots stored in Redis.

Live sessions stay in memory (they own asyncio tasks); Redis keeps a JSON
snapshot of each session view with a TTL so a confirmed or failed attempt can
still be looked up after a portal restart.
"""
import logging
import json
from typing import Any, Dict, Optional
from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

KEY_PREFIX = "registration-session"


def _strip_inline_images(view: Dict[str, Any]) -> Dict[str, Any]:
    """Drop base64 data URLs (photo previews); they can be megabytes each."""
    snapshot = json.loads(json.dumps(view))
    photo = snapshot.get("photo") or {}
    photo["previewDataUrl"] = None
    registration = snapshot.get("registration") or {}
    if str(registration.get("photo") or "").startswith("data:"):
        registration["photo"] = None
    return snapshot


class RedisSessionSnapshotStore:
    """
    Stores each session view under ``registration-session:{session_id}``
    with a configurable TTL.
    """

    def __init__(
        self,
        redis_url: str = "",
        session_ttl_seconds: int = 86400,
        redis_client: Optional[Redis] = None,
    ) -> None:
        """
        Args:
            redis_url: Redis connection URL (e.g. redis://localhost:6379/0)
            session_ttl_seconds: Snapshot TTL in seconds
            redis_client: Ready client (tests pass a fake)
        """
        self._redis = redis_client if redis_client is not None else Redis.from_url(redis_url, decode_responses=False)
        self._session_ttl_seconds = session_ttl_seconds

        if redis_client is None:
            try:
                self._redis.ping()
                logger.info(f"RedisSessionSnapshotStore ready: redis_url={redis_url}, ttl={session_ttl_seconds}s")
            except RedisError as e:
                logger.error(f"Could not connect to Redis: {e}")
                raise

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{KEY_PREFIX}:{session_id}"

    def save_snapshot(self, session_id: str, view: Dict[str, Any]) -> None:
        """
        Save a session view with TTL. Redis errors are logged, never raised:
        persistence must not break the registration flow.
        """
        try:
            data = json.dumps(_strip_inline_images(view), ensure_ascii=False).encode("utf-8")
            self._redis.setex(self._key(session_id), self._session_ttl_seconds, data)
            logger.debug(
                f"Session snapshot saved: session_id={session_id}, phase={view.get('phase')}, "
                f"ttl={self._session_ttl_seconds}s"
            )
        except RedisError as e:
            logger.error(f"Error saving session snapshot: session_id={session_id}, error={e}")

    def load_snapshot(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = self._redis.get(self._key(session_id))
        except RedisError as e:
            logger.error(f"Error loading session snapshot: session_id={session_id}, error={e}")
            return None
        if not data:
            return None
        return json.loads(data.decode("utf-8") if isinstance(data, bytes) else data)

    def clear_snapshot(self, session_id: str) -> None:
        try:
            self._redis.delete(self._key(session_id))
            logger.debug(f"Session snapshot removed: session_id={session_id}")
        except RedisError as e:
            logger.error(f"Error removing session snapshot: session_id={session_id}, error={e}")
