import logging
import time
import uuid
from typing import Dict, List, Optional

from mandapam.core.registration_session import EventRegistrationSession

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return uuid.uuid4().hex


class InMemorySessionManager:
    """
    Live registration sessions, kept in memory.

    Sessions hold asyncio tasks and open gateway channels, so they cannot be
    serialized; only their snapshots go to Redis.
    """

    def __init__(self, max_idle_seconds: int = 3600) -> None:
        self._sessions: Dict[str, EventRegistrationSession] = {}
        self._max_idle_seconds = max_idle_seconds

    def add(self, session: EventRegistrationSession) -> None:
        self._sessions[session.session_id] = session
        logger.debug(f"New registration session: session_id={session.session_id}, event_id={session.event.id}")

    def get(self, session_id: str) -> Optional[EventRegistrationSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def remove(self, session_id: str) -> Optional[EventRegistrationSession]:
        return self._sessions.pop(session_id, None)

    def expired(self, now: Optional[float] = None) -> List[EventRegistrationSession]:
        """
        Detach and return sessions idle for longer than the limit.

        Sessions with a backend call or status poll running are kept regardless;
        an abandoned checkout expires like any idle session.
        """
        now = now if now is not None else time.time()
        stale = [
            s for s in self._sessions.values()
            if now - s.last_activity > self._max_idle_seconds and not s.orchestrator.in_flight
        ]
        for session in stale:
            self._sessions.pop(session.session_id, None)
        if stale:
            logger.info(f"Expired idle registration sessions: count={len(stale)}")
        return stale

    def __len__(self) -> int:
        return len(self._sessions)
