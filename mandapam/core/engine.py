import asyncio
import logging
from typing import Any, Dict, Optional

from ..config import AppConfig
from ..infra.backend_client import MandapamApiClient
from ..session.redis_session_manager import RedisSessionSnapshotStore
from .checkin import CheckInController, RegistrationBoard
from .errors import ServerRejection
from .exhibitors import ExhibitorDirectory
from .models import Event
from .pass_delivery import PassDeliveryCoordinator
from .registration_session import EventRegistrationSession, SessionMode
from .retry import Sleep
from .session_manager import InMemorySessionManager, new_session_id
from .status_probe import RegistrationStatusProbe

logger = logging.getLogger(__name__)


class PortalEngine:
    """
    Core of the registration portal.

    - Creates and keeps the visitors' registration sessions
    - Persists session snapshots (Redis when configured)
    - Exposes the staff side: check-in, registrations board, pass actions, exhibitors
    - Returns plain objects/dicts, easy to use from the HTTP API and from tests
    """

    def __init__(self, config: AppConfig, api=None, snapshots=None, sleep: Sleep = asyncio.sleep) -> None:
        self._config = config
        self._sleep = sleep
        self.api = api if api is not None else MandapamApiClient(config)

        # Snapshot store: Redis if configured, otherwise none
        if snapshots is not None:
            self._snapshots = snapshots
        elif config.redis_url and config.redis_url.strip():
            try:
                self._snapshots = RedisSessionSnapshotStore(
                    redis_url=config.redis_url,
                    session_ttl_seconds=config.session_ttl_seconds,
                )
                logger.info("Session snapshots stored in Redis")
            except Exception as e:
                logger.error(f"Error initializing RedisSessionSnapshotStore: {e}, snapshots disabled")
                self._snapshots = None
        else:
            self._snapshots = None
            logger.info("Session snapshots disabled (REDIS_URL not configured)")

        self._sessions = InMemorySessionManager(max_idle_seconds=config.session_max_idle_seconds)
        self.checkin = CheckInController(self.api)
        self.board = RegistrationBoard(self.api, RegistrationStatusProbe(self.api, sleep=sleep))
        self.passes = PassDeliveryCoordinator(self.api)
        self.exhibitors = ExhibitorDirectory(self.api)

        logger.info(
            f"PortalEngine initialized: backend={config.backend_api_url}, env={config.env}, "
            f"poll_attempts={config.confirm_poll_attempts}, poll_interval_ms={config.confirm_poll_interval_ms}"
        )

    async def get_event(self, event_id: int) -> Event:
        data = await self.api.get_event(event_id)
        if not data or "id" not in data:
            raise ServerRejection(404, "Event not found")
        return Event.from_api(data)

    def _persist(self, session: EventRegistrationSession) -> None:
        if self._snapshots is not None:
            self._snapshots.save_snapshot(session.session_id, session.to_dict())

    async def start_session(self, event_id: int, mode: SessionMode = SessionMode.PUBLIC) -> EventRegistrationSession:
        """
        Open a registration session for an event.

        Expired idle sessions are closed on the way.
        """
        for stale in self._sessions.expired():
            await stale.close()

        event = await self.get_event(event_id)
        session = EventRegistrationSession(
            session_id=new_session_id(),
            event=event,
            mode=mode,
            api=self.api,
            config=self._config,
            sleep=self._sleep,
            on_change=self._persist,
        )
        self._sessions.add(session)
        self._persist(session)
        logger.info(
            f"Registration session started: session_id={session.session_id}, event_id={event_id}, "
            f"mode={mode.value}, free={event.is_free}"
        )
        return session

    def get_session(self, session_id: str) -> Optional[EventRegistrationSession]:
        return self._sessions.get(session_id)

    def get_snapshot(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Last persisted view of a session that is no longer live."""
        if self._snapshots is None:
            return None
        return self._snapshots.load_snapshot(session_id)

    def save(self, session: EventRegistrationSession) -> None:
        self._persist(session)

    async def close(self) -> None:
        aclose = getattr(self.api, "aclose", None)
        if aclose is not None:
            await aclose()
