import asyncio
import logging
from typing import List, Optional

from mandapam.core.errors import RegistrationError
from mandapam.core.models import Association
from mandapam.core.retry import Sleep

logger = logging.getLogger(__name__)

PLACEHOLDER_ENTER_CITY = "Enter city to view associations (optional)"
PLACEHOLDER_LOADING = "Loading associations..."
PLACEHOLDER_NONE_FOUND = "No associations found for this city"
PLACEHOLDER_SELECT = "Select association (optional)"

MIN_CITY_LENGTH = 2


class AssociationLookupClient:
    """
    Fetches candidate associations for the typed city, debounced.

    A city shorter than two characters clears the candidates; the caller
    must then reset the selected association.
    """

    def __init__(self, api, debounce_ms: int = 300, sleep: Sleep = asyncio.sleep):
        self._api = api
        self._debounce_s = debounce_ms / 1000.0
        self._sleep = sleep
        self._generation = 0
        self.city: str = ""
        self.candidates: List[Association] = []
        self.loading = False
        self.loaded = False
        self.error: Optional[str] = None

    @property
    def placeholder(self) -> str:
        if self.loading:
            return PLACEHOLDER_LOADING
        if not self.loaded:
            return PLACEHOLDER_ENTER_CITY
        if not self.candidates:
            return PLACEHOLDER_NONE_FOUND
        return PLACEHOLDER_SELECT

    def clear(self) -> None:
        self._generation += 1
        self.candidates = []
        self.loading = False
        self.loaded = False
        self.error = None

    def contains(self, association_id: Optional[int]) -> bool:
        return any(a.id == association_id for a in self.candidates)

    async def on_city_change(self, city: Optional[str]) -> bool:
        """
        React to a city edit.

        Returns:
            True when the candidate list was replaced (or cleared), False when
            this lookup was superseded by a newer edit
        """
        self.city = (city or "").strip()
        if len(self.city) < MIN_CITY_LENGTH:
            self.clear()
            return True

        self._generation += 1
        generation = self._generation
        self.loading = True

        await self._sleep(self._debounce_s)
        if generation != self._generation:
            return False

        try:
            items = await self._api.list_associations(self.city)
            candidates = [Association.from_api(item) for item in items if isinstance(item, dict) and "id" in item]
            error = None
        except RegistrationError as e:
            logger.warning(f"Association lookup failed: city={self.city}, error={type(e).__name__}: {e}")
            candidates = []
            error = "Failed to load associations"

        if generation != self._generation:
            return False

        self.candidates = candidates
        self.error = error
        self.loading = False
        self.loaded = True
        logger.debug(f"Associations loaded: city={self.city}, count={len(candidates)}")
        return True

    def to_dict(self) -> dict:
        return {
            "city": self.city,
            "loading": self.loading,
            "items": [a.to_dict() for a in self.candidates],
            "placeholder": self.placeholder,
            "error": self.error,
        }
