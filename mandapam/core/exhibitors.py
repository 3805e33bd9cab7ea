import logging
from typing import Any, Dict, List

from mandapam.core.errors import ValidationError
from mandapam.core.models import Exhibitor, ExhibitorCategory
from mandapam.core.normalizers import clean_text, normalize_phone

logger = logging.getLogger(__name__)


def validate_exhibitor(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check an exhibitor form and build the backend payload.

    Raises:
        ValidationError: name missing, unknown category or bad phone
    """
    errors: Dict[str, str] = {}

    name = clean_text(data.get("name"))
    if not name:
        errors["name"] = "Name is required"

    category = clean_text(data.get("businessCategory")) or ExhibitorCategory.OTHER.value
    if category not in {c.value for c in ExhibitorCategory}:
        errors["businessCategory"] = "Select a valid business category"

    phone = clean_text(data.get("phone"))
    if phone is not None:
        phone = normalize_phone(phone)
        if phone is None:
            errors["phone"] = "Phone must be exactly 10 digits"

    if errors:
        raise ValidationError(errors)

    return {
        "name": name,
        "businessCategory": category,
        "phone": phone,
        "description": clean_text(data.get("description")),
        "logo": clean_text(data.get("logo")),
    }


class ExhibitorDirectory:
    """Exhibitor listing of an event. Plain CRUD over the backend."""

    def __init__(self, api):
        self._api = api

    async def list(self, event_id: int) -> List[Exhibitor]:
        items = await self._api.list_exhibitors(event_id)
        return [Exhibitor.from_api(item) for item in items if isinstance(item, dict)]

    async def create(self, event_id: int, data: Dict[str, Any]) -> Exhibitor:
        payload = validate_exhibitor(data)
        created = await self._api.create_exhibitor(event_id, payload)
        logger.info(f"Exhibitor added: event_id={event_id}, name={payload['name']}")
        return Exhibitor.from_api({**payload, "eventId": event_id, **(created or {})})

    async def update(self, event_id: int, exhibitor_id: int, data: Dict[str, Any]) -> Exhibitor:
        payload = validate_exhibitor(data)
        updated = await self._api.update_exhibitor(event_id, exhibitor_id, payload)
        return Exhibitor.from_api({**payload, "id": exhibitor_id, "eventId": event_id, **(updated or {})})

    async def delete(self, event_id: int, exhibitor_id: int) -> None:
        await self._api.delete_exhibitor(event_id, exhibitor_id)
        logger.info(f"Exhibitor removed: event_id={event_id}, exhibitor_id={exhibitor_id}")
