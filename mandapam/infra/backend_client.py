"""
Async client for the Mandapam REST backend.

Transport failures become ``NetworkError`` and HTTP error responses become
``ServerRejection`` carrying the backend message verbatim, so callers can tell
"maybe processed" apart from "rejected".
"""
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from mandapam.config import AppConfig
from mandapam.core.errors import NetworkError, ServerRejection
from mandapam.core.normalizers import mask_phone

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return f"Request failed with status {response.status_code}"


def _unwrap(body: Any) -> Any:
    """Some endpoints answer ``{success, data}``; others answer the object itself."""
    if isinstance(body, dict) and "data" in body and isinstance(body["data"], (dict, list)):
        return body["data"]
    return body


class MandapamApiClient:
    """
    Client for the backend endpoints used by the registration portal.
    """

    def __init__(self, config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            config: Application config (base URL, token, timeout)
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self._config = config
        headers = {"Accept": "application/json"}
        if config.backend_api_token:
            headers["Authorization"] = f"Bearer {config.backend_api_token}"
        self._client = httpx.AsyncClient(
            base_url=config.backend_api_url.rstrip("/"),
            timeout=config.api_timeout_ms / 1000.0,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        start_time = time.time()
        try:
            response = await self._client.request(method, path, params=params, json=json, files=files)
        except httpx.TimeoutException as e:
            logger.warning(f"Backend timeout: method={method}, path={path}, error={e}")
            raise NetworkError("The server took too long to respond", cause=e) from e
        except httpx.TransportError as e:
            logger.warning(f"Backend unreachable: method={method}, path={path}, error={type(e).__name__}: {e}")
            raise NetworkError("Could not reach the server", cause=e) from e

        duration_ms = int((time.time() - start_time) * 1000)
        if response.status_code >= 400:
            message = _error_message(response)
            logger.info(
                f"Backend rejected request: method={method}, path={path}, "
                f"status={response.status_code}, duration_ms={duration_ms}, message={message}"
            )
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            raise ServerRejection(
                response.status_code,
                message,
                payload if isinstance(payload, dict) else {},
            )

        logger.debug(f"Backend call ok: method={method}, path={path}, duration_ms={duration_ms}")
        return response

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        if not response.content:
            return {}
        try:
            return _unwrap(response.json())
        except ValueError as e:
            raise ServerRejection(response.status_code, "Unexpected response from server") from e

    # Events and registration

    async def get_event(self, event_id: int) -> Dict[str, Any]:
        data = await self._json("GET", f"/events/{event_id}")
        return data.get("event", data) if isinstance(data, dict) else {}

    async def get_registration_status(self, event_id: int, phone: str) -> Dict[str, Any]:
        logger.debug(f"Registration status lookup: event_id={event_id}, phone={mask_phone(phone)}")
        return await self._json("GET", f"/events/{event_id}/registration-status", params={"phone": phone})

    async def initiate_registration(self, event_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json("POST", f"/events/{event_id}/register", json=payload)

    async def confirm_payment(self, event_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json("POST", f"/events/{event_id}/confirm-payment", json=payload)

    async def create_manual_registration(self, event_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json("POST", f"/events/{event_id}/registrations/manual", json=payload)

    async def upload_profile_image(self, filename: str, content_type: str, data: bytes) -> str:
        body = await self._json(
            "POST",
            "/upload/profile-image",
            files={"image": (filename, data, content_type)},
        )
        url = None
        if isinstance(body, dict):
            url = body.get("url") or body.get("imageURL") or body.get("imageUrl") or body.get("filename")
        if not url:
            raise ServerRejection(200, "Upload succeeded but no image URL was returned")
        return url

    # Pass delivery

    async def download_registration_pdf(self, event_id: int, registration_id: int) -> bytes:
        response = await self._request("GET", f"/events/{event_id}/registrations/{registration_id}/pdf")
        return response.content

    async def send_registration_whatsapp(self, event_id: int, registration_id: int) -> Dict[str, Any]:
        return await self._json("POST", f"/events/{event_id}/registrations/{registration_id}/send-whatsapp")

    # Check-in and admin

    async def check_in(self, qr_token: str) -> Dict[str, Any]:
        return await self._json("POST", "/events/checkin", json={"qrToken": qr_token})

    async def list_registrations(self, event_id: int) -> List[Dict[str, Any]]:
        data = await self._json("GET", f"/events/{event_id}/registrations")
        if isinstance(data, dict):
            data = data.get("registrations", [])
        return data if isinstance(data, list) else []

    async def get_registration(self, event_id: int, registration_id: int) -> Dict[str, Any]:
        data = await self._json("GET", f"/events/{event_id}/registrations/{registration_id}")
        return data.get("registration", data) if isinstance(data, dict) else {}

    async def cancel_registration(self, event_id: int, registration_id: int) -> Dict[str, Any]:
        return await self._json("PUT", f"/events/{event_id}/registrations/{registration_id}/cancel")

    async def get_member(self, member_id: int) -> Dict[str, Any]:
        data = await self._json("GET", f"/members/{member_id}")
        return data.get("member", data) if isinstance(data, dict) else {}

    async def list_associations(self, city: str) -> List[Dict[str, Any]]:
        data = await self._json("GET", "/associations", params={"city": city})
        if isinstance(data, dict):
            data = data.get("associations", [])
        return data if isinstance(data, list) else []

    # Exhibitors

    async def list_exhibitors(self, event_id: int) -> List[Dict[str, Any]]:
        data = await self._json("GET", f"/events/{event_id}/exhibitors")
        if isinstance(data, dict):
            data = data.get("exhibitors", [])
        return data if isinstance(data, list) else []

    async def create_exhibitor(self, event_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._json("POST", f"/events/{event_id}/exhibitors", json=payload)
        return data.get("exhibitor", data) if isinstance(data, dict) else {}

    async def update_exhibitor(self, event_id: int, exhibitor_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._json("PUT", f"/events/{event_id}/exhibitors/{exhibitor_id}", json=payload)
        return data.get("exhibitor", data) if isinstance(data, dict) else {}

    async def delete_exhibitor(self, event_id: int, exhibitor_id: int) -> None:
        await self._request("DELETE", f"/events/{event_id}/exhibitors/{exhibitor_id}")
