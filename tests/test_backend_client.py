import asyncio
import json

import httpx
import pytest

from mandapam.config import AppConfig
from mandapam.core.errors import NetworkError, ServerRejection
from mandapam.infra.backend_client import MandapamApiClient

CONFIG = AppConfig(backend_api_url="http://backend.test/api", backend_api_token="secret-token")


def run_with(handler, call):
    async def scenario():
        client = MandapamApiClient(CONFIG, transport=httpx.MockTransport(handler))
        try:
            return await call(client)
        finally:
            await client.aclose()

    return asyncio.run(scenario())


# Purpose: Verify connection failures become NetworkError.
def test_connect_error_is_network_error() -> None:
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkError):
        run_with(handler, lambda c: c.get_event(7))


# Purpose: Verify timeouts become NetworkError.
def test_timeout_is_network_error() -> None:
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(NetworkError):
        run_with(handler, lambda c: c.confirm_payment(8, {"memberId": 55}))


# Purpose: Verify the backend message is kept verbatim on rejections.
def test_rejection_keeps_backend_message() -> None:
    def handler(request):
        return httpx.Response(400, json={"success": False, "message": "Registration is closed for this event"})

    with pytest.raises(ServerRejection) as exc:
        run_with(handler, lambda c: c.initiate_registration(7, {"name": "Ravi"}))
    assert exc.value.status_code == 400
    assert exc.value.message == "Registration is closed for this event"
    assert exc.value.payload["success"] is False


# Purpose: Verify the request path, auth header, query and data envelope handling.
def test_status_lookup_request() -> None:
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"success": True, "data": {"isRegistered": False}})

    result = run_with(handler, lambda c: c.get_registration_status(7, "9876543210"))

    assert result == {"isRegistered": False}
    assert seen["url"] == "http://backend.test/api/events/7/registration-status?phone=9876543210"
    assert seen["auth"] == "Bearer secret-token"


# Purpose: Verify the photo goes out as multipart and the URL alias is read.
def test_upload_profile_image() -> None:
    seen = {}

    def handler(request):
        seen["content_type"] = request.headers["Content-Type"]
        seen["body"] = request.content
        return httpx.Response(200, json={"imageURL": "https://cdn.example.com/p/1.jpg"})

    url = run_with(handler, lambda c: c.upload_profile_image("me.jpg", "image/jpeg", b"\xff\xd8jpeg"))

    assert url == "https://cdn.example.com/p/1.jpg"
    assert seen["content_type"].startswith("multipart/form-data")
    assert b'name="image"' in seen["body"]


# Purpose: Verify check-in posts the token to the backend.
def test_check_in_payload() -> None:
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["json"] = json.loads(request.content)
        return httpx.Response(200, json={"attendedAt": "2026-01-12T10:05:00Z"})

    result = run_with(handler, lambda c: c.check_in("tok-1"))

    assert seen == {"path": "/api/events/checkin", "json": {"qrToken": "tok-1"}}
    assert result["attendedAt"] == "2026-01-12T10:05:00Z"
