import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from fastapi import FastAPI, File, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from ..config import AppConfig
from ..core.checkin import RegistrationFilter, filter_registrations, paginate, registration_metrics
from ..core.engine import PortalEngine
from ..core.errors import (
    CheckInConflict,
    DeliveryError,
    IllegalTransition,
    NetworkError,
    NotFound,
    RegistrationError,
    ServerRejection,
    ValidationError,
)
from ..core.exporters import export_registrations
from ..core.qr import decode_png_data_url, qr_filename, render_qr_png
from ..core.registration_session import EventRegistrationSession, SessionMode
from ..domain.event_info import get_event_info

logger = logging.getLogger(__name__)


class CreateSessionRequest(BaseModel):
    mode: SessionMode = SessionMode.PUBLIC


class PhoneUpdate(BaseModel):
    phone: Optional[str] = None


class CityUpdate(BaseModel):
    city: Optional[str] = None


class StatusCheckRequest(BaseModel):
    phone: Optional[str] = None


class SubmitRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    businessName: Optional[str] = None
    businessType: Optional[str] = None
    city: Optional[str] = None
    associationId: Optional[Union[int, str]] = None
    paymentMethod: Optional[str] = None


class GatewayEventRequest(BaseModel):
    event: str
    payload: Dict[str, Any] = {}


class AttendanceRequest(BaseModel):
    attended: bool


class CheckInRequest(BaseModel):
    qrToken: Optional[str] = None


class ExhibitorRequest(BaseModel):
    name: Optional[str] = None
    businessCategory: Optional[str] = None
    phone: Optional[str] = None
    description: Optional[str] = None
    logo: Optional[str] = None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that gives every request a unique request_id, added to the
    logs and to the response headers.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = uuid4().hex[:16]
        request.state.request_id = request_id

        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Request processed: request_id={request_id}, "
            f"method={request.method}, path={request.url.path}, "
            f"status={response.status_code}, duration_ms={duration_ms:.2f}"
        )
        return response


def require_api_key(config: AppConfig, x_api_key: Optional[str]) -> None:
    """
    Validate the staff API key according to the environment.

    In production (ENV=prod) the key is always required.
    Elsewhere it is only required when PORTAL_API_KEY is configured.
    """
    expected_key = config.portal_api_key or ""

    if config.env == "prod":
        if not x_api_key or x_api_key != expected_key:
            logger.warning("Unauthorized access attempt in PRODUCTION")
            raise HTTPException(status_code=401, detail="Invalid API key")
    else:
        if expected_key and expected_key.strip():
            if x_api_key != expected_key:
                logger.warning("Unauthorized access attempt")
                raise HTTPException(status_code=401, detail="Invalid API key")
        else:
            logger.debug("PORTAL_API_KEY not configured, accepting unauthenticated request (development mode)")


def error_status(error: RegistrationError) -> int:
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, (CheckInConflict, IllegalTransition)):
        return 409
    if isinstance(error, DeliveryError):
        return 502
    if isinstance(error, NetworkError):
        return 503
    if isinstance(error, ServerRejection):
        return error.status_code if 400 <= error.status_code < 500 else 502
    return 400


def error_body(error: RegistrationError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"detail": error.message, "nextAction": error.next_action}
    if isinstance(error, ValidationError):
        body["fieldErrors"] = error.field_errors
    return body


def attachment(content: bytes, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def create_app(config: Optional[AppConfig] = None, engine: Optional[PortalEngine] = None) -> FastAPI:
    """
    Build the FastAPI application and inject its main dependencies (config + engine).
    """
    config = config or AppConfig.load_from_env()
    engine = engine or PortalEngine(config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await engine.close()

    app = FastAPI(
        title="Mandapam Event Registration Portal",
        version="0.1.0",
        description="Event registration, payment confirmation and QR check-in.",
        lifespan=lifespan,
    )
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(RegistrationError)
    async def registration_error_handler(request: Request, exc: RegistrationError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        status = error_status(exc)
        log = logger.warning if status >= 500 else logger.info
        log(
            f"Request failed: request_id={request_id}, path={request.url.path}, "
            f"status={status}, error={type(exc).__name__}: {exc.message}"
        )
        return JSONResponse(status_code=status, content=error_body(exc))

    def get_session(session_id: str) -> EventRegistrationSession:
        session = engine.get_session(session_id)
        if session is None:
            raise NotFound("Registration session not found or expired")
        return session

    @app.get("/health")
    def health_check():
        """
        Health check endpoint for monitoring and container healthchecks.
        """
        redis_ok = True
        if config.redis_url and config.redis_url.strip():
            try:
                from redis import Redis
                Redis.from_url(config.redis_url).ping()
            except Exception as e:
                logger.warning(f"Redis health check failed: {e}")
                redis_ok = False
        return {
            "status": "healthy" if redis_ok else "degraded",
            "redis": "ok" if redis_ok else "error",
            "backend": config.backend_api_url,
        }

    # Public registration

    @app.get("/events/{event_id}")
    async def get_event(event_id: int):
        event = await engine.get_event(event_id)
        return get_event_info(event)

    @app.post("/events/{event_id}/sessions")
    async def create_session(event_id: int, payload: CreateSessionRequest, request: Request):
        request_id = getattr(request.state, "request_id", "unknown")
        session = await engine.start_session(event_id, payload.mode)
        logger.info(
            f"Session created: request_id={request_id}, session_id={session.session_id}, event_id={event_id}"
        )
        return session.to_dict()

    @app.get("/sessions/{session_id}")
    def get_session_view(session_id: str):
        session = engine.get_session(session_id)
        if session is not None:
            return session.to_dict()
        snapshot = engine.get_snapshot(session_id)
        if snapshot is None:
            raise NotFound("Registration session not found or expired")
        snapshot["live"] = False
        return snapshot

    @app.put("/sessions/{session_id}/phone")
    async def update_phone(session_id: str, payload: PhoneUpdate):
        session = get_session(session_id)
        await session.update_phone(payload.phone)
        return session.to_dict()

    @app.post("/sessions/{session_id}/status-check")
    async def status_check(session_id: str, payload: StatusCheckRequest):
        session = get_session(session_id)
        await session.verify_status(payload.phone)
        return session.to_dict()

    @app.put("/sessions/{session_id}/city")
    async def update_city(session_id: str, payload: CityUpdate):
        session = get_session(session_id)
        await session.update_city(payload.city)
        return session.to_dict()

    @app.post("/sessions/{session_id}/photo")
    async def upload_photo(session_id: str, photo: UploadFile = File(...)):
        session = get_session(session_id)
        data = await photo.read()
        session.attach_photo(photo.filename, photo.content_type, data)
        return session.to_dict()

    @app.delete("/sessions/{session_id}/photo")
    def delete_photo(session_id: str):
        session = get_session(session_id)
        session.remove_photo()
        return session.to_dict()

    @app.post("/sessions/{session_id}/submit")
    async def submit(session_id: str, payload: SubmitRequest, request: Request):
        request_id = getattr(request.state, "request_id", "unknown")
        session = get_session(session_id)
        start_time = time.time()
        await session.submit(payload.model_dump())
        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Submission handled: request_id={request_id}, session_id={session_id}, "
            f"phase={session.orchestrator.phase.value}, duration_ms={duration_ms:.2f}"
        )
        return session.to_dict()

    @app.post("/sessions/{session_id}/gateway-events")
    async def gateway_event(session_id: str, payload: GatewayEventRequest, request: Request):
        request_id = getattr(request.state, "request_id", "unknown")
        session = get_session(session_id)
        handled = await session.gateway_event(payload.event, payload.payload)
        logger.info(
            f"Gateway event: request_id={request_id}, session_id={session_id}, "
            f"event={payload.event}, handled={handled}, phase={session.orchestrator.phase.value}"
        )
        view = session.to_dict()
        view["eventHandled"] = handled
        return view

    @app.get("/sessions/{session_id}/pass")
    async def download_session_pass(session_id: str):
        session = get_session(session_id)
        document = await session.download_pass()
        return attachment(document.content, document.media_type, document.filename)

    @app.post("/sessions/{session_id}/pass/send")
    async def resend_session_pass(session_id: str):
        session = get_session(session_id)
        await session.resend_pass()
        return session.to_dict()

    # Staff / admin

    @app.post("/checkin")
    async def checkin(payload: CheckInRequest, x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY")):
        require_api_key(config, x_api_key)
        result = await engine.checkin.check_in(payload.qrToken)
        return result.to_dict()

    @app.get("/admin/events/{event_id}/registrations")
    async def list_registrations(
        event_id: int,
        search: str = "",
        status: str = "all",
        payment: str = "all",
        page: int = Query(default=1, ge=1),
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        registrations = await engine.board.load(event_id)
        filtered = filter_registrations(registrations, RegistrationFilter(search, status, payment))
        result = paginate(filtered, page)
        result["items"] = [r.to_dict() for r in result["items"]]
        result["total"] = len(filtered)
        result["metrics"] = registration_metrics(registrations)
        return result

    @app.get("/admin/events/{event_id}/registrations/export")
    async def export(
        event_id: int,
        format: str = "csv",
        search: str = "",
        status: str = "all",
        payment: str = "all",
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        event = await engine.get_event(event_id)
        registrations = await engine.board.load(event_id)
        filtered = filter_registrations(registrations, RegistrationFilter(search, status, payment))
        exported = export_registrations(filtered, event, format)
        logger.info(f"Registrations exported: event_id={event_id}, format={format}, rows={len(filtered)}")
        return attachment(exported.content, exported.media_type, exported.filename)

    @app.get("/admin/events/{event_id}/registrations/{registration_id}")
    async def registration_detail(
        event_id: int,
        registration_id: int,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        registration = await engine.board.detail(event_id, registration_id)
        return registration.to_dict()

    @app.put("/admin/events/{event_id}/registrations/{registration_id}/attendance")
    async def set_attendance(
        event_id: int,
        registration_id: int,
        payload: AttendanceRequest,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        registration = await engine.board.find(event_id, registration_id)
        updated = await engine.checkin.set_attendance(registration, payload.attended)
        return updated.to_dict()

    @app.post("/admin/events/{event_id}/registrations/{registration_id}/cancel")
    async def cancel_registration(
        event_id: int,
        registration_id: int,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        registration = await engine.board.cancel(event_id, registration_id)
        return registration.to_dict()

    @app.post("/admin/events/{event_id}/registrations/{registration_id}/send-pass")
    async def send_pass(
        event_id: int,
        registration_id: int,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        state = await engine.passes.resend(event_id, registration_id)
        return state.to_dict()

    @app.get("/admin/events/{event_id}/registrations/{registration_id}/pass")
    async def download_pass(
        event_id: int,
        registration_id: int,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        document = await engine.passes.download_pass(event_id, registration_id)
        return attachment(document.content, document.media_type, document.filename)

    @app.get("/admin/events/{event_id}/registrations/{registration_id}/qr")
    async def download_qr(
        event_id: int,
        registration_id: int,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        registration = await engine.board.detail(event_id, registration_id)
        png = decode_png_data_url(registration.qr_image)
        if png is None and registration.qr_token:
            png = render_qr_png(registration.qr_token)
        if png is None:
            raise NotFound("QR code not available for this registration", next_action="check in with the phone number instead")
        return attachment(png, "image/png", qr_filename(event_id, registration_id))

    @app.get("/admin/events/{event_id}/exhibitors")
    async def list_exhibitors(event_id: int, x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY")):
        require_api_key(config, x_api_key)
        exhibitors = await engine.exhibitors.list(event_id)
        return {"exhibitors": [e.to_dict() for e in exhibitors]}

    @app.post("/admin/events/{event_id}/exhibitors", status_code=201)
    async def create_exhibitor(
        event_id: int,
        payload: ExhibitorRequest,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        exhibitor = await engine.exhibitors.create(event_id, payload.model_dump())
        return exhibitor.to_dict()

    @app.put("/admin/events/{event_id}/exhibitors/{exhibitor_id}")
    async def update_exhibitor(
        event_id: int,
        exhibitor_id: int,
        payload: ExhibitorRequest,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        exhibitor = await engine.exhibitors.update(event_id, exhibitor_id, payload.model_dump())
        return exhibitor.to_dict()

    @app.delete("/admin/events/{event_id}/exhibitors/{exhibitor_id}", status_code=204)
    async def delete_exhibitor(
        event_id: int,
        exhibitor_id: int,
        x_api_key: Optional[str] = Header(default=None, alias="X-API-KEY"),
    ):
        require_api_key(config, x_api_key)
        await engine.exhibitors.delete(event_id, exhibitor_id)
        return Response(status_code=204)

    return app


app = create_app()
