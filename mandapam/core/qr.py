"""
Local QR rendering for registrations whose backend payload has a token but
no rendered image.
"""
import base64
import io
from typing import Optional

import qrcode

from mandapam.core.models import Registration


def render_qr_png(token: str, box_size: int = 10, border: int = 2) -> bytes:
    qr = qrcode.QRCode(version=None, box_size=box_size, border=border)
    qr.add_data(token)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_qr_data_url(token: str) -> str:
    encoded = base64.b64encode(render_qr_png(token)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def decode_png_data_url(data_url: Optional[str]) -> Optional[bytes]:
    """Return PNG bytes from a ``data:image/png;base64,...`` URL, or None."""
    if not data_url or not data_url.startswith("data:image/png;base64,"):
        return None
    try:
        return base64.b64decode(data_url.split(",", 1)[1], validate=True)
    except ValueError:
        return None


def ensure_qr_image(registration: Registration) -> Registration:
    """Fill ``qr_image`` from ``qr_token`` when the backend did not send one."""
    if registration.qr_image or not registration.qr_token:
        return registration
    return registration.merged_with(qr_image=render_qr_data_url(registration.qr_token))


def qr_filename(event_id: int, registration_id: int) -> str:
    return f"event-{event_id}-registration-{registration_id}.png"
