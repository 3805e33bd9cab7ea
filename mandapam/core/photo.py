"""
Profile photo capture and optimization (Pillow).

Capture only checks size and MIME type and builds the preview. The heavy
work (decode, resize, re-encode) happens at submission time, right before
upload.
"""
import base64
import io
import logging
import mimetypes
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from mandapam.core.errors import UploadError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"})

MIN_QUALITY = 50
QUALITY_STEP = 10


@dataclass(frozen=True)
class CapturedPhoto:
    filename: str
    content_type: str
    data: bytes
    preview_data_url: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class OptimizedPhoto:
    filename: str
    content_type: str
    data: bytes
    width: int
    height: int


def to_data_url(content_type: str, data: bytes) -> str:
    return f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"


def _jpeg_filename(filename: str) -> str:
    stem = filename.rsplit(".", 1)[0] if "." in filename else filename
    return f"{stem or 'profile'}.jpg"


class PhotoCaptureAndOptimizer:
    """
    Validates a selected/captured image and shrinks it before upload.
    """

    def __init__(
        self,
        max_upload_bytes: int = 30 * 1024 * 1024,
        max_dimension: int = 800,
        target_bytes: int = 1 * 1024 * 1024,
        quality: int = 85,
    ):
        self._max_upload_bytes = max_upload_bytes
        self._max_dimension = max_dimension
        self._target_bytes = target_bytes
        self._quality = quality

    def capture(self, filename: Optional[str], content_type: Optional[str], data: bytes) -> CapturedPhoto:
        """
        Accept a photo and build its preview.

        Raises:
            ValidationError: file larger than the limit or MIME type not allowed
        """
        filename = filename or "profile"
        mime = (content_type or mimetypes.guess_type(filename)[0] or "").lower()

        if len(data) > self._max_upload_bytes:
            max_mb = self._max_upload_bytes // (1024 * 1024)
            raise ValidationError({"photo": f"Image size must be less than {max_mb}MB"})
        if mime not in ALLOWED_MIME_TYPES:
            raise ValidationError({"photo": "Please select a valid image file (JPEG, PNG, GIF or WebP)"})
        if not data:
            raise ValidationError({"photo": "The selected file is empty"})

        return CapturedPhoto(
            filename=filename,
            content_type=mime,
            data=data,
            preview_data_url=to_data_url(mime, data),
        )

    def optimize(self, photo: CapturedPhoto) -> OptimizedPhoto:
        """
        Constrain a photo to the configured dimension and byte limits.

        Photos already within both limits are kept as they are. Others are
        downsized (aspect ratio preserved, EXIF orientation applied) and
        re-encoded as JPEG, lowering the quality step by step until the size
        fits or the quality floor is reached.

        Raises:
            UploadError: the image could not be decoded or encoded
        """
        try:
            image = Image.open(io.BytesIO(photo.data))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Photo decode failed: filename={photo.filename}, error={e}")
            raise UploadError("The selected photo could not be processed. Please choose another image.") from e

        width, height = image.size
        fits = width <= self._max_dimension and height <= self._max_dimension
        if fits and photo.size <= self._target_bytes:
            return OptimizedPhoto(photo.filename, photo.content_type, photo.data, width, height)

        try:
            image = ImageOps.exif_transpose(image)
            image.thumbnail((self._max_dimension, self._max_dimension), Image.LANCZOS)

            if image.mode in ("RGBA", "LA", "P"):
                image = image.convert("RGBA")
                background = Image.new("RGB", image.size, (255, 255, 255))
                background.paste(image, mask=image.split()[-1])
                image = background
            elif image.mode != "RGB":
                image = image.convert("RGB")

            quality = self._quality
            while True:
                output = io.BytesIO()
                image.save(output, format="JPEG", quality=quality, optimize=True)
                data = output.getvalue()
                if len(data) <= self._target_bytes or quality - QUALITY_STEP < MIN_QUALITY:
                    break
                quality -= QUALITY_STEP
        except OSError as e:
            logger.warning(f"Photo encode failed: filename={photo.filename}, error={e}")
            raise UploadError("The selected photo could not be processed. Please choose another image.") from e

        logger.info(
            f"Photo optimized: original_bytes={photo.size}, optimized_bytes={len(data)}, "
            f"size={image.width}x{image.height}, quality={quality}"
        )
        return OptimizedPhoto(
            filename=_jpeg_filename(photo.filename),
            content_type="image/jpeg",
            data=data,
            width=image.width,
            height=image.height,
        )
