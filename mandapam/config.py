from dataclasses import dataclass
import os
import logging
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

VALID_ENVS = ("dev", "staging", "prod")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}='{raw}', using default {default}")
        return default


@dataclass(frozen=True)
class AppConfig:
    """
    Main settings of the registration portal.

    Keeps every tunable of the registration flow (timeouts, retry and
    polling cadence, photo limits) in one place so reviews and tests can
    pin them down.
    """
    backend_api_url: str = "http://localhost:5000/api"
    backend_api_token: str = ""
    portal_api_key: str = ""
    env: str = "dev"  # "dev", "staging" or "prod"
    razorpay_key_id: str = ""
    redis_url: str = ""
    session_ttl_seconds: int = 86400
    session_max_idle_seconds: int = 3600
    api_timeout_ms: int = 15000
    confirm_max_retries: int = 2  # internal retries of confirm-payment
    retry_base_delay_ms: int = 500  # exponential backoff base
    confirm_poll_attempts: int = 6
    confirm_poll_interval_ms: int = 2000
    phone_check_debounce_ms: int = 500
    association_debounce_ms: int = 300
    photo_max_upload_bytes: int = 30 * 1024 * 1024  # 30MB
    photo_max_dimension: int = 800
    photo_target_bytes: int = 1 * 1024 * 1024  # 1MB after optimization
    photo_quality: int = 85

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Load configuration from environment variables.

        Reads the .env file first (if present), then the process
        environment. Raises explicitly when something critical is missing.
        """
        load_dotenv()

        backend_api_url = os.getenv("BACKEND_API_URL", "http://localhost:5000/api").rstrip("/")
        backend_api_token = os.getenv("BACKEND_API_TOKEN", "")
        portal_api_key = os.getenv("PORTAL_API_KEY", "")
        razorpay_key_id = os.getenv("RAZORPAY_KEY_ID", "")
        redis_url = os.getenv("REDIS_URL", "")

        env = os.getenv("ENV", "dev").lower()
        if env not in VALID_ENVS:
            logger.warning(f"Invalid ENV '{env}', falling back to 'dev'")
            env = "dev"

        # In production the admin endpoints must be protected
        if env == "prod":
            if not portal_api_key or not portal_api_key.strip():
                raise RuntimeError(
                    "ENV=prod requires PORTAL_API_KEY. "
                    "Configure PORTAL_API_KEY in the production environment."
                )
            logger.info("Production mode: PORTAL_API_KEY validated")
        else:
            if not portal_api_key or not portal_api_key.strip():
                logger.warning(
                    "⚠️  DEV MODE: PORTAL_API_KEY not configured. "
                    "Admin endpoints and /checkin will accept unauthenticated requests."
                )

        return cls(
            backend_api_url=backend_api_url,
            backend_api_token=backend_api_token,
            portal_api_key=portal_api_key,
            env=env,
            razorpay_key_id=razorpay_key_id,
            redis_url=redis_url,
            session_ttl_seconds=_int_env("SESSION_TTL_SECONDS", 86400),
            session_max_idle_seconds=_int_env("SESSION_MAX_IDLE_SECONDS", 3600),
            api_timeout_ms=_int_env("API_TIMEOUT_MS", 15000),
            confirm_max_retries=_int_env("CONFIRM_MAX_RETRIES", 2),
            retry_base_delay_ms=_int_env("RETRY_BASE_DELAY_MS", 500),
            confirm_poll_attempts=_int_env("CONFIRM_POLL_ATTEMPTS", 6),
            confirm_poll_interval_ms=_int_env("CONFIRM_POLL_INTERVAL_MS", 2000),
            phone_check_debounce_ms=_int_env("PHONE_CHECK_DEBOUNCE_MS", 500),
            association_debounce_ms=_int_env("ASSOCIATION_DEBOUNCE_MS", 300),
            photo_max_upload_bytes=_int_env("PHOTO_MAX_UPLOAD_BYTES", 30 * 1024 * 1024),
            photo_max_dimension=_int_env("PHOTO_MAX_DIMENSION", 800),
            photo_target_bytes=_int_env("PHOTO_TARGET_BYTES", 1 * 1024 * 1024),
            photo_quality=_int_env("PHOTO_QUALITY", 85),
        )
