import logging
import uvicorn
import os
from logging.handlers import RotatingFileHandler

from mandapam.api.http import app

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Noisy per-request loggers from the client/server libraries
QUIET_LOGGERS = ("httpx", "httpcore", "multipart")


def configure_logging() -> str:
    """Console + rotating file logging for the portal. Returns the log file path."""
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    log_dir = os.getenv("LOG_DIR", "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, "mandapam_portal.log")

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    handlers = [
        logging.StreamHandler(),
        # 10MB per file, 5 backups
        RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"),
    ]

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_file


if __name__ == "__main__":
    log_file = configure_logging()
    port = int(os.getenv("PORT", "8000"))
    logging.info(f"Mandapam portal starting: port={port} log_file={log_file}")
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=port,
        log_level="info",
    )
