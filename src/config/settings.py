import logging.config
import re
from pathlib import Path
from urllib.parse import urlparse

import structlog
from decouple import config

# ---------------------------------------------------------------------------
# Remote order service
# ---------------------------------------------------------------------------
ORDERS_API_URL = config("ORDERS_API_URL", default="")
ORDERS_API_KEY = config("ORDERS_API_KEY", default="")
ORDERS_REALTIME_URL = config("ORDERS_REALTIME_URL", default="")

ORDERS_REQUEST_TIMEOUT = config("ORDERS_REQUEST_TIMEOUT", default=10.0, cast=float)

# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
# Full reload cadence while the realtime feed is attached.
ORDERS_RELOAD_INTERVAL = config("ORDERS_RELOAD_INTERVAL", default=30.0, cast=float)
# Poll-and-reload cadence while the realtime feed is down.
ORDERS_POLL_INTERVAL = config("ORDERS_POLL_INTERVAL", default=5.0, cast=float)

# ---------------------------------------------------------------------------
# Local cache
# ---------------------------------------------------------------------------
ORDERS_CACHE_DIR = Path(config("ORDERS_CACHE_DIR", default=".order-cache"))

LOG_LEVEL = config("LOG_LEVEL", default="INFO")

_PLACEHOLDER_MARKERS = ("your_", "_here", "mock")


def remote_is_configured(url: str = ORDERS_API_URL, key: str = ORDERS_API_KEY) -> bool:
    """Return ``True`` when the backend URL and key look usable.

    Empty values, template placeholders and keys of 10 characters or
    fewer fall back to offline (cache-only) operation.
    """
    if not url or any(marker in url for marker in _PLACEHOLDER_MARKERS):
        return False
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    if not key or len(key) <= 10 or any(marker in key for marker in _PLACEHOLDER_MARKERS):
        return False
    return True


# ---------------------------------------------------------------------------
# Structured Logging (structlog + stdlib logging)
# ---------------------------------------------------------------------------
SENSITIVE_PATTERN = re.compile(
    r"(password|passwd|secret|token|apikey|api_key|authorization)"
    r"""([=:]\s*["']?)(Bearer\s+)?([^\s,}"']+)""",
    re.IGNORECASE,
)
SENSITIVE_KEYS = {"api_key", "apikey", "authorization", "password", "token"}


def mask_sensitive_data(_, __, event_dict):
    """Processor that masks API keys, passwords and tokens in log values."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS and value:
            event_dict[key] = "***MASKED***"
        elif isinstance(value, str):
            event_dict[key] = SENSITIVE_PATTERN.sub(r"\1\2***MASKED***", value)
    return event_dict


# Shared processors used by both structlog and stdlib logging
_shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    mask_sensitive_data,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
            "foreign_pre_chain": _shared_processors,
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "httpx": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
        "websockets": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}


def configure_logging() -> None:
    """Install the structlog pipeline and the JSON console handler."""
    structlog.configure(
        processors=[
            *_shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.config.dictConfig(LOGGING)
