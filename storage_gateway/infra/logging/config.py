"""Logging configuration setup.

Uses ``logging.config.dictConfig`` with all handlers on the root logger;
module loggers (``logging.getLogger(__name__)``) propagate up. Output goes
to stderr so CLI results on stdout stay parseable.
"""

from __future__ import annotations

import logging
import logging.config
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from storage_gateway.core.settings.logs import LoggingSettings

logger = logging.getLogger(__name__)
_LOGGING_INITIALIZED = False

# Third-party loggers that are chatty at INFO
_LIBRARY_LOGGERS = ("httpx", "httpcore", "botocore", "aiobotocore", "aioboto3", "urllib3")


def setup_logging(
    log_settings: LoggingSettings | None = None,
    *,
    force: bool = False,
    **configure_kwargs: Any,
) -> None:
    """Ensure logging is configured once across entrypoints.

    Args:
        log_settings: Optional logging settings instance. If omitted, settings
            are loaded via get_logging_settings().
        force: Reconfigure logging even if it was already initialized.
        **configure_kwargs: Explicit overrides for configure_logging().
    """
    global _LOGGING_INITIALIZED

    if _LOGGING_INITIALIZED and not force:
        return

    settings_obj = log_settings
    if settings_obj is None:
        from storage_gateway.core.settings import get_logging_settings

        settings_obj = get_logging_settings()

    log_config = settings_obj.to_logging_kwargs()
    if configure_kwargs:
        log_config = {**log_config, **configure_kwargs}

    configure_logging(**log_config)
    _LOGGING_INITIALIZED = True


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    service_name: str = "storage-gateway",
    library_level: str = "WARNING",
) -> None:
    """Configure root logging with dictConfig.

    Args:
        log_level: Root logger level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_logs: Emit JSON Lines instead of plain text.
        service_name: Static ``service`` field for JSON records.
        library_level: Level for third-party library loggers.

    Example:
        from storage_gateway.core.settings import get_logging_settings
        configure_logging(**get_logging_settings().to_logging_kwargs())
    """
    formatter: dict[str, Any]
    if json_logs:
        formatter = {
            "()": "storage_gateway.infra.logging.formatters.JSONFormatter",
            "static": {"service": service_name},
        }
    else:
        formatter = {
            "()": "storage_gateway.infra.logging.formatters.ExtraFieldsFormatter",
            "fmt": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        }

    config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stderr",
            },
        },
        "root": {"level": log_level.upper(), "handlers": ["console"]},
        "loggers": {
            name: {"level": library_level.upper(), "propagate": True}
            for name in _LIBRARY_LOGGERS
        },
    }

    logging.config.dictConfig(config)
    logging.captureWarnings(True)
    logger.debug(
        "Logging configured",
        extra={"log_level": log_level, "json_logs": json_logs},
    )
