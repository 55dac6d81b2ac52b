"""Startup-time helpers for safe config logging."""

from fleetpay.common.config import CommonSettings
from fleetpay.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_config(config: CommonSettings, fields: list[str]) -> dict[str, str]:
    """Return selected settings with secret-like fields masked."""

    values = {}
    for name in fields:
        value = getattr(config, name, None)
        if value is None or value == "":
            values[name] = "<unset>"
        elif any(marker in name for marker in SECRET_MARKERS):
            values[name] = "<redacted>"
        else:
            values[name] = str(value)
    return values


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    values = {"service": config.service_name, **redacted_config(config, fields)}
    logger.info("startup_config=%s", values)
