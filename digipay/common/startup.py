"""Startup logging of the effective engine settings."""

from typing import Any, Iterable

from pydantic_settings import BaseSettings

from digipay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_settings(source: BaseSettings, fields: Iterable[str]) -> dict[str, Any]:
    """Selected settings fields, with credentials and connection strings masked."""

    view: dict[str, Any] = {}
    for name in fields:
        value = getattr(source, name, None)
        if value is None or value == "":
            view[name] = "<unset>"
        elif any(marker in name.lower() for marker in SECRET_MARKERS):
            view[name] = "<redacted>"
        else:
            view[name] = str(value)
    return view


def log_startup_config(source: BaseSettings, fields: Iterable[str]) -> None:
    logger.info(
        "startup_config service=%s settings=%s",
        getattr(source, "service_name", "unknown"),
        redacted_settings(source, fields),
    )
