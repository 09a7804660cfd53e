"""Runtime configuration for the proxy.

Settings are read from the process environment (optionally populated from a
``.env`` file) into a frozen :class:`ProxySettings`. The values here are the
tuning knobs the deployment is expected to override; nothing else in the
package reads ``os.environ`` directly.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from jqproxy.utils.env import load_env_file_if_present

logger = logging.getLogger(__name__)

API_URL = "https://api.jquants.com"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigError(Exception):
    """Raised when a configuration value cannot be parsed."""

    pass


def _get_int(env: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _get_float(env: Mapping[str, str], key: str, default: float, minimum: float = 0.0) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _get_str(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class ProxySettings:
    """All tunables for a proxy process."""

    api_url: str = API_URL
    refresh_token: str | None = None
    email: str | None = None
    password: str | None = None
    proxy_bearer: str | None = None

    # Upstream client
    timeout: float = 30.0
    max_concurrency: int = 5
    max_retries: int = 3
    backoff_base: float = 0.3
    max_pages: int = 50
    page_delay: float = 0.12

    # Token lifetimes, in seconds
    id_token_ttl: float = 24 * 60 * 60
    id_token_margin: float = 5 * 60
    refresh_token_ttl: float = 7 * 24 * 60 * 60
    refresh_token_margin: float = 10 * 60

    cache_maxsize: int = 1024
    log_level: str = "INFO"
    api_prefix: str = "/api"

    @property
    def has_account_credentials(self) -> bool:
        return bool(self.email and self.password)

    @property
    def has_any_credentials(self) -> bool:
        return bool(self.refresh_token) or self.has_account_credentials

    @classmethod
    def from_env(
        cls, env: Mapping[str, str] | None = None, dotenv: bool = True
    ) -> ProxySettings:
        """Build settings from environment variables.

        Args:
            env: Mapping to read from (defaults to ``os.environ``).
            dotenv: Populate ``os.environ`` from ``.env`` first when reading the
                real environment.

        Raises:
            ConfigError: If a numeric value is malformed or out of range.
        """
        if env is None:
            if dotenv:
                load_env_file_if_present()
            env = os.environ

        prefix = _get_str(env, "API_PREFIX")
        if prefix is None:
            api_prefix = "/api"
        else:
            api_prefix = "/" + prefix.strip("/") if prefix.strip("/") else ""
        settings = cls(
            api_url=(_get_str(env, "JQ_API_URL") or API_URL).rstrip("/"),
            refresh_token=_get_str(env, "JQ_REFRESH_TOKEN"),
            email=_get_str(env, "JQ_EMAIL"),
            password=_get_str(env, "JQ_PASSWORD"),
            proxy_bearer=_get_str(env, "PROXY_BEARER"),
            timeout=_get_float(env, "JQ_TIMEOUT", 30.0, minimum=0.1),
            max_concurrency=_get_int(env, "JQ_MAX_CONCURRENCY", 5, minimum=1),
            max_retries=_get_int(env, "JQ_MAX_RETRIES", 3),
            backoff_base=_get_float(env, "JQ_BACKOFF_BASE", 0.3),
            max_pages=_get_int(env, "JQ_MAX_PAGES", 50, minimum=1),
            page_delay=_get_float(env, "JQ_PAGE_DELAY", 0.12),
            id_token_ttl=_get_float(env, "JQ_ID_TOKEN_TTL", 24 * 60 * 60, minimum=1.0),
            id_token_margin=_get_float(env, "JQ_ID_TOKEN_MARGIN", 5 * 60),
            cache_maxsize=_get_int(env, "JQ_CACHE_MAXSIZE", 1024, minimum=1),
            log_level=(_get_str(env, "LOG_LEVEL") or "INFO").upper(),
            api_prefix=api_prefix,
        )
        if settings.id_token_margin >= settings.id_token_ttl:
            raise ConfigError("JQ_ID_TOKEN_MARGIN must be smaller than JQ_ID_TOKEN_TTL")
        if not settings.has_any_credentials:
            logger.warning(
                "No J-Quants credentials configured (JQ_REFRESH_TOKEN or JQ_EMAIL/JQ_PASSWORD)"
            )
        if not settings.proxy_bearer:
            logger.warning("PROXY_BEARER is not set; all authenticated routes will reject callers")
        return settings


def configure_logging(level: str | int = "INFO") -> None:
    """Configure root logging once for the process."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
