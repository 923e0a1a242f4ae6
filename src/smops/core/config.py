"""Runtime settings and logging setup.

Settings are read from environment variables. Unparsable values fall back to
the defaults instead of failing startup.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

DEFAULT_SECRET = "sap-btp-service-operator"
DEFAULT_NAMESPACE = "kyma-system"


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name, "").strip()
    return raw or default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class Settings:
    """
    Process-wide configuration for sm-ops.

    Attributes:
        default_secret: Name of the credential secret of the default tenant.
        default_namespace: Namespace of the default tenant's credential secret.
        secret_namespace: Namespace used for binding secrets when the caller
            does not name one.
        request_timeout: Budget in seconds for a single broker request.
        dial_timeout: Seconds allowed to establish a connection.
        idle_timeout: Seconds an idle keep-alive connection is kept for reuse.
        max_connections: Upper bound of pooled connections per session.
        log_level: Level name applied to the `smops` logger.
    """

    _DEFAULT_SECRET_ENV = "SMOPS_DEFAULT_SECRET"
    _DEFAULT_NAMESPACE_ENV = "SMOPS_DEFAULT_NAMESPACE"
    _SECRET_NAMESPACE_ENV = "SMOPS_SECRET_NAMESPACE"
    _REQUEST_TIMEOUT_ENV = "SMOPS_REQUEST_TIMEOUT"
    _DIAL_TIMEOUT_ENV = "SMOPS_DIAL_TIMEOUT"
    _IDLE_TIMEOUT_ENV = "SMOPS_IDLE_TIMEOUT"
    _MAX_CONNECTIONS_ENV = "SMOPS_MAX_CONNECTIONS"
    _LOG_LEVEL_ENV = "SMOPS_LOG_LEVEL"

    default_secret: str = DEFAULT_SECRET
    default_namespace: str = DEFAULT_NAMESPACE
    secret_namespace: str = "default"
    request_timeout: float = 10.0
    dial_timeout: float = 30.0
    idle_timeout: float = 90.0
    max_connections: int = 100
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from `SMOPS_*` environment variables."""
        return cls(
            default_secret=_env_str(cls._DEFAULT_SECRET_ENV, DEFAULT_SECRET),
            default_namespace=_env_str(cls._DEFAULT_NAMESPACE_ENV, DEFAULT_NAMESPACE),
            secret_namespace=_env_str(cls._SECRET_NAMESPACE_ENV, "default"),
            request_timeout=_env_float(cls._REQUEST_TIMEOUT_ENV, 10.0),
            dial_timeout=_env_float(cls._DIAL_TIMEOUT_ENV, 30.0),
            idle_timeout=_env_float(cls._IDLE_TIMEOUT_ENV, 90.0),
            max_connections=_env_int(cls._MAX_CONNECTIONS_ENV, 100),
            log_level=_env_str(cls._LOG_LEVEL_ENV, "INFO").upper(),
        )


def configure_logging(settings: Settings) -> logging.Logger:
    """Attach a stream handler to the `smops` logger (once) and set its level."""
    logger = logging.getLogger("smops")
    level = logging.getLevelName(settings.log_level)
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
    return logger
