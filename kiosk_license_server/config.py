from __future__ import annotations

import logging
import os
from dataclasses import dataclass


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass
class ServiceSettings:
    """
    Runtime settings for the license service.
    Everything comes from the environment; tests build this directly.
    """
    database_uri: str = "sqlite:///kiosk_licenses.db"
    keys_dir: str = "data/keys"

    validity_days: int = 365
    grace_days: int = 90
    key_prefix: str = "KFC-KIO"
    default_country: str = "UK"

    admin_token: str = ""
    log_level: str = "INFO"
    port: int = 5000

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        from .db import get_database_uri

        return cls(
            database_uri=get_database_uri(),
            keys_dir=os.getenv("LICENSE_KEYS_DIR", "").strip() or "data/keys",
            validity_days=_env_int("LICENSE_VALIDITY_DAYS", 365),
            grace_days=_env_int("LICENSE_GRACE_DAYS", 90),
            key_prefix=os.getenv("LICENSE_KEY_PREFIX", "").strip() or "KFC-KIO",
            default_country=os.getenv("LICENSE_DEFAULT_COUNTRY", "").strip().upper() or "UK",
            admin_token=os.getenv("ADMIN_TOKEN", ""),
            log_level=os.getenv("LOG_LEVEL", "").strip().upper() or "INFO",
            port=_env_int("PORT", 5000),
        )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)
