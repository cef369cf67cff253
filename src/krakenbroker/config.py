"""Load and validate TOML configuration, then resolve credentials from the environment."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import tomli
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent.parent.parent / "config"
CONFIG_FILE = "kraken.toml"

# Environment variable -> credential field.
CREDENTIAL_ENV_VARS: dict[str, str] = {
    "KRAKEN_PUBLIC": "api_key",
    "KRAKEN_PRIVATE": "api_secret",
    "KRAKEN_VERIFICATION_TIER": "verification_tier",
}


class Credentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field("", alias="api-key")
    api_secret: str = Field("", alias="api-secret")
    verification_tier: str = Field("starter", alias="verification-tier")

    @property
    def complete(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def masked(self) -> dict[str, str]:
        def _mask(value: str) -> str:
            if not value:
                return "<unset>"
            return value[:4] + "…" if len(value) > 4 else "****"

        return {
            "api-key": _mask(self.api_key),
            "api-secret": _mask(self.api_secret),
            "verification-tier": self.verification_tier or "<unset>",
        }


class AccountConfig(BaseModel):
    type: Literal["margin", "cash"] = "margin"
    leverage: int = 1
    sandbox: bool = False


class ClientConfig(BaseModel):
    max_retries: int = 3
    backoff_base_s: float = 1.0
    request_timeout_s: float = 10.0


class OrdersConfig(BaseModel):
    completion_timeout_s: float = 30.0
    poll_interval_s: float = 2.0
    retain_terminal: int = 500


class FeesConfig(BaseModel):
    thirty_day_volume: float = 0.0


class NotificationsConfig(BaseModel):
    webhook_url: str = ""
    enabled: bool = True
    events: list[str] = ["filled", "cancelled", "invalid"]


class AppConfig(BaseModel):
    credentials: Credentials = Credentials()
    account: AccountConfig = AccountConfig()
    client: ClientConfig = ClientConfig()
    orders: OrdersConfig = OrdersConfig()
    fees: FeesConfig = FeesConfig()
    notifications: NotificationsConfig = NotificationsConfig()


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomli.load(f)


def load_config(config_dir: Path | None = None) -> AppConfig:
    d = config_dir or CONFIG_DIR
    path = d / CONFIG_FILE
    if not path.exists():
        logger.debug("No %s in %s, using defaults", CONFIG_FILE, d)
        return AppConfig()
    return AppConfig(**_load_toml(path))


def load_credentials(config: AppConfig, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Return a copy of ``config`` with credentials overridden from the environment.

    Each environment variable takes precedence over the persisted value. A
    missing variable is logged and the persisted value (possibly empty) is
    kept, so read-only and sandbox use keeps working without credentials.
    """
    env = os.environ if environ is None else environ
    resolved = config.credentials.model_dump()
    for var, fld in CREDENTIAL_ENV_VARS.items():
        if var in env:
            resolved[fld] = env[var]
        elif fld == "verification_tier":
            logger.debug("Environment doesn't have %s variable", var)
        else:
            logger.error("Environment doesn't have %s variable", var)
    return config.model_copy(update={"credentials": Credentials(**resolved)})
