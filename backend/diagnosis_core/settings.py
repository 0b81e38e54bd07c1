from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .payment import normalize_network

_BACKEND_DIR = Path(__file__).resolve().parents[1]


class StartupError(Exception):
    pass


def _clean(environ: Mapping[str, str], key: str, default: str = "") -> str:
    return (environ.get(key) or default).strip()


@dataclass(frozen=True)
class Settings:
    openrouter_api_key: str
    evm_address: str
    openrouter_model: str = "arcee-ai/trinity-large-preview:free"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_site_url: str = ""
    openrouter_app_name: str = "Diagnose Relay"
    data_dir: str = str(_BACKEND_DIR / "user-data")
    chat_timeout_seconds: float = 60.0
    facilitator_url: str = "https://facilitator.payai.network"
    facilitator_token: str = ""
    price: str = "$0.001"
    network: str = "base"
    asset: str = ""
    allowed_origins: tuple[str, ...] = ("http://localhost:3000",)
    log_level: str = "INFO"
    port: int = 3001

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        missing = [key for key in ("OPENROUTER_API_KEY", "EVM_ADDRESS") if not _clean(env, key)]
        if missing:
            raise StartupError(f"Missing required environment variables: {', '.join(missing)}")

        try:
            timeout = float(_clean(env, "DIAGNOSE_CHAT_TIMEOUT_SECONDS", "60"))
            port = int(_clean(env, "PORT", "3001"))
        except ValueError as exc:
            raise StartupError(f"Invalid numeric setting: {exc}") from exc

        origins = tuple(
            origin.strip()
            for origin in _clean(env, "ALLOWED_ORIGINS", "http://localhost:3000").split(",")
            if origin.strip()
        )
        return cls(
            openrouter_api_key=_clean(env, "OPENROUTER_API_KEY"),
            evm_address=_clean(env, "EVM_ADDRESS"),
            openrouter_model=_clean(env, "OPENROUTER_MODEL", cls.openrouter_model),
            openrouter_base_url=_clean(env, "OPENROUTER_BASE_URL", cls.openrouter_base_url).rstrip("/"),
            openrouter_site_url=_clean(env, "OPENROUTER_SITE_URL"),
            openrouter_app_name=_clean(env, "OPENROUTER_APP_NAME", cls.openrouter_app_name),
            data_dir=_clean(env, "DIAGNOSE_DATA_DIR", cls.data_dir),
            chat_timeout_seconds=timeout,
            facilitator_url=_clean(env, "X402_FACILITATOR_URL", cls.facilitator_url).rstrip("/"),
            facilitator_token=_clean(env, "X402_FACILITATOR_TOKEN"),
            price=_clean(env, "X402_PRICE", cls.price),
            network=normalize_network(_clean(env, "X402_NETWORK", cls.network)),
            asset=_clean(env, "X402_ASSET", cls.asset),
            allowed_origins=origins,
            log_level=_clean(env, "LOG_LEVEL", cls.log_level),
            port=port,
        )
