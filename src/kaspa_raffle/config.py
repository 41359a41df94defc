from __future__ import annotations

import os
from dataclasses import dataclass
from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_KASPA_API_URL = "https://api.kaspa.org"
DEFAULT_KASPLEX_API_URL = "https://api.kasplex.org/v1"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    network_id: str
    rpc_url: str | None
    treasury_address: str
    treasury_private_key: str
    store_dir: str = "raffles"
    kaspa_api_url: str = DEFAULT_KASPA_API_URL
    kasplex_api_url: str = DEFAULT_KASPLEX_API_URL
    interval_s: float = 60.0
    commit_timeout_s: float = 120.0
    reveal_timeout_s: float = 120.0
    reconcile_strict: bool = True

    @property
    def network_type(self) -> str:
        # "testnet-10" -> "testnet"
        return self.network_id.split("-", 1)[0]

    def require_treasury(self) -> None:
        if not self.treasury_address or not self.treasury_private_key:
            raise ConfigError(
                "Missing TREASURY_ADDRESS or TREASURY_PRIVATE_KEY. Put them in .env or export them."
            )

    @staticmethod
    def from_env(
        network_override: str | None = None,
        rpc_url_override: str | None = None,
        store_dir_override: str | None = None,
    ) -> "Settings":
        load_dotenv()

        network_id = network_override or os.getenv("KASPA_NETWORK", "").strip() or "mainnet"

        # If user provides --rpc-url, trust it. Empty means "use the public resolver".
        rpc_url = rpc_url_override or os.getenv("KASPA_RPC_URL", "").strip() or None

        return Settings(
            network_id=network_id,
            rpc_url=rpc_url,
            treasury_address=os.getenv("TREASURY_ADDRESS", "").strip(),
            treasury_private_key=os.getenv("TREASURY_PRIVATE_KEY", "").strip(),
            store_dir=store_dir_override or os.getenv("RAFFLE_STORE_DIR", "").strip() or "raffles",
            kaspa_api_url=os.getenv("KASPA_API_URL", "").strip().rstrip("/")
            or DEFAULT_KASPA_API_URL,
            kasplex_api_url=os.getenv("KASPLEX_API_URL", "").strip().rstrip("/")
            or DEFAULT_KASPLEX_API_URL,
            interval_s=_env_float("SCHEDULER_INTERVAL_S", 60.0),
            commit_timeout_s=_env_float("COMMIT_TIMEOUT_S", 120.0),
            reveal_timeout_s=_env_float("REVEAL_TIMEOUT_S", 120.0),
            reconcile_strict=_env_flag("RECONCILE_STRICT", True),
        )
