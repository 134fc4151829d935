"""
Gateway Configuration

Settings for:
- Downstream API credentials (single shared credential set)
- Change store location
- Execution behaviour (timeout, path prefix, base currency)

Everything is read from the environment at load time; callers that need
different values construct the dataclasses directly.
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_BASE_URL = "https://demo-rmp-api.rik.ee/v1"


@dataclass(frozen=True)
class ApiCredentials:
    """
    Credentials for the downstream accounting API.

    api_key_id signs the payload, api_key_public is sent in X-AUTH-KEY,
    api_key_password is the shared HMAC secret.
    """
    api_key_id: str = ""
    api_key_public: str = ""
    api_key_password: str = ""
    base_url: str = DEFAULT_BASE_URL

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key_id and self.api_key_public and self.api_key_password)

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.api_key_id:
            missing.append("API_KEY_ID")
        if not self.api_key_public:
            missing.append("API_KEY_PUBLIC")
        if not self.api_key_password:
            missing.append("API_KEY_PASSWORD")
        return missing


def load_credentials() -> ApiCredentials:
    """Credentials provider backed by environment variables."""
    return ApiCredentials(
        api_key_id=os.getenv("API_KEY_ID", ""),
        api_key_public=os.getenv("API_KEY_PUBLIC", ""),
        api_key_password=os.getenv("API_KEY_PASSWORD", ""),
        base_url=os.getenv("API_BASE_URL") or DEFAULT_BASE_URL,
    )


@dataclass(frozen=True)
class GatewaySettings:
    db_path: str = "ledgergate.db"
    base_currency: str = "EUR"  # ISO 4217, used for every generated posting
    path_prefix: str = "/proxy"
    downstream_timeout: float = 30.0
    api_key: Optional[str] = None  # guards the management API when set

    def __post_init__(self):
        if self.downstream_timeout <= 0:
            raise ValueError("downstream_timeout must be positive")

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            db_path=os.getenv("LEDGERGATE_DB_PATH", "ledgergate.db"),
            base_currency=os.getenv("LEDGERGATE_BASE_CURRENCY", "EUR").upper(),
            path_prefix=os.getenv("LEDGERGATE_PATH_PREFIX", "/proxy"),
            downstream_timeout=float(os.getenv("DOWNSTREAM_TIMEOUT_SECONDS", "30")),
            api_key=os.getenv("GATEWAY_API_KEY") or None,
        )
