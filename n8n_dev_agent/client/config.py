"""Configuration for the n8n HTTP client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from n8n_dev_agent.settings_store import SettingsStore


@dataclass(frozen=True)
class Settings:
    """Immutable connection settings for one n8n instance."""

    api_key: str = field(default="", repr=False)
    endpoint: str = "http://localhost:5678"
    timeout: int = 60

    def __post_init__(self) -> None:
        object.__setattr__(self, "endpoint", self.endpoint.rstrip("/"))

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            api_key=os.getenv("N8N_API_KEY", ""),
            endpoint=os.getenv("N8N_BASE_URL", "http://localhost:5678"),
            timeout=int(os.getenv("N8N_TIMEOUT", "60")),
        )

    @classmethod
    async def resolve(
        cls,
        store: SettingsStore | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> Settings:
        """Resolve settings with precedence: explicit argument > settings store > env."""
        env = cls.from_env()
        stored_url = await store.get("N8N_BASE_URL") if store is not None else None
        stored_key = await store.get("N8N_API_KEY") if store is not None else None
        return cls(
            api_key=api_key or stored_key or env.api_key,
            endpoint=base_url or stored_url or env.endpoint,
            timeout=env.timeout,
        )

    @property
    def base_url(self) -> str:
        return f"{self.endpoint}/api/v1"

    @property
    def is_configured(self) -> bool:
        return bool(self.endpoint and self.api_key)

    @property
    def headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            h["X-N8N-API-KEY"] = self.api_key
        return h
