"""Persisted key/value settings store.

Holds connection details and model credentials entered at runtime (for
example through POST /settings) so they survive restarts. Values here take
precedence over environment variables but lose to explicit per-call
arguments.

Table schema:
    settings (
        key        TEXT PRIMARY KEY,
        value      TEXT NOT NULL,
        updated_at REAL NOT NULL
    )
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("n8n_dev_agent.settings_store")

# Keys read by the runtime client and the reasoning engine factory.
N8N_BASE_URL = "N8N_BASE_URL"
N8N_API_KEY = "N8N_API_KEY"
CONNECTION_KEYS: frozenset[str] = frozenset({N8N_BASE_URL, N8N_API_KEY})

# Values for these keys are masked by mask_secrets().
SECRET_KEYS: frozenset[str] = frozenset({N8N_API_KEY, "ANTHROPIC_API_KEY", "OPENAI_API_KEY"})

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS settings (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at REAL NOT NULL
)
"""


class SettingsStore:
    """SQLite-backed string key → string value store."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn = None

    async def setup(self) -> None:
        """Open the SQLite connection and create the settings table."""
        import aiosqlite
        self._conn = await aiosqlite.connect(self._db_path)
        await self._conn.execute(_CREATE_TABLE)
        await self._conn.commit()
        logger.info("SettingsStore ready: %s", self._db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @classmethod
    async def open(cls, db_path: str) -> SettingsStore:
        store = cls(db_path)
        await store.setup()
        return store

    def _require_conn(self):
        if not self._conn:
            raise RuntimeError("SettingsStore.setup() not called")
        return self._conn

    async def get(self, key: str) -> str | None:
        conn = self._require_conn()
        async with conn.execute("SELECT value FROM settings WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        conn = self._require_conn()
        await conn.execute(
            "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, value, time.time()),
        )
        await conn.commit()
        logger.info("Setting updated: %s", key)

    async def get_all(self) -> dict[str, str]:
        conn = self._require_conn()
        result: dict[str, str] = {}
        async with conn.execute("SELECT key, value FROM settings ORDER BY key") as cur:
            async for key, value in cur:
                result[key] = value
        return result


def mask_secrets(values: dict[str, str]) -> dict[str, str]:
    """Return a copy with secret values reduced to their last four characters."""
    masked: dict[str, str] = {}
    for key, value in values.items():
        if key in SECRET_KEYS and value:
            masked[key] = "****" + value[-4:] if len(value) > 4 else "****"
        else:
            masked[key] = value
    return masked
