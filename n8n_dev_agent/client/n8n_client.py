"""Async n8n public REST API client using httpx.

Every call goes through _send(): a failing request is logged with method,
path, status and response body, then the original httpx exception is
re-raised so callers see exactly what the runtime returned.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from n8n_dev_agent.client.config import Settings

logger = logging.getLogger("n8n_dev_agent.client")


class RuntimeNotConfiguredError(RuntimeError):
    """Raised when a call is made before a base URL and API key are known."""


class N8nClient:
    """Thin async wrapper around the n8n workflow, execution, credential and variable endpoints."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self._settings = settings
        self._client: httpx.AsyncClient | None = None
        self._build(settings)

    def _build(self, settings: Settings) -> None:
        self._settings = settings
        if not settings.is_configured:
            logger.warning("n8n connection details not fully set (endpoint=%s)", settings.endpoint)
            self._client = None
            return
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers=settings.headers,
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
            transport=self._transport,
        )
        logger.info("n8n client configured: %s", settings.base_url)

    @property
    def settings(self) -> Settings:
        return self._settings

    async def reconfigure(self, settings: Settings) -> None:
        """Swap connection details at runtime; the old httpx client is closed."""
        old = self._client
        self._build(settings)
        if old is not None:
            await old.aclose()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        payload: Any = None,
    ) -> Any:
        if self._client is None:
            raise RuntimeNotConfiguredError(
                "n8n is not configured. Set N8N_BASE_URL and N8N_API_KEY "
                "(environment or POST /settings)."
            )
        try:
            r = await self._client.request(method, path, params=params, json=payload)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "%s %s -> %s: %s", method, path, e.response.status_code, e.response.text[:2000],
            )
            raise
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise
        logger.debug("%s %s -> %s", method, path, r.status_code)
        return r.json() if r.text.strip() else {"success": True}

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._send("GET", path, params=_clean(params))

    async def _post(self, path: str, payload: Any = None) -> Any:
        return await self._send("POST", path, payload=payload if payload is not None else {})

    async def _put(self, path: str, payload: Any = None) -> Any:
        return await self._send("PUT", path, payload=payload if payload is not None else {})

    async def _delete(self, path: str) -> Any:
        return await self._send("DELETE", path)

    # ==================================================================
    # WORKFLOWS
    # ==================================================================

    async def list_workflows(self, **filters: Any) -> list[dict]:
        data = await self._get("/workflows", params=filters)
        # list endpoints wrap rows as {"data": [...], "nextCursor": ...}
        if isinstance(data, dict) and "data" in data:
            return data["data"]
        return data

    async def get_workflow(self, workflow_id: str) -> dict:
        return await self._get(f"/workflows/{workflow_id}")

    async def create_workflow(self, workflow: dict[str, Any]) -> dict:
        payload = {
            **workflow,
            "settings": workflow.get("settings") or {},
            "nodes": workflow.get("nodes") or [],
            "connections": workflow.get("connections") or {},
        }
        logger.info("Creating workflow: %s", payload.get("name"))
        return await self._post("/workflows", payload)

    async def update_workflow(self, workflow_id: str, payload: dict[str, Any]) -> dict:
        return await self._put(f"/workflows/{workflow_id}", payload)

    async def delete_workflow(self, workflow_id: str) -> Any:
        return await self._delete(f"/workflows/{workflow_id}")

    async def activate_workflow(self, workflow_id: str) -> Any:
        return await self._post(f"/workflows/{workflow_id}/activate")

    async def deactivate_workflow(self, workflow_id: str) -> Any:
        return await self._post(f"/workflows/{workflow_id}/deactivate")

    async def execute_workflow(self, workflow_id: str, data: dict[str, Any] | None = None) -> Any:
        return await self._post(f"/workflows/{workflow_id}/execute", data or {})

    # ==================================================================
    # EXECUTIONS
    # ==================================================================

    async def list_executions(self, **filters: Any) -> Any:
        return await self._get("/executions", params=filters)

    async def get_execution(self, execution_id: str) -> Any:
        return await self._get(f"/executions/{execution_id}")

    async def retry_execution(self, execution_id: str, load_workflow: bool = True) -> Any:
        return await self._post(f"/executions/{execution_id}/retry", {"loadWorkflow": load_workflow})

    # ==================================================================
    # CREDENTIALS
    # ==================================================================

    async def create_credential(self, data: dict[str, Any]) -> Any:
        return await self._post("/credentials", data)

    # ==================================================================
    # VARIABLES
    # ==================================================================

    async def list_variables(self) -> Any:
        data = await self._get("/variables")
        if isinstance(data, dict) and "data" in data:
            return data["data"]
        return data

    async def create_variable(self, key: str, value: str) -> Any:
        return await self._post("/variables", {"key": key, "value": value})

    async def update_variable(self, variable_id: str, key: str | None = None, value: str | None = None) -> Any:
        return await self._put(f"/variables/{variable_id}", _clean({"key": key, "value": value}))

    async def delete_variable(self, variable_id: str) -> Any:
        return await self._delete(f"/variables/{variable_id}")


def _clean(params: dict[str, Any] | None) -> dict[str, Any] | None:
    """Drop None values; booleans are sent as lowercase strings."""
    if not params:
        return None
    out: dict[str, Any] = {}
    for k, v in params.items():
        if v is None:
            continue
        out[k] = str(v).lower() if isinstance(v, bool) else v
    return out or None
