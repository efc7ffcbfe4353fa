"""REST control surface of the remote session service.

Thin async wrappers over aiohttp. Every call maps HTTP 401 (or a
recognized auth error name in the response body) to AuthError and any
other failure to RequestError carrying the status text.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from .config import ClientConfig
from .errors import AuthError, RequestError, is_auth_error
from .models import ModelDescriptor

logger = logging.getLogger(__name__)


def _model_payload(model: ModelDescriptor | dict | None) -> dict[str, str] | None:
    if model is None:
        return None
    if isinstance(model, ModelDescriptor):
        return model.to_dict()
    return dict(model)


class RestClient:
    """Async client for the session service's REST endpoints."""

    def __init__(
        self,
        config: ClientConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return self._config.base_url

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", **self._config.auth_header}

    @property
    def session(self) -> aiohttp.ClientSession:
        """Shared HTTP session, created lazily inside the running loop."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ── Request plumbing ──

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        expect_json: bool = True,
    ) -> Any:
        url = f"{self.base_url}{path}"
        if params:
            params = {k: str(v) for k, v in params.items() if v is not None}
        timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)
        logger.debug("%s %s (%s)", method, url, operation)
        try:
            async with self.session.request(
                method,
                url,
                headers=self.headers,
                json=body,
                params=params or None,
                timeout=timeout,
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise self._error_for(operation, resp.status, resp.reason or "", text)
                if not expect_json or not text:
                    return None
                try:
                    return json.loads(text)
                except json.JSONDecodeError as exc:
                    raise RequestError(
                        operation, resp.status, "Invalid JSON response"
                    ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise RequestError(operation, None, str(exc) or type(exc).__name__) from exc

    @staticmethod
    def _error_for(operation: str, status: int, reason: str, text: str) -> RequestError:
        if status == 401:
            return AuthError(operation=operation)
        try:
            data = json.loads(text) if text else None
        except json.JSONDecodeError:
            data = None
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict) and is_auth_error(error):
            return AuthError(
                error.get("message") or "Authentication failed",
                details=error,
                operation=operation,
            )
        return RequestError(operation, status, reason, text)

    # ── Sessions ──

    async def create_session(
        self,
        *,
        title: str | None = None,
        agent: str | None = None,
        directory: str | None = None,
        model: ModelDescriptor | dict | None = None,
        secondary_model: ModelDescriptor | dict | None = None,
    ) -> dict[str, Any]:
        body = {
            "title": title,
            "agent": agent,
            "directory": directory,
            "model": _model_payload(model),
            "secondaryModel": _model_payload(secondary_model),
        }
        return await self._request(
            "POST", "/session", "create session",
            body={k: v for k, v in body.items() if v is not None},
        )

    async def load_session(self, session_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/session/{session_id}", "load session")

    async def update_session(
        self, session_id: str, *, title: str | None = None
    ) -> dict[str, Any]:
        body = {"title": title} if title is not None else {}
        return await self._request(
            "PATCH", f"/session/{session_id}", "update session", body=body
        )

    async def list_sessions(
        self,
        *,
        limit: int = 20,
        search: str | None = None,
        start: int | None = None,
    ) -> list[dict[str, Any]]:
        result = await self._request(
            "GET", "/session", "list sessions",
            params={"limit": limit, "search": search, "start": start},
        )
        return result or []

    async def abort_session(self, session_id: str) -> None:
        await self._request(
            "POST", f"/session/{session_id}/abort", "abort session",
            expect_json=False,
        )

    # ── Messages and diffs ──

    async def get_messages(
        self, session_id: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        result = await self._request(
            "GET", f"/session/{session_id}/message", "get messages",
            params={"limit": limit} if limit else None,
        )
        return result or []

    async def get_diffs(self, session_id: str) -> list[dict[str, Any]]:
        result = await self._request(
            "GET", f"/session/{session_id}/diff", "get session diffs"
        )
        return result or []

    async def send_message(
        self,
        session_id: str,
        text: str,
        *,
        agent: str | None = None,
        model: ModelDescriptor | dict | None = None,
        system: str | None = None,
    ) -> dict[str, Any] | None:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if agent:
            body["agent"] = agent
        if model is not None:
            body["model"] = _model_payload(model)
        if system:
            body["system"] = system
        return await self._request(
            "POST", f"/session/{session_id}/message", "send message", body=body
        )

    # ── Questions and permissions ──

    async def reply_to_question(self, request_id: str, answers: list[Any]) -> None:
        await self._request(
            "POST", f"/question/{request_id}/reply", "reply to question",
            body={"answers": answers}, expect_json=False,
        )

    async def reply_to_permission(self, request_id: str, approved: bool) -> None:
        await self._request(
            "POST", f"/permission/{request_id}/reply", "grant permission",
            body={"reply": "allow" if approved else "deny"}, expect_json=False,
        )

    # ── Agents, config, providers ──

    async def get_agents(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/agent", "get agents") or []

    async def get_config(self) -> dict[str, Any]:
        return await self._request("GET", "/config", "get config") or {}

    async def patch_config(self, updates: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "PATCH", "/config", "update config", body=updates
        ) or {}

    async def list_providers(self) -> dict[str, Any]:
        return await self._request("GET", "/provider", "list providers") or {}

    async def list_connected_models(self) -> list[dict[str, str]]:
        """Models of connected providers as ``{providerID, modelID, name}``, by name."""
        data = await self.list_providers()
        connected = set(data.get("connected") or [])
        models: list[dict[str, str]] = []
        for provider in data.get("all") or []:
            if provider.get("id") not in connected:
                continue
            for model in (provider.get("models") or {}).values():
                models.append({
                    "providerID": provider["id"],
                    "modelID": model["id"],
                    "name": model.get("name") or model["id"],
                })
        models.sort(key=lambda m: m["name"])
        return models
