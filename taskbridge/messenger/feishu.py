"""Feishu (Lark) implementation of Messenger."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from taskbridge.errors import UpstreamError
from taskbridge.messenger.base import Messenger

_LOGGER = logging.getLogger(__name__)

# Refresh the tenant token this long before the platform says it expires.
_TOKEN_EXPIRY_MARGIN_SECONDS = 60


class FeishuMessenger(Messenger):
    """Messenger over the Feishu open API using a cached tenant access token."""

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: str = "https://open.feishu.cn/open-apis",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._app_id = app_id
        self._app_secret = app_secret
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=httpx.Timeout(timeout_seconds)
        )
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send_text(
        self,
        receive_id: str,
        text: str,
        id_type: str = "open_id",
        reply_to: str | None = None,
    ) -> None:
        body = {"msg_type": "text", "content": json.dumps({"text": text}, ensure_ascii=False)}
        if reply_to:
            try:
                await self._request("POST", f"/im/v1/messages/{reply_to}/reply", json=body)
                return
            except UpstreamError as exc:
                _LOGGER.warning("Thread reply to %s failed, sending plain message: %s", reply_to, exc)
        await self._request(
            "POST",
            "/im/v1/messages",
            params={"receive_id_type": id_type},
            json={"receive_id": receive_id, **body},
        )

    async def get_user_identity(self, open_id: str) -> dict[str, Any] | None:
        try:
            data = await self._request(
                "GET", f"/contact/v3/users/{open_id}", params={"user_id_type": "open_id"}
            )
        except UpstreamError as exc:
            _LOGGER.warning("Identity lookup failed for %s: %s", open_id, exc)
            return None
        user = (data.get("data") or {}).get("user") or {}
        if not user:
            return None
        return {
            "name": user.get("name"),
            "email": user.get("enterprise_email") or user.get("email"),
            "user_id": user.get("user_id"),
        }

    async def _tenant_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            response = await self._client.post(
                "/auth/v3/tenant_access_token/internal",
                json={"app_id": self._app_id, "app_secret": self._app_secret},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Token request failed: {exc}") from exc
        data = response.json()
        token = data.get("tenant_access_token")
        if not token:
            raise UpstreamError(f"Token request rejected: code={data.get('code')} msg={data.get('msg')}")
        self._token = token
        self._token_expires_at = time.monotonic() + int(data.get("expire", 0)) - _TOKEN_EXPIRY_MARGIN_SECONDS
        return token

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        token = await self._tenant_token()
        try:
            response = await self._client.request(
                method,
                path,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                **kwargs,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"{method} {path} failed: {exc}") from exc
        data = response.json()
        if data.get("code", 0) != 0:
            raise UpstreamError(f"{method} {path} rejected: code={data.get('code')} msg={data.get('msg')}")
        return data
