"""OpenRouter implementation of LLMProvider."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from taskbridge.errors import UpstreamError
from taskbridge.llm.base import LLMProvider
from taskbridge.models import LLMResponse, LLMToolCall

_LOGGER = logging.getLogger(__name__)

_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [2, 5, 10]


class OpenRouterProvider(LLMProvider):
    """LLM provider using OpenRouter's OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout_seconds: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url
        self._timeout = httpx.Timeout(timeout_seconds)

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> LLMResponse:
        payload: dict[str, Any] = {"model": self._model, "messages": messages}
        if tools:
            payload["tools"] = tools
        if response_format:
            payload["response_format"] = response_format

        try:
            async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout) as client:
                for attempt in range(_MAX_RETRIES + 1):
                    response = await client.post(
                        "/chat/completions",
                        headers={
                            "Authorization": f"Bearer {self._api_key}",
                            "Content-Type": "application/json",
                        },
                        json=payload,
                    )
                    if response.status_code == 429 and attempt < _MAX_RETRIES:
                        wait = _RETRY_BACKOFF_SECONDS[attempt]
                        _LOGGER.warning(
                            "OpenRouter rate limited (429), retrying in %ds (attempt %d/%d)",
                            wait,
                            attempt + 1,
                            _MAX_RETRIES,
                        )
                        await asyncio.sleep(wait)
                        continue
                    response.raise_for_status()
                    break
                data = response.json()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"OpenRouter request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError(f"OpenRouter returned a non-JSON body: {exc}") from exc

        try:
            first = data["choices"][0]
            choice = first["message"]
            if not isinstance(choice, dict):
                raise TypeError(f"message is {type(choice).__name__}")
            finish_reason = first.get("finish_reason")
            content = choice.get("content") or ""
            if not isinstance(content, str):
                raise TypeError(f"content is {type(content).__name__}")
            result = LLMResponse(
                content=content,
                tool_calls=[_parse_tool_call(tc) for tc in choice.get("tool_calls") or []],
                raw=data,
            )
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise UpstreamError(f"Malformed OpenRouter response: {str(data)[:200]}") from exc
        _LOGGER.info(
            "LLM response: finish_reason=%r content=%r tool_calls=%d",
            finish_reason,
            result.content[:200],
            len(result.tool_calls),
        )
        return result


def _parse_tool_call(tool_call: dict[str, Any]) -> LLMToolCall:
    function_data = tool_call.get("function", {})
    raw_arguments = function_data.get("arguments") or "{}"
    name = function_data.get("name", "")
    try:
        parsed = json.loads(raw_arguments)
    except json.JSONDecodeError as exc:
        return LLMToolCall(name=name, arguments={}, call_id=tool_call.get("id"), parse_error=f"Invalid JSON arguments: {exc}")
    if not isinstance(parsed, dict):
        return LLMToolCall(name=name, arguments={}, call_id=tool_call.get("id"), parse_error="Arguments must be a JSON object")
    return LLMToolCall(name=name, arguments=parsed, call_id=tool_call.get("id"))
