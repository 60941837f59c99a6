"""Provider contract and the shared httpx plumbing behind every vendor adapter.

Adapters translate the neutral transcript into one vendor's wire format
and normalize the reply back into a ProviderReply. Transport and API
failures never escape ``send_chat``: they come back as a synthetic
assistant message ``❌ <Vendor> error: <detail>``. Only cancellation is
raised, as TurnCancelled.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from tandem.agent.cancellation import CancelToken, TurnCancelled, race
from tandem.agent.models import Message, ProviderReply, ToolDefinition, drop_unanswered_calls

logger = logging.getLogger(__name__)

# Statuses worth a single retry
_RETRY_STATUSES = frozenset({429, 500, 502, 503, 529})
_MAX_RETRY_AFTER = 30.0  # seconds


@dataclass
class ProviderConfig:
    api_key: str
    base_url: str
    model: str
    max_tokens: int | None = None


class ProviderError(Exception):
    """A vendor call failed; the message is the user-facing detail."""


class ChatProvider(Protocol):
    async def send_chat(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition] = (),
        cancel: CancelToken | None = None,
    ) -> ProviderReply: ...

    async def aclose(self) -> None: ...


class HttpChatProvider:
    """Base for adapters that speak JSON over HTTPS.

    Subclasses implement ``build_request`` (path, payload, query params)
    and ``parse_response``; they may extend ``default_headers``.
    """

    vendor = "Provider"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        temperature: float | None = 0.4,
        timeout_connect: float = 10.0,
        timeout_read: float = 300.0,
        max_retries: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.temperature = temperature
        self.max_retries = max(0, max_retries)

        timeout = httpx.Timeout(
            connect=timeout_connect,
            read=timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers=self.default_headers(),
            timeout=timeout,
            limits=limits,
            transport=transport,
        )

    def default_headers(self) -> dict[str, str]:
        return {"content-type": "application/json"}

    def build_request(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
    ) -> tuple[str, dict[str, Any], dict[str, str] | None]:
        raise NotImplementedError

    def parse_response(self, data: dict[str, Any]) -> ProviderReply:
        raise NotImplementedError

    async def send_chat(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition] = (),
        cancel: CancelToken | None = None,
    ) -> ProviderReply:
        logger.info(
            "Dispatching %d messages to %s (model=%s, tools=%d)",
            len(messages), self.vendor, self.config.model, len(tools),
        )
        try:
            return await race(self._exchange(messages, tools), cancel)
        except TurnCancelled:
            logger.info("%s request cancelled", self.vendor)
            raise
        except ProviderError as e:
            logger.warning("%s error: %s", self.vendor, e)
            return self.error_reply(str(e))
        except httpx.HTTPError as e:
            logger.warning("%s transport error: %s", self.vendor, e)
            return self.error_reply(str(e) or type(e).__name__)

    def error_reply(self, detail: str) -> ProviderReply:
        return ProviderReply(
            message=Message.assistant(f"❌ {self.vendor} error: {detail}"),
            is_error=True,
        )

    async def _exchange(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
    ) -> ProviderReply:
        path, payload, params = self.build_request(drop_unanswered_calls(messages), tools)
        data = await self._post(path, payload, params)
        try:
            return self.parse_response(data)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError(f"Malformed response: {e}") from e

    async def _post(
        self,
        path: str,
        payload: dict[str, Any],
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """POST with a single retry for rate limits, server errors and timeouts."""
        for attempt in range(self.max_retries + 1):
            can_retry = attempt < self.max_retries
            try:
                response = await self._http.post(path, json=payload, params=params)
            except httpx.TimeoutException as e:
                if can_retry:
                    logger.warning("%s timeout, retrying: %s", self.vendor, e)
                    await asyncio.sleep(1)
                    continue
                raise ProviderError(f"Request timed out: {e}") from e

            if response.is_success:
                try:
                    data = response.json()
                except ValueError as e:
                    raise ProviderError(f"Invalid JSON in response: {e}") from e
                if not isinstance(data, dict):
                    raise ProviderError("Unexpected response body")
                return data

            detail = self._error_detail(response)
            if response.status_code in _RETRY_STATUSES and can_retry:
                retry_after = self._retry_after(response)
                logger.warning(
                    "%s API error %d, retrying in %.1fs: %s",
                    self.vendor, response.status_code, retry_after, detail,
                )
                await asyncio.sleep(retry_after)
                continue
            raise ProviderError(detail)

        raise ProviderError("Request failed")

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        try:
            value = float(response.headers.get("retry-after", "1"))
        except ValueError:
            value = 1.0
        return max(0.0, min(value, _MAX_RETRY_AFTER))

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str) and error:
                return error
            if body.get("message"):
                return str(body["message"])
        return f"HTTP {response.status_code}: {response.text[:500]}"

    async def aclose(self) -> None:
        await self._http.aclose()
