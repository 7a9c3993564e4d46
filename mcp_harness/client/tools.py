"""Tool invocation: call tools on servers and normalize responses."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from mcp_harness.client.cache import SessionCache
from mcp_harness.errors import HarnessError, ToolCallError
from mcp_harness.models import ToolCallResult

log = logging.getLogger(__name__)


def _field(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def normalize_response(response: Any) -> Any:
    """Reduce a tool call response to its useful payload.

    The first ``text`` content item is JSON-decoded, or returned verbatim if
    it is not JSON.  Responses without a usable text item are returned whole,
    as plain JSON-compatible data.
    """
    content = _field(response, "content")
    if isinstance(content, list):
        text_item = next(
            (item for item in content if _field(item, "type") == "text"), None
        )
        text = _field(text_item, "text") if text_item is not None else None
        if text:
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text

    if hasattr(response, "model_dump"):
        return response.model_dump(by_alias=True, mode="json", exclude_none=True)
    return response


def _elapsed_ms(start: float) -> int:
    return int(round((time.monotonic() - start) * 1000))


class ToolInvoker:
    def __init__(self, cache: SessionCache) -> None:
        self._cache = cache

    async def invoke(
        self,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> ToolCallResult:
        """Call ``tool_name`` on ``server_name``; never raises.

        Failures come back as a result with ``error`` and ``error_type`` set.
        """
        start = time.monotonic()
        try:
            session = await self._cache.acquire(server_name)
            log.debug(
                "Calling tool '%s' on server '%s' with %s",
                tool_name, server_name, arguments,
            )
            response = await session.call_tool(tool_name, arguments or {})
        except Exception as exc:
            duration = _elapsed_ms(start)
            log.error(
                "Error calling tool '%s' on server '%s': %s",
                tool_name, server_name, exc,
            )
            return ToolCallResult(
                result=None,
                duration_ms=duration,
                error=str(exc) or type(exc).__name__,
                error_type=(
                    exc.error_type if isinstance(exc, HarnessError)
                    else type(exc).__name__
                ),
            )

        duration = _elapsed_ms(start)
        log.debug("Tool call completed in %dms", duration)
        return ToolCallResult(
            result=normalize_response(response),
            duration_ms=duration,
            is_error=bool(_field(response, "isError")),
        )

    async def list_tool_names(self, server_name: str) -> list[str]:
        """Names of the tools a server advertises.

        Acquisition failures (NotFoundError, ServerConnectionError) propagate.
        """
        session = await self._cache.acquire(server_name)
        log.debug("Listing tools for server '%s'", server_name)
        try:
            response = await session.list_tools()
        except Exception as exc:
            log.error("Error listing tools for server '%s': %s", server_name, exc)
            raise ToolCallError(server_name, "listTools", str(exc)) from exc

        tools = _field(response, "tools") or []
        log.debug("Extracted %d tools from response", len(tools))
        return [_field(tool, "name") for tool in tools]
