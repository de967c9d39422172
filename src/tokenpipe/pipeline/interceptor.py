# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Incremental detection of tool calls in generated text.

The model requests a tool by emitting a JSON payload between markers:

    <tool_call>{"name": "add", "arguments": {"a": 15, "b": 27}}</tool_call>

Text arrives a few characters at a time and a marker may be split across
steps, so the interceptor holds back any tail that could still become a
marker. A complete block is committed as a call only if its payload parses,
names a registered tool and carries the tool's required arguments; anything
else is released unchanged as ordinary text.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from tokenpipe.exceptions import ToolProtocolViolation
from tokenpipe.pipeline.types import ToolDefinition

logger = logging.getLogger(__name__)

TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"


@dataclass(frozen=True)
class ParsedToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InterceptResult:
    text: str  # safe to emit
    call: ParsedToolCall | None = None


def partial_suffix_length(text: str, marker: str) -> int:
    """Length of the longest tail of ``text`` that is a proper prefix of ``marker``."""
    for size in range(min(len(text), len(marker) - 1), 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


class ToolCallInterceptor:
    """Splits a text stream into releasable text and completed tool calls."""

    def __init__(
        self,
        tools: Sequence[ToolDefinition],
        buffer_limit: int = 8192,
        open_marker: str = TOOL_CALL_OPEN,
        close_marker: str = TOOL_CALL_CLOSE,
    ):
        self._tools = {tool.name: tool for tool in tools}
        self.buffer_limit = buffer_limit
        self.open_marker = open_marker
        self.close_marker = close_marker

        self._buffer = ""
        self._capturing = False

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, text: str) -> InterceptResult:
        """
        Adds decoded text.

        Returns the text that can be emitted now and, if a block completed,
        the parsed call. Text following the closing marker stays buffered
        for the next call.
        """
        if not self._tools:
            return InterceptResult(text)

        self._buffer += text
        released: list[str] = []

        while self._buffer:
            if not self._capturing:
                start = self._buffer.find(self.open_marker)
                if start == -1:
                    keep = partial_suffix_length(self._buffer, self.open_marker)
                    cut = len(self._buffer) - keep
                    released.append(self._buffer[:cut])
                    self._buffer = self._buffer[cut:]
                    break
                released.append(self._buffer[:start])
                self._buffer = self._buffer[start:]
                self._capturing = True

            end = self._buffer.find(self.close_marker, len(self.open_marker))
            if end == -1:
                if len(self._buffer) > self.buffer_limit:
                    logger.debug(
                        "Tool call capture exceeded %d chars; releasing as text", self.buffer_limit
                    )
                    released.append(self._buffer)
                    self._buffer = ""
                    self._capturing = False
                break

            block_end = end + len(self.close_marker)
            payload = self._buffer[len(self.open_marker) : end]
            self._capturing = False
            try:
                call = self.parse_payload(payload)
            except ToolProtocolViolation as e:
                logger.debug("Ignoring tool call block: %s", e)
                released.append(self._buffer[:block_end])
                self._buffer = self._buffer[block_end:]
                continue

            self._buffer = self._buffer[block_end:]
            return InterceptResult("".join(released), call)

        return InterceptResult("".join(released))

    def finish(self) -> str:
        """Flushes everything still buffered, including an unterminated capture."""
        text, self._buffer = self._buffer, ""
        self._capturing = False
        return text

    def parse_payload(self, payload: str) -> ParsedToolCall:
        """
        Validates the JSON between the markers.

        Raises:
            ToolProtocolViolation: The payload is not a valid call of a registered tool.
        """
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ToolProtocolViolation("Tool call payload is not valid JSON", str(e)) from None
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ToolProtocolViolation("Tool call payload has no tool name")

        name = data["name"]
        tool = self._tools.get(name)
        if tool is None:
            raise ToolProtocolViolation(f"Unknown tool: {name}")

        arguments = data.get("arguments", data.get("parameters", {}))
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                raise ToolProtocolViolation(f"Arguments of {name} are not valid JSON", str(e)) from None
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ToolProtocolViolation(f"Arguments of {name} must be an object")

        missing = [key for key in tool.required if key not in arguments]
        if missing:
            raise ToolProtocolViolation(
                f"Tool call {name} is missing required arguments", ", ".join(missing)
            )
        return ParsedToolCall(name=name, arguments=arguments)
