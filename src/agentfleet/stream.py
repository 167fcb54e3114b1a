from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentfleet.locks import extract_file_path, extract_path_from_partial, is_file_modify_tool

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


class StreamEventKind(str, Enum):
    TEXT = "text"
    THINKING = "thinking"
    TOOL = "tool"
    TURN_COMPLETE = "turn_complete"
    RESULT = "result"
    SESSION = "session"
    USAGE = "usage"
    ERROR = "error"
    RAW = "raw"


@dataclass(slots=True)
class StreamEvent:
    kind: StreamEventKind
    text: str = ""
    tool_name: str | None = None
    path: str | None = None
    modifies_files: bool = False
    success: bool | None = None
    session_id: str | None = None
    partial: bool = False
    usage: dict[str, Any] = field(default_factory=dict)


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


class StreamParser:
    """Turns raw stdout lines into ``StreamEvent``s.

    Lines that only parse once joined with the next one are buffered; lines
    that are not JSON at all come back as ``RAW`` events.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, raw_line: str) -> list[StreamEvent]:
        line = strip_ansi(raw_line).strip()
        if not line:
            return []
        candidate = f"{self._buffer}{line}" if self._buffer else line
        try:
            payload = json.loads(candidate)
            self._buffer = ""
        except json.JSONDecodeError:
            if appears_partial_json(candidate) and candidate.lstrip().startswith(("{", "[")):
                self._buffer = candidate
                return []
            self._buffer = ""
            return [StreamEvent(StreamEventKind.RAW, text=line)]
        if not isinstance(payload, dict):
            return [StreamEvent(StreamEventKind.RAW, text=line)]
        return self.parse_event(payload)

    def flush(self) -> list[StreamEvent]:
        if not self._buffer:
            return []
        leftover, self._buffer = self._buffer, ""
        return [StreamEvent(StreamEventKind.RAW, text=leftover)]

    def parse_event(self, payload: dict[str, Any]) -> list[StreamEvent]:
        raise NotImplementedError


class ClaudeStreamParser(StreamParser):
    def __init__(self) -> None:
        super().__init__()
        self.saw_usage = False
        self._tool_name: str | None = None
        self._tool_json = ""
        self._tool_reported = False

    def parse_event(self, payload: dict[str, Any]) -> list[StreamEvent]:
        event_type = payload.get("type")
        if event_type == "stream_event" and isinstance(payload.get("event"), dict):
            return self.parse_event(payload["event"])
        if event_type == "assistant":
            return self._assistant(payload)
        if event_type == "content_block_start":
            return self._block_start(payload.get("content_block") or {})
        if event_type == "content_block_delta":
            return self._block_delta(payload.get("delta") or {})
        if event_type == "content_block_stop":
            return self._block_stop()
        if event_type == "message_start":
            message = payload.get("message") or {}
            return self._usage(message.get("usage"))
        if event_type == "message_delta":
            events = self._usage(payload.get("usage"))
            delta = payload.get("delta") or {}
            if delta.get("stop_reason") == "end_turn":
                events.append(StreamEvent(StreamEventKind.TURN_COMPLETE))
            return events
        if event_type == "system":
            session_id = payload.get("session_id") or payload.get("conversation_id")
            if isinstance(session_id, str) and session_id:
                return [StreamEvent(StreamEventKind.SESSION, session_id=session_id)]
            return []
        if event_type == "result":
            return self._result(payload)
        if event_type == "error":
            error = payload.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            return [StreamEvent(StreamEventKind.ERROR, text=str(message or "unknown error"))]
        return []

    def _assistant(self, payload: dict[str, Any]) -> list[StreamEvent]:
        message = payload.get("message") or {}
        events: list[StreamEvent] = []
        content = message.get("content")
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        for item in content or []:
            if not isinstance(item, dict):
                continue
            item_type = item.get("type")
            if item_type == "text" and item.get("text"):
                events.append(StreamEvent(StreamEventKind.TEXT, text=str(item["text"])))
            elif item_type == "thinking":
                thinking = str(item.get("thinking", ""))
                events.append(StreamEvent(StreamEventKind.THINKING, text=thinking))
            elif item_type == "tool_use":
                events.append(self._tool(item.get("name"), extract_file_path(item.get("input"))))
        if message.get("stop_reason") == "end_turn":
            events.append(StreamEvent(StreamEventKind.TURN_COMPLETE))
        return events

    def _tool(self, name: Any, path: str | None) -> StreamEvent:
        tool_name = str(name or "unknown")
        return StreamEvent(
            StreamEventKind.TOOL,
            tool_name=tool_name,
            path=path,
            modifies_files=is_file_modify_tool(tool_name),
        )

    def _block_start(self, block: dict[str, Any]) -> list[StreamEvent]:
        block_type = block.get("type")
        if block_type == "thinking":
            return [StreamEvent(StreamEventKind.THINKING)]
        if block_type != "tool_use":
            return []
        self._tool_name = str(block.get("name") or "unknown")
        self._tool_json = ""
        self._tool_reported = False
        path = extract_file_path(block.get("input"))
        if path is not None:
            self._tool_reported = True
            return [self._tool(self._tool_name, path)]
        return []

    def _block_delta(self, delta: dict[str, Any]) -> list[StreamEvent]:
        delta_type = delta.get("type")
        if delta_type == "text_delta" and delta.get("text"):
            return [StreamEvent(StreamEventKind.TEXT, text=str(delta["text"]), partial=True)]
        if delta_type == "thinking_delta":
            thinking = str(delta.get("thinking", ""))
            return [StreamEvent(StreamEventKind.THINKING, text=thinking, partial=True)]
        if delta_type == "input_json_delta" and self._tool_name is not None:
            self._tool_json += str(delta.get("partial_json", ""))
            if not self._tool_reported:
                path = extract_path_from_partial(self._tool_json)
                if path is not None:
                    self._tool_reported = True
                    return [self._tool(self._tool_name, path)]
        return []

    def _block_stop(self) -> list[StreamEvent]:
        if self._tool_name is None:
            return []
        events: list[StreamEvent] = []
        if not self._tool_reported:
            path = None
            if self._tool_json:
                try:
                    path = extract_file_path(json.loads(self._tool_json))
                except json.JSONDecodeError:
                    path = extract_path_from_partial(self._tool_json)
            events.append(self._tool(self._tool_name, path))
        self._tool_name = None
        self._tool_json = ""
        self._tool_reported = False
        return events

    def _usage(self, usage: Any) -> list[StreamEvent]:
        if not isinstance(usage, dict) or not usage:
            return []
        self.saw_usage = True
        return [StreamEvent(StreamEventKind.USAGE, usage=dict(usage))]

    def _result(self, payload: dict[str, Any]) -> list[StreamEvent]:
        subtype = payload.get("subtype")
        success = subtype == "success" and not payload.get("is_error", False)
        text = payload.get("result")
        if not isinstance(text, str):
            text = f"[{subtype}]" if subtype else ""
        usage = payload.get("usage")
        events = [
            StreamEvent(
                StreamEventKind.RESULT,
                text=text,
                success=success,
                usage=dict(usage) if isinstance(usage, dict) and not self.saw_usage else {},
            )
        ]
        session_id = payload.get("session_id")
        if isinstance(session_id, str) and session_id:
            events.append(StreamEvent(StreamEventKind.SESSION, session_id=session_id))
        return events


class CodexStreamParser(StreamParser):
    """Events from ``codex exec --json``."""

    def __init__(self) -> None:
        super().__init__()
        self._seen_changes: set[tuple[str, str]] = set()

    def parse_event(self, payload: dict[str, Any]) -> list[StreamEvent]:
        event_type = payload.get("type")
        if event_type == "thread.started" and payload.get("thread_id"):
            return [StreamEvent(StreamEventKind.SESSION, session_id=str(payload["thread_id"]))]
        if event_type in {"item.started", "item.updated", "item.completed"}:
            return self._item(payload.get("item") or {}, completed=event_type == "item.completed")
        if event_type == "turn.completed":
            usage = payload.get("usage")
            events: list[StreamEvent] = []
            if isinstance(usage, dict) and usage:
                events.append(
                    StreamEvent(
                        StreamEventKind.USAGE,
                        usage={
                            "input_tokens": usage.get("input_tokens", 0),
                            "output_tokens": usage.get("output_tokens", 0),
                            "cache_read_input_tokens": usage.get("cached_input_tokens", 0),
                        },
                    )
                )
            events.append(StreamEvent(StreamEventKind.TURN_COMPLETE))
            events.append(StreamEvent(StreamEventKind.RESULT, success=True))
            return events
        if event_type in {"turn.failed", "error"}:
            error = payload.get("error")
            message = error.get("message") if isinstance(error, dict) else payload.get("message")
            text = str(message or "unknown error")
            events = [StreamEvent(StreamEventKind.ERROR, text=text)]
            if event_type == "turn.failed":
                events.append(StreamEvent(StreamEventKind.RESULT, text=text, success=False))
            return events
        return []

    def _item(self, item: dict[str, Any], *, completed: bool) -> list[StreamEvent]:
        item_type = item.get("type")
        if item_type == "agent_message" and completed and item.get("text"):
            return [StreamEvent(StreamEventKind.TEXT, text=str(item["text"]))]
        if item_type == "reasoning" and completed:
            return [StreamEvent(StreamEventKind.THINKING, text=str(item.get("text", "")))]
        if item_type != "file_change":
            return []
        events: list[StreamEvent] = []
        item_id = str(item.get("id", ""))
        for change in item.get("changes") or []:
            if not isinstance(change, dict) or not change.get("path"):
                continue
            key = (item_id, str(change["path"]))
            if key in self._seen_changes:
                continue
            self._seen_changes.add(key)
            events.append(
                StreamEvent(
                    StreamEventKind.TOOL,
                    tool_name=f"file_change:{change.get('kind', 'update')}",
                    path=str(change["path"]),
                    modifies_files=True,
                )
            )
        return events
