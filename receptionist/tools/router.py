"""Tool Call Router — dispatches the agent's mid-conversation tool calls.

The agent stream is strictly turn-based: every ``tool_call`` must get exactly
one ``tool_response`` or ``tool_error`` back or the conversation stalls.
``ToolCallEnvelope`` enforces "at most one" (later replies are dropped) and
``ToolCallRouter.route`` enforces "at least one" (a fallback error is sent if
nothing else was).

Wire shapes::

    → {"type": "tool_call", "name": ..., "toolCallId": ..., "parameters": "<json>"}
    ← {"type": "tool_response", "toolCallId": ..., "content": "<json>"}
    ← {"type": "tool_error", "toolCallId": ..., "error": ..., "code": ...,
       "content": ..., "fallback_content": ...}

Replies echo the id key the call arrived with (``toolCallId`` or
``tool_call_id``).
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from receptionist.errors import (
    Ambiguous,
    OutsideBusinessHours,
    UnsupportedTool,
    UpstreamFailure,
    ValidationError,
    call_with_timeout,
)

log = logging.getLogger("receptionist.tools.router")

ReplySink = Callable[[dict], Awaitable[None]]

FALLBACK_CONTENT = "I could not book that time. Would you like to try another time?"
UNHANDLED_FALLBACK = "Something went wrong while booking. Want to try a different time?"


class ToolErrorKind(str, enum.Enum):
    UNSUPPORTED_TOOL = "UnsupportedTool"
    MALFORMED_PARAMETERS = "MalformedParameters"
    UPSTREAM_FAILURE = "UpstreamFailure"
    OUTSIDE_HOURS = "OutsideHours"
    AMBIGUOUS = "Ambiguous"


# ── Envelope ─────────────────────────────────────────────────────

class ToolCallEnvelope:
    """One tool call and the sink its single reply goes to."""

    def __init__(
        self,
        tool_call_id: str,
        name: str,
        parameters: Any,
        reply: ReplySink,
        call_sid: str = "",
        id_key: str = "toolCallId",
    ) -> None:
        self.tool_call_id = tool_call_id
        self.name = name
        self.parameters = parameters
        self.call_sid = call_sid
        self._reply = reply
        self._id_key = id_key
        self._replied = False

    @classmethod
    def from_message(
        cls, message: dict, reply: ReplySink, call_sid: str = "",
    ) -> "ToolCallEnvelope":
        """Build from an agent ``tool_call`` message, accepting both key styles."""
        id_key = "toolCallId" if "toolCallId" in message else "tool_call_id"
        return cls(
            tool_call_id=message.get(id_key) or "",
            name=message.get("name") or message.get("tool_name") or "",
            parameters=message.get("parameters", message.get("args", "{}")),
            reply=reply,
            call_sid=call_sid,
            id_key=id_key,
        )

    @property
    def replied(self) -> bool:
        return self._replied

    async def respond(self, content: Any) -> None:
        if not isinstance(content, str):
            content = json.dumps(content, default=str)
        await self._send({"type": "tool_response", self._id_key: self.tool_call_id, "content": content})

    async def fail(
        self,
        kind: ToolErrorKind,
        error: str,
        content: str = "",
        fallback: str = "",
    ) -> None:
        payload = {
            "type": "tool_error",
            self._id_key: self.tool_call_id,
            "error": error,
            "code": kind.value,
            "content": content or error,
        }
        if fallback:
            payload["fallback_content"] = fallback
        await self._send(payload)

    async def _send(self, payload: dict) -> None:
        if self._replied:
            log.warning(
                "Dropping second reply for tool call %s (%s)",
                self.tool_call_id, payload["type"],
            )
            return
        self._replied = True
        try:
            await self._reply(payload)
        except Exception as e:
            # The agent stream is gone; the bridge tears the call down
            log.error("Could not deliver %s for %s: %s", payload["type"], self.tool_call_id, e)


# ── Registry ─────────────────────────────────────────────────────

ToolHandler = Callable[[Any, ToolCallEnvelope], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    params_model: type[BaseModel]
    handler: ToolHandler
    description: str = ""

    def parse(self, raw: Any) -> BaseModel:
        """Decode and validate raw parameters; raises ValidationError."""
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw or "{}")
            except json.JSONDecodeError as e:
                raise ValidationError("Parameters were not valid JSON") from e
        if not isinstance(raw, dict):
            raise ValidationError("Parameters must be a JSON object")
        try:
            return self.params_model.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(_summarize(e)) from e


def _summarize(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
    return "; ".join(parts) or "invalid parameters"


class ToolRegistry:
    """Static name → definition map, filled at startup and read-only after."""

    def __init__(self, definitions: Optional[list[ToolDefinition]] = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            raise ValueError(f"tool {definition.name!r} already registered")
        self._tools[definition.name] = definition

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def require(self, name: str) -> ToolDefinition:
        definition = self._tools.get(name)
        if definition is None:
            raise UnsupportedTool(f"no tool named {name!r}")
        return definition

    @property
    def names(self) -> list[str]:
        return sorted(self._tools)


# ── Router ───────────────────────────────────────────────────────

class ToolCallRouter:
    def __init__(self, registry: ToolRegistry, timeout: float = 10.0) -> None:
        self._registry = registry
        self._timeout = timeout

    async def route(self, envelope: ToolCallEnvelope) -> None:
        """Dispatch ``envelope``; exactly one reply is written whatever happens."""
        try:
            await self._dispatch(envelope)
        except Exception:
            log.exception("Unhandled error routing tool call %s", envelope.tool_call_id)
        finally:
            if not envelope.replied:
                await envelope.fail(
                    ToolErrorKind.UPSTREAM_FAILURE,
                    "Unhandled tool error",
                    fallback=UNHANDLED_FALLBACK,
                )

    async def _dispatch(self, envelope: ToolCallEnvelope) -> None:
        log.info("Tool call %s: %s", envelope.tool_call_id, envelope.name or "<unnamed>")

        try:
            definition = self._registry.require(envelope.name)
        except UnsupportedTool as e:
            log.warning("Unsupported tool: %s", e)
            await envelope.fail(
                ToolErrorKind.UNSUPPORTED_TOOL,
                "Tool not found",
                "The requested tool is not supported by this server",
            )
            return

        try:
            params = definition.parse(envelope.parameters)
        except ValidationError as e:
            log.warning("Malformed parameters for %s: %s", envelope.name, e)
            await envelope.fail(ToolErrorKind.MALFORMED_PARAMETERS, "Malformed parameters", str(e))
            return

        try:
            content = await call_with_timeout(
                definition.handler(params, envelope), self._timeout, f"Tool {envelope.name}",
            )
        except ValidationError as e:
            await envelope.fail(ToolErrorKind.MALFORMED_PARAMETERS, "Malformed parameters", str(e))
        except OutsideBusinessHours as e:
            await envelope.fail(ToolErrorKind.OUTSIDE_HOURS, "Outside business hours", str(e), fallback=str(e))
        except Ambiguous as e:
            await envelope.fail(ToolErrorKind.AMBIGUOUS, "Missing date or time", str(e), fallback=str(e))
        except UpstreamFailure as e:
            log.error("Tool %s failed: %s", envelope.name, e)
            await envelope.fail(
                ToolErrorKind.UPSTREAM_FAILURE, "Booking failed", str(e)[:500], fallback=FALLBACK_CONTENT,
            )
        else:
            await envelope.respond(content)
