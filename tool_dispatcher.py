"""Tool-call batch dispatch with one correlated reply per batch.

Every request in a batch gets exactly one response, whether its handler
succeeded, raised, or does not exist. Responses are sent together only
after all handlers in the batch have finished.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from session_events import CapabilityDisabled
from tool_manifest import ToolContext, ToolSpec

logger = logging.getLogger(__name__)

DISABLED_RESULT = "capability disabled"


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    args: dict = field(default_factory=dict)

    @classmethod
    def from_wire(cls, data: dict) -> "ToolCallRequest":
        args = data.get("args") or {}
        if isinstance(args, str):
            try:
                args = json.loads(args) if args.strip() else {}
            except json.JSONDecodeError:
                logger.warning("Unparseable args for tool call %s", data.get("id"))
                args = {}
        if not isinstance(args, dict):
            args = {}
        return cls(id=str(data.get("id", "")), name=str(data.get("name", "")), args=args)


@dataclass(frozen=True)
class ToolCallResponse:
    id: str
    name: str
    result: str

    def to_wire(self) -> dict:
        return {"id": self.id, "name": self.name, "result": self.result}


class ToolDispatcher:
    """Routes tool-call batches to handlers and sends the reply batch.

    Args:
        toolset: name -> ToolSpec, from tool_manifest.build_toolset()
        context: ToolContext passed to every handler
        send: async callable taking the outbound ``toolResponse`` message
        on_log: optional callback(kind, message, data) for the session log
    """

    def __init__(self, toolset: dict[str, ToolSpec], context: ToolContext,
                 send: Callable[[dict], Awaitable[None]],
                 on_log: Callable[..., None] | None = None):
        self._toolset = toolset
        self._context = context
        self._send = send
        self._on_log = on_log or (lambda kind, message, data=None: None)

    async def on_tool_call_batch(self, requests: list[ToolCallRequest]) -> list[ToolCallResponse]:
        """Run every request concurrently, then send one response batch."""
        # Handler lookup happens up front so toolset changes mid-batch cannot
        # split a batch across two tables
        routed = [(req, self._toolset.get(req.name)) for req in requests]
        for req, spec in routed:
            self._on_log("tool", f"Calling {req.name}", {"id": req.id, "args": req.args})

        responses = await asyncio.gather(*(self._run(req, spec) for req, spec in routed))
        responses = list(responses)

        await self._send({"toolResponse": {"responses": [r.to_wire() for r in responses]}})
        self._on_log("tool", "Sent tool response", [r.to_wire() for r in responses])
        return responses

    async def _run(self, req: ToolCallRequest, spec: ToolSpec | None) -> ToolCallResponse:
        if spec is None:
            logger.info("Tool %s is not registered", req.name)
            return ToolCallResponse(req.id, req.name, DISABLED_RESULT)

        try:
            result = spec.handler(self._context, dict(req.args))
            if inspect.isawaitable(result):
                result = await result
        except CapabilityDisabled as e:
            logger.info("Tool %s: %s is disabled", req.name, e)
            result = DISABLED_RESULT
        except Exception as e:
            logger.warning("Tool %s failed: %s", req.name, e)
            self._on_log("error", f"Tool {req.name} failed", str(e))
            result = f"Error: {e}"

        if not isinstance(result, str):
            result = json.dumps(result)
        return ToolCallResponse(req.id, req.name, result)
