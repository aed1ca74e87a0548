# harness.py
# Agent orchestrator for the page co-pilot.
#
# AgentSession owns one conversation and drives each user turn through an
# explicit awaited loop:
#
#   user text → model → scan reply for tool JSON → dispatcher (policy gate)
#   → tool result fed back as a synthetic turn → model → … → final answer
#
# At most MAX_TOOL_DEPTH tools run per user turn, strictly one after another.
# A policy denial ends the turn without calling the model again. Every
# failure path returns a TurnOutcome; only a cancellation of the caller's own
# task propagates.
#
# All terminal output is delegated to display.py. No formatting here.

import asyncio
import json
import logging
import re
from enum import Enum
from typing import Any, Callable

from page_pilot import display
from page_pilot.backends import BackendError, ModelBackend
from page_pilot.config import Settings
from page_pilot.models import ChatRequest, ConversationTurn, Role, ToolResult, TurnOutcome
from page_pilot.tools import ToolDispatcher

logger = logging.getLogger(__name__)

MAX_TOOL_DEPTH = 3

EMPTY_REPLY = "Error: empty response from the model."


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolCallParseError(Exception):
    """Raised when a reply contains tool-call JSON that cannot be decoded."""


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

AGENT_TOOLS_PROMPT = """\
## WEB CONTROL TOOLS AVAILABLE
You have access to the page the user has open. To use a tool, output a SINGLE JSON block strictly following this format:
```json
{
  "tool": "tool_name",
  "params": {"param1": "value"}
}
```
Stop generating after the JSON block and wait for the tool result.

### Available tools:
1. read_page: Get the content of the page.
   - Params: {"mode": "text" | "html"} (optional, default "text")
2. click_element: Click an element using a CSS selector.
   - Params: {"selector": ".my-button"}
   - BLOCKED on sensitive sites (banking, login, admin, government).
3. type_text: Type text into an input field.
   - Params: {"selector": "#search-box", "text": "hello world"}
   - BLOCKED on password, payment and personal-data fields and on sensitive sites.
4. scroll: Scroll the page.
   - Params: {"direction": "up" | "down" | "top" | "bottom"}
5. get_links: List the links on the page.
   - Params: {}
6. google_search: Open a Google search for a query.
   - Params: {"query": "search term"}
   - The results page loads after the tool returns; use read_page afterwards to read it.

## SECURITY RULES
- NEVER interact with password fields, payment forms or banking sites.
- If the user asks for something on a sensitive site, EXPLAIN what they should do manually instead.

## INSTRUCTIONS
- To summarize or read the page, use read_page first.
- To search the web or find information, use google_search.
- To perform an action on the page, use type_text or click_element. Errors are reported back to you.\
"""

FOLLOW_UP_INSTRUCTION = (
    "[IMPORTANT] You have already used a tool and received the result below. "
    "DO NOT call any more tools. Use the tool result to answer the user's original question directly. "
    "Respond in a natural, helpful way."
)

RESULT_INSTRUCTION = (
    "[INSTRUCTION] Now use this information to respond to the user's original request. "
    "Do NOT call any more tools."
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# A fenced ```json block anywhere in the reply wins over bare JSON.
FENCED_TOOL_CALL_PATTERN = re.compile(
    r'```json\s*(?P<fenced>\{(?:(?!```).)*?"tool"(?:(?!```).)*?\})\s*```',
    re.DOTALL,
)

# Bare JSON is located by its "tool" key; the enclosing object is found by
# decoding from each opening brace before the key, nearest first.
TOOL_KEY_PATTERN = re.compile(r'"tool"\s*:\s*"[\w-]+"')


def _decode_bare(reply: str) -> dict[str, Any] | None:
    decoder = json.JSONDecoder(strict=False)
    error: json.JSONDecodeError | None = None
    for key in TOOL_KEY_PATTERN.finditer(reply):
        start = reply.rfind("{", 0, key.start())
        while start != -1:
            try:
                data, end = decoder.raw_decode(reply, start)
            except json.JSONDecodeError as exc:
                error = error or exc
            else:
                if end > key.start() and isinstance(data, dict) and "tool" in data:
                    return data
            start = reply.rfind("{", 0, start)
    if error is not None:
        raise ToolCallParseError(f"Tool call JSON is malformed: {error}") from error
    return None


def parse_tool_call(reply: str) -> dict[str, Any] | None:
    """
    Find the tool invocation embedded in a model reply.

    Returns None when the reply carries no tool call.
    Raises ToolCallParseError if tool JSON is present but malformed.
    """
    match = FENCED_TOOL_CALL_PATTERN.search(reply)
    if match:
        try:
            data = json.loads(match.group("fenced"), strict=False)
        except json.JSONDecodeError as exc:
            raise ToolCallParseError(f"Tool call JSON is malformed: {exc}") from exc
    else:
        data = _decode_bare(reply)

    if not isinstance(data, dict) or not data.get("tool"):
        return None
    return data


def format_tool_result(tool: str, result: ToolResult) -> str:
    """Render a tool result as the synthetic turn sent back to the model."""
    if result.result is not None:
        payload = result.result
    else:
        payload = result.model_dump(exclude_none=True, exclude_defaults=True)
    return (
        f"[TOOL RESULT for '{tool}']:\n"
        f"{json.dumps(payload, indent=2, ensure_ascii=False, default=str)}\n\n"
        f"{RESULT_INSTRUCTION}"
    )


# ---------------------------------------------------------------------------
# AgentSession
# ---------------------------------------------------------------------------


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL_REPLY = "awaiting_model_reply"
    SCANNING_FOR_TOOL = "scanning_for_tool"
    EXECUTING_TOOL = "executing_tool"
    FINALIZING = "finalizing"


class AgentSession:
    """
    One chat conversation with tool access to the active page.

    Example:
        session = AgentSession(backend, ToolDispatcher(policy, resolve_page))
        outcome = await session.send("Summarize this page")
        print(outcome.reply)

    cancel() may be called from another task while send() is pending.
    """

    def __init__(
        self,
        backend: ModelBackend,
        dispatcher: ToolDispatcher,
        settings: Settings | None = None,
        on_blocked: Callable[[str], None] | None = None,
        on_notice: Callable[[str, str], None] | None = None,
    ) -> None:
        self._backend = backend
        self._dispatcher = dispatcher
        self._settings = settings or Settings()
        self._on_blocked = on_blocked or display.tool_blocked
        self._on_notice = on_notice or display.notice

        self.history: list[ConversationTurn] = []
        self.tool_depth = 0
        self.state = SessionState.IDLE

        self._pending_images: list[str] = []
        self._inflight: asyncio.Future | None = None
        self._cancel_requested = False

    # ------------------------------------------------------------------
    # Payload
    # ------------------------------------------------------------------

    def build_system_instruction(self, follow_up: bool) -> str:
        settings = self._settings
        parts = [settings.system_prompt]
        if settings.custom_instructions:
            parts.append(f"[USER INSTRUCTIONS & PREFERENCES]\n{settings.custom_instructions}")
        if settings.response_style and settings.response_style != "normal":
            parts.append(f"[RESPONSE STYLE]\nUse a {settings.response_style} tone/style.")
        if follow_up:
            parts.append(FOLLOW_UP_INSTRUCTION)
        elif self.tool_depth < MAX_TOOL_DEPTH:
            parts.append(AGENT_TOOLS_PROMPT)
        return "\n\n".join(part for part in parts if part)

    def build_request(self, tool_output: str | None = None) -> ChatRequest:
        messages: list[ConversationTurn] = []
        system = self.build_system_instruction(follow_up=tool_output is not None)
        if system:
            messages.append(ConversationTurn(role=Role.SYSTEM, content=system))

        window = [turn.model_copy() for turn in self.history[-self._settings.history_limit:]]
        if self._pending_images:
            for index in range(len(window) - 1, -1, -1):
                if window[index].role is Role.USER:
                    window[index] = window[index].model_copy(update={"images": list(self._pending_images)})
                    break
            self._pending_images = []
        messages.extend(window)

        if tool_output is not None:
            messages.append(ConversationTurn(role=Role.USER, content=tool_output))

        return ChatRequest(
            model=self._settings.model,
            messages=messages,
            temperature=self._settings.temperature,
        )

    # ------------------------------------------------------------------
    # Model call
    # ------------------------------------------------------------------

    async def _await_model(self, tool_output: str | None) -> str | None:
        """Return the reply text, or None if cancel() aborted the call."""
        if self._cancel_requested:
            return None

        self.state = SessionState.AWAITING_MODEL_REPLY
        request = self.build_request(tool_output)
        self._inflight = asyncio.ensure_future(self._backend.complete(request))
        try:
            with display.thinking():
                return await self._inflight
        except asyncio.CancelledError:
            if self._cancel_requested:
                return None
            raise
        finally:
            self._inflight = None

    def cancel(self) -> bool:
        """
        Abort the pending model call of the current turn.

        A tool already running against the page completes first; its result
        is discarded and the model is not called again.
        """
        if self.state is SessionState.IDLE:
            return False
        self._cancel_requested = True
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        return True

    # ------------------------------------------------------------------
    # Tool detection
    # ------------------------------------------------------------------

    def _scan(self, reply: str, outcome: TurnOutcome) -> dict[str, Any] | None:
        if self.tool_depth >= MAX_TOOL_DEPTH:
            logger.warning("Max tool depth (%d) reached. Stopping tool execution.", MAX_TOOL_DEPTH)
            display.depth_exhausted(MAX_TOOL_DEPTH)
            return None

        self.state = SessionState.SCANNING_FOR_TOOL
        try:
            return parse_tool_call(reply)
        except ToolCallParseError as exc:
            logger.warning("%s", exc)
            message = "Could not process the tool call in the reply."
            outcome.notices.append(message)
            self._on_notice(message, "error")
            return None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def send(self, text: str, image: str | None = None) -> TurnOutcome:
        """
        Run one user-initiated turn to completion.

        Returns a TurnOutcome in all cases: a final reply, a policy block,
        a cancellation or a backend error.
        """
        text = text.strip()
        if not text:
            return TurnOutcome()
        if self.state is not SessionState.IDLE:
            return TurnOutcome(error="A reply is already being generated.")

        self.tool_depth = 0
        self._cancel_requested = False
        self._pending_images = [image] if image else []
        self.history.append(ConversationTurn(role=Role.USER, content=text))
        display.prompt_received(text)

        outcome = TurnOutcome()
        tool_output: str | None = None
        try:
            while True:
                # ── Await the model ───────────────────────────────────
                try:
                    reply = await self._await_model(tool_output)
                except BackendError as exc:
                    display.backend_error(exc.provider, exc.endpoint, str(exc))
                    outcome.error = str(exc)
                    return outcome

                if reply is None:
                    display.cancelled()
                    outcome.cancelled = True
                    return outcome

                reply = reply.strip() or EMPTY_REPLY
                self.history.append(ConversationTurn(role=Role.ASSISTANT, content=reply))

                # ── Scan for a tool call ──────────────────────────────
                call = self._scan(reply, outcome) if reply != EMPTY_REPLY else None
                if call is None:
                    self.state = SessionState.FINALIZING
                    display.final_result(reply)
                    outcome.reply = reply
                    return outcome

                # ── Execute it ────────────────────────────────────────
                display.model_reply(reply)
                self.tool_depth += 1
                outcome.tool_calls = self.tool_depth
                self.state = SessionState.EXECUTING_TOOL

                tool, params = call.get("tool"), call.get("params") or {}
                display.tool_started(str(tool), params, self.tool_depth, MAX_TOOL_DEPTH)
                self._on_notice(f"🛠️ Running {tool} ({self.tool_depth}/{MAX_TOOL_DEPTH})", "info")

                result = await self._dispatcher.execute(tool, params, self._on_blocked)

                if result.blocked:
                    self.history.append(ConversationTurn(role=Role.SYSTEM, content=result.error or ""))
                    outcome.blocked = True
                    outcome.error = result.error
                    return outcome

                display.tool_result(result)
                if self._cancel_requested:
                    display.cancelled()
                    outcome.cancelled = True
                    return outcome

                tool_output = format_tool_result(str(tool), result)
        finally:
            self.state = SessionState.IDLE
            self._inflight = None
