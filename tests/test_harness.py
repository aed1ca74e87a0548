import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakePage, resolver_for
from page_pilot import display
from page_pilot.backends import BackendError
from page_pilot.config import Settings
from page_pilot.harness import (
    AGENT_TOOLS_PROMPT,
    FOLLOW_UP_INSTRUCTION,
    MAX_TOOL_DEPTH,
    AgentSession,
    SessionState,
    ToolCallParseError,
    format_tool_result,
    parse_tool_call,
)
from page_pilot.models import Role, ToolResult
from page_pilot.policy import PolicyEngine
from page_pilot.tools import TRUNCATION_MARKER, ToolDispatcher

READ_PAGE_REPLY = """I'll read the page first.
```json
{"tool": "read_page", "params": {"mode": "text"}}
```"""


def _session(page, replies=None, policy=None, settings=None, **kwargs):
    backend = MagicMock()
    backend.complete = AsyncMock(side_effect=replies)
    dispatcher = ToolDispatcher(policy or PolicyEngine(), resolver_for(page))
    session = AgentSession(backend, dispatcher, settings or Settings(), on_notice=MagicMock(), **kwargs)
    return session, backend


def _requests(backend):
    return [call.args[0] for call in backend.complete.await_args_list]


# ---------------------------------------------------------------------------
# Tool-call detection
# ---------------------------------------------------------------------------

def test_parse_fenced_tool_call():
    assert parse_tool_call(READ_PAGE_REPLY) == {"tool": "read_page", "params": {"mode": "text"}}


def test_parse_bare_tool_call_with_nested_params():
    reply = 'Sure. {"tool": "type_text", "params": {"selector": "#q", "text": "a {b}"}} done'
    assert parse_tool_call(reply) == {"tool": "type_text", "params": {"selector": "#q", "text": "a {b}"}}


def test_parse_prefers_fenced_form():
    reply = (
        'Earlier I wrote {"tool": "scroll", "params": {}} by mistake.\n'
        '```json\n{"tool": "get_links", "params": {}}\n```'
    )
    assert parse_tool_call(reply)["tool"] == "get_links"


def test_parse_skips_fenced_block_without_tool_key():
    reply = (
        'Example data:\n```json\n{"name": "x"}\n```\n'
        'Now:\n```json\n{"tool": "read_page", "params": {}}\n```'
    )
    assert parse_tool_call(reply) == {"tool": "read_page", "params": {}}


def test_parse_bare_tool_call_with_tool_key_last():
    reply = 'Clicking now: {"params": {"selector": "#go"}, "tool": "click_element"}'
    assert parse_tool_call(reply) == {"params": {"selector": "#go"}, "tool": "click_element"}


def test_parse_unterminated_bare_tool_call():
    with pytest.raises(ToolCallParseError):
        parse_tool_call('Scrolling: {"params": {}, "tool": "scroll"')


def test_parse_plain_text_has_no_tool_call():
    assert parse_tool_call("The page is about cats.") is None


def test_parse_malformed_json():
    reply = '```json\n{"tool": "click_element", "params": {selector: #go}}\n```'
    with pytest.raises(ToolCallParseError):
        parse_tool_call(reply)


def test_format_tool_result_for_error():
    text = format_tool_result("click_element", ToolResult.fail("Element not found: #x"))
    body = text.split("\n", 1)[1].split("\n\n[INSTRUCTION]")[0]
    assert text.startswith("[TOOL RESULT for 'click_element']:")
    assert json.loads(body) == {"error": "Element not found: #x"}
    assert "Do NOT call any more tools" in text


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------

def test_system_instruction_modes(page):
    settings = Settings(custom_instructions="Call me Sam.", response_style="formal")
    session, _ = _session(page, settings=settings)

    fresh = session.build_system_instruction(follow_up=False)
    assert AGENT_TOOLS_PROMPT in fresh
    assert "Call me Sam." in fresh
    assert "formal" in fresh

    follow_up = session.build_system_instruction(follow_up=True)
    assert FOLLOW_UP_INSTRUCTION in follow_up
    assert AGENT_TOOLS_PROMPT not in follow_up

    session.tool_depth = MAX_TOOL_DEPTH
    exhausted = session.build_system_instruction(follow_up=False)
    assert AGENT_TOOLS_PROMPT not in exhausted


def test_history_window_is_bounded(page):
    session, backend = _session(page, replies=["ok"] * 5, settings=Settings(history_limit=3))
    for i in range(3):
        asyncio.run(session.send(f"message {i}"))

    last = _requests(backend)[-1]
    assert last.messages[0].role is Role.SYSTEM
    assert [m.content for m in last.messages[1:]] == ["message 1", "ok", "message 2"]


def test_image_is_sent_once(page):
    session, backend = _session(page, replies=[READ_PAGE_REPLY, "Done."])
    asyncio.run(session.send("what is in this picture?", image="iVBORw0KGgo="))

    first, second = _requests(backend)
    assert first.messages[-1].images == ["iVBORw0KGgo="]
    assert all(not m.images for m in second.messages)
    assert all(not m.images for m in session.history)


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------

def test_round_trip_summarize_page():
    page = FakePage(text="word " * 4000)
    session, backend = _session(page, replies=[READ_PAGE_REPLY, "This page repeats one word."])

    outcome = asyncio.run(session.send("summarize this page"))

    assert outcome.reply == "This page repeats one word."
    assert outcome.tool_calls == 1
    assert session.tool_depth == 1
    assert session.state is SessionState.IDLE

    first, second = _requests(backend)
    assert AGENT_TOOLS_PROMPT in first.messages[0].content
    assert FOLLOW_UP_INSTRUCTION in second.messages[0].content
    synthetic = second.messages[-1]
    assert synthetic.role is Role.USER
    assert synthetic.content.startswith("[TOOL RESULT for 'read_page']:")
    assert TRUNCATION_MARKER.strip() in synthetic.content
    # The synthetic turn is not stored.
    assert [t.role for t in session.history] == [Role.USER, Role.ASSISTANT, Role.ASSISTANT]

    backend.complete.side_effect = ["Hello!"]
    asyncio.run(session.send("thanks"))
    assert session.tool_depth == 0


def test_depth_bound_stops_tool_detection():
    page = FakePage()
    tool_reply = '```json\n{"tool": "scroll", "params": {"direction": "down"}}\n```'
    session, backend = _session(page, replies=[tool_reply] * (MAX_TOOL_DEPTH + 1))

    outcome = asyncio.run(session.send("keep scrolling"))

    assert page.scrolls == ["down"] * MAX_TOOL_DEPTH
    assert backend.complete.await_count == MAX_TOOL_DEPTH + 1
    assert outcome.tool_calls == MAX_TOOL_DEPTH
    assert outcome.reply == tool_reply
    assert session.tool_depth == MAX_TOOL_DEPTH


def test_blocked_result_short_circuits():
    page = FakePage(url="https://secure.mybank.com/pay", elements={"#pay": {}})
    on_blocked = MagicMock()
    reply = '{"tool": "click_element", "params": {"selector": "#pay"}}'
    session, backend = _session(page, replies=[reply, "should never be requested"], on_blocked=on_blocked)

    outcome = asyncio.run(session.send("pay my bill"))

    assert outcome.blocked is True
    assert outcome.reply is None
    assert backend.complete.await_count == 1
    assert session.state is SessionState.IDLE
    on_blocked.assert_called_once()
    assert session.history[-1].role is Role.SYSTEM
    assert "mybank" in session.history[-1].content
    assert page.clicks == []


def test_execution_fault_is_fed_back_to_model():
    page = FakePage()
    reply = '```json\n{"tool": "click_element", "params": {"selector": "#missing"}}\n```'
    session, backend = _session(page, replies=[reply, "I could not find that button."])

    outcome = asyncio.run(session.send("click the button"))

    assert outcome.reply == "I could not find that button."
    assert "Element not found: #missing" in _requests(backend)[1].messages[-1].content


def test_unknown_tool_is_fed_back_to_model():
    page = FakePage()
    reply = '```json\n{"tool": "delete_everything", "params": {}}\n```'
    session, backend = _session(page, replies=[reply, "That tool does not exist."])

    outcome = asyncio.run(session.send("do it"))

    assert outcome.reply == "That tool does not exist."
    assert "Unknown tool: delete_everything" in _requests(backend)[1].messages[-1].content


def test_parse_failure_finalizes_with_notice():
    page = FakePage()
    reply = '```json\n{"tool": "read_page", "params": {mode: text}}\n```'
    session, backend = _session(page, replies=[reply])

    outcome = asyncio.run(session.send("read it"))

    assert outcome.reply == reply
    assert outcome.notices
    session._on_notice.assert_any_call(outcome.notices[0], "error")
    assert backend.complete.await_count == 1


def test_empty_reply_is_finalized_with_error_text():
    session, _ = _session(FakePage(), replies=["   "])
    outcome = asyncio.run(session.send("hello"))
    assert outcome.reply == "Error: empty response from the model."


def test_backend_error_returns_to_idle():
    page = FakePage()
    session, _ = _session(page, replies=[BackendError("Connection refused", "ollama", "http://localhost:11434/api/chat")])

    outcome = asyncio.run(session.send("hello"))

    assert outcome.error == "Connection refused"
    assert outcome.reply is None
    assert session.state is SessionState.IDLE


def test_blank_message_is_ignored(page):
    session, backend = _session(page, replies=[])
    outcome = asyncio.run(session.send("   "))
    assert outcome.reply is None
    backend.complete.assert_not_awaited()


# ---------------------------------------------------------------------------
# Untrusted text in terminal output
# ---------------------------------------------------------------------------

def test_page_text_with_markup_tags_does_not_break_turn():
    page = FakePage(text="Docs: close tags with [/b] in BBCode.")
    session, _ = _session(page, replies=[READ_PAGE_REPLY, "It explains [/b] closing tags."])

    outcome = asyncio.run(session.send("summarize this page"))

    assert outcome.reply == "It explains [/b] closing tags."
    assert session.state is SessionState.IDLE


def test_user_text_with_markup_tags_reaches_model(page):
    session, backend = _session(page, replies=["It closes a bold tag."])

    outcome = asyncio.run(session.send("what does [/b] mean?"))

    assert outcome.reply == "It closes a bold tag."
    assert _requests(backend)[0].messages[-1].content == "what does [/b] mean?"


def test_block_reason_shows_selector_verbatim():
    reason = 'Action blocked: the selector input[name="cvv"] targets a sensitive field [/red]'
    with display.console.capture() as capture:
        display.tool_blocked(reason)
        display.notice(reason, "error")
    output = capture.get()
    assert 'input[name="cvv"]' in output
    assert "[/red]" in output


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

def test_cancel_while_awaiting_model():
    page = FakePage()
    policy = PolicyEngine()
    session, backend = _session(page, policy=policy)
    started = asyncio.Event()

    async def hang(request):
        started.set()
        await asyncio.Event().wait()

    backend.complete = AsyncMock(side_effect=hang)

    async def scenario():
        task = asyncio.create_task(session.send("summarize this page"))
        await started.wait()
        assert session.state is SessionState.AWAITING_MODEL_REPLY
        assert session.cancel() is True
        return await task

    outcome = asyncio.run(scenario())

    assert outcome.cancelled is True
    assert outcome.reply is None
    assert [t.role for t in session.history] == [Role.USER]
    assert policy.execution_log() == ()
    assert session.state is SessionState.IDLE


def test_cancel_when_idle_is_a_no_op(page):
    session, _ = _session(page)
    assert session.cancel() is False


def test_cancel_while_tool_runs_discards_result():
    page = FakePage(elements={"#go": {}})
    policy = PolicyEngine()
    reply = '```json\n{"tool": "click_element", "params": {"selector": "#go"}}\n```'
    session, backend = _session(page, replies=[reply, "should never be requested"], policy=policy)
    seen = []
    evaluate = page.evaluate

    async def cancel_mid_script(script, arg=None):
        seen.append((session.state, session.cancel()))
        return await evaluate(script, arg)

    page.evaluate = cancel_mid_script

    outcome = asyncio.run(session.send("press go"))

    assert seen == [(SessionState.EXECUTING_TOOL, True)]
    assert outcome.cancelled is True
    assert outcome.reply is None
    assert page.clicks == ["#go"]
    assert len(policy.execution_log()) == 1
    assert backend.complete.await_count == 1
    assert [t.role for t in session.history] == [Role.USER, Role.ASSISTANT]
    assert session.state is SessionState.IDLE
