# tools.py
# Tool registry and dispatcher for the capabilities the model may invoke.
#
# The harness never calls a capability directly. It hands an untyped
# (tool, params) pair to ToolDispatcher.execute(), which decodes it, asks the
# PolicyEngine, runs the matching entry of TOOLS against the active page and
# folds every outcome into a ToolResult. Nothing here raises to the caller.

import logging
from typing import Any, Awaitable, Callable
from urllib.parse import quote

from page_pilot.models import (
    ClickElement,
    GetLinks,
    GoogleSearch,
    InvalidToolParamsError,
    ReadPage,
    Scroll,
    ToolName,
    ToolResult,
    TypeText,
    UnknownToolError,
    decode_tool_call,
    is_write_capable,
)
from page_pilot.page import PageContext, PageFault, PageResolver
from page_pilot.policy import PolicyEngine

logger = logging.getLogger(__name__)

MAX_PAGE_CHARS = 10_000
TRUNCATION_MARKER = "\n...[TRUNCATED]"
MAX_LINKS = 50
SEARCH_URL = "https://www.google.com/search?q="


# ---------------------------------------------------------------------------
# Page scripts
# ---------------------------------------------------------------------------

_READ_PAGE_JS = """
(mode) => mode === 'html' ? document.documentElement.outerHTML : document.body.innerText
"""

_CLICK_JS = """
(selector) => {
    const el = document.querySelector(selector);
    if (!el) throw new Error(`Element not found: ${selector}`);
    el.click();
    return true;
}
"""

_TYPE_JS = """
([selector, text]) => {
    const el = document.querySelector(selector);
    if (!el) throw new Error(`Element not found: ${selector}`);
    if (el.type === 'password') throw new Error('Password field detected. Action cancelled for safety.');
    el.focus();
    el.value = text;
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
    return true;
}
"""

_SCROLL_JS = """
(direction) => {
    if (direction === 'top') window.scrollTo(0, 0);
    else if (direction === 'bottom') window.scrollTo(0, document.body.scrollHeight);
    else if (direction === 'up') window.scrollBy(0, -window.innerHeight * 0.8);
    else window.scrollBy(0, window.innerHeight * 0.8);
    return true;
}
"""

_LINKS_JS = """
() => Array.from(document.querySelectorAll('a[href]')).map(a => ({ text: a.innerText || '', url: a.href }))
"""

# Navigation is deferred so the script returns before the document unloads.
_NAVIGATE_JS = """
(url) => { setTimeout(() => { window.location.href = url; }, 0); return true; }
"""


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


async def _tool_read_page(page: PageContext, call: ReadPage) -> Any:
    text = await page.evaluate(_READ_PAGE_JS, call.mode)
    if text is None:
        return None
    text = str(text)
    if len(text) > MAX_PAGE_CHARS:
        return text[:MAX_PAGE_CHARS] + TRUNCATION_MARKER
    return text


async def _tool_click_element(page: PageContext, call: ClickElement) -> Any:
    if not await page.evaluate(_CLICK_JS, call.selector):
        return None
    return f"Clicked: {call.selector}"


async def _tool_type_text(page: PageContext, call: TypeText) -> Any:
    if not await page.evaluate(_TYPE_JS, [call.selector, call.text]):
        return None
    return f'Typed "{call.text}" into {call.selector}'


async def _tool_scroll(page: PageContext, call: Scroll) -> Any:
    await page.evaluate(_SCROLL_JS, call.direction)
    return f"Scrolled {call.direction}"


async def _tool_get_links(page: PageContext, call: GetLinks) -> Any:
    anchors = await page.evaluate(_LINKS_JS)
    if anchors is None:
        return None
    links = []
    for anchor in anchors:
        text = str(anchor.get("text") or "").strip()
        if not text:
            continue
        links.append({"text": text, "url": anchor.get("url", "")})
        if len(links) >= MAX_LINKS:
            break
    return links


async def _tool_google_search(page: PageContext, call: GoogleSearch) -> Any:
    url = SEARCH_URL + quote(call.query, safe="")
    await page.evaluate(_NAVIGATE_JS, url)
    return (
        f"Navigating to Google Search for: {call.query}. "
        "The results are not loaded yet; call read_page to read them once the page has loaded."
    )


Capability = Callable[[PageContext, Any], Awaitable[Any]]

TOOLS: dict[str, Capability] = {
    ToolName.READ_PAGE.value:     _tool_read_page,
    ToolName.CLICK_ELEMENT.value: _tool_click_element,
    ToolName.TYPE_TEXT.value:     _tool_type_text,
    ToolName.SCROLL.value:        _tool_scroll,
    ToolName.GET_LINKS.value:     _tool_get_links,
    ToolName.GOOGLE_SEARCH.value: _tool_google_search,
}


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """
    Runs one tool attempt against the active page.

    Holds references to the shared PolicyEngine and the host's page
    resolver; keeps no state of its own between calls.
    """

    def __init__(self, policy: PolicyEngine, resolve_page: PageResolver) -> None:
        self._policy = policy
        self._resolve_page = resolve_page

    @property
    def policy(self) -> PolicyEngine:
        return self._policy

    async def execute(
        self,
        tool: Any,
        params: Any = None,
        on_blocked: Callable[[str], None] | None = None,
    ) -> ToolResult:
        try:
            call = decode_tool_call(tool, params)
        except (UnknownToolError, InvalidToolParamsError) as exc:
            logger.warning("Rejected tool call %r: %s", tool, exc)
            return ToolResult.fail(str(exc))

        try:
            page = await self._resolve_page()
            address = page.url
        except PageFault as exc:
            logger.warning("No page for %s: %s", call.tool, exc)
            return ToolResult.fail(str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Page resolver failed for %s", call.tool)
            return ToolResult.fail(f"{exc.__class__.__name__}: {exc}")

        verdict = self._policy.validate(call.tool, call.params, address)
        if not verdict.allowed:
            reason = verdict.reason or "Action blocked by policy."
            logger.info("🔒 %s blocked on %s", call.tool, address)
            self._notify_blocked(on_blocked, reason)
            return ToolResult.denied(reason)

        result = await self._run(page, call)
        if is_write_capable(call.tool):
            self._policy.record_execution(call.tool)
        logger.info("%s %s %s", "✅" if result.success else "❌", call.tool, call.params)
        return result

    async def _run(self, page: PageContext, call: Any) -> ToolResult:
        try:
            output = await TOOLS[call.tool](page, call)
        except PageFault as exc:
            return ToolResult.fail(str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected failure running %s", call.tool)
            return ToolResult.fail(f"{exc.__class__.__name__}: {exc}")

        if output is None:
            return ToolResult.fail("Execution returned no result.")
        return ToolResult.ok(output)

    @staticmethod
    def _notify_blocked(on_blocked: Callable[[str], None] | None, reason: str) -> None:
        if on_blocked is None:
            return
        try:
            on_blocked(reason)
        except Exception:  # noqa: BLE001
            logger.exception("on_blocked callback raised")
