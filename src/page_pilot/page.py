# page.py
# The page the agent acts on.
#
# The dispatcher only needs two things from a page: its current address and
# a way to run a script against it. PageContext is that seam; PlaywrightPage
# is the concrete host used by run.py. Tests substitute an in-memory fake.

from typing import Any, Awaitable, Callable, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page


class PageFault(Exception):
    """Raised when a script cannot run against the page or throws inside it."""


class PageContext(Protocol):
    @property
    def url(self) -> str: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...


PageResolver = Callable[[], Awaitable[PageContext]]


def _first_line(exc: Exception) -> str:
    message = str(exc).strip()
    if not message:
        return exc.__class__.__name__
    line = message.splitlines()[0]
    # "Page.evaluate: Error: Element not found: #x" -> "Element not found: #x"
    for prefix in ("Page.evaluate: ", "Error: "):
        if line.startswith(prefix):
            line = line[len(prefix):]
    return line


class PlaywrightPage:
    """PageContext backed by a Playwright async Page."""

    def __init__(self, page: Page) -> None:
        self._page = page

    @property
    def url(self) -> str:
        return self._page.url

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if self._page.is_closed():
            raise PageFault("The page is no longer open.")
        try:
            return await self._page.evaluate(script.strip(), arg)
        except PlaywrightError as exc:
            raise PageFault(_first_line(exc)) from exc

    async def screenshot(self) -> bytes:
        try:
            return await self._page.screenshot(full_page=False)
        except PlaywrightError as exc:
            raise PageFault(_first_line(exc)) from exc


def active_page_resolver(context: Any) -> PageResolver:
    """
    Build a resolver that returns the most recently opened page of a
    Playwright BrowserContext. Raises PageFault when every page is closed.
    """

    async def resolve() -> PageContext:
        pages = [page for page in context.pages if not page.is_closed()]
        if not pages:
            raise PageFault("No active page.")
        return PlaywrightPage(pages[-1])

    return resolve
