import pytest

from page_pilot import tools
from page_pilot.page import PageFault


class FakePage:
    """In-memory PageContext. Records every mutation a tool makes."""

    def __init__(self, url="https://example.com/articles/1", text="Hello page", html=None, elements=None, links=None):
        self.url = url
        self.text = text
        self.html = html if html is not None else f"<html><body>{text}</body></html>"
        self.elements = elements if elements is not None else {}
        self.links = links if links is not None else []
        self.clicks = []
        self.scrolls = []
        self.navigations = []
        self.events = []
        self.scripts = []

    def _element(self, selector):
        if selector not in self.elements:
            raise PageFault(f"Element not found: {selector}")
        return self.elements[selector]

    async def evaluate(self, script, arg=None):
        self.scripts.append(script)
        if script == tools._READ_PAGE_JS:
            return self.html if arg == "html" else self.text
        if script == tools._CLICK_JS:
            self._element(arg)
            self.clicks.append(arg)
            return True
        if script == tools._TYPE_JS:
            selector, text = arg
            element = self._element(selector)
            if element.get("type") == "password":
                raise PageFault("Password field detected. Action cancelled for safety.")
            element["value"] = text
            self.events.extend(["input", "change"])
            return True
        if script == tools._SCROLL_JS:
            self.scrolls.append(arg)
            return True
        if script == tools._LINKS_JS:
            return list(self.links)
        if script == tools._NAVIGATE_JS:
            self.navigations.append(arg)
            return True
        raise PageFault("Unknown script")


def resolver_for(page):
    async def resolve():
        return page

    return resolve


@pytest.fixture()
def page():
    return FakePage(elements={"#search": {"type": "text", "value": ""}, "#go": {"type": "submit"}})
