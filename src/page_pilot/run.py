# run.py
# Entry point. Config and wiring only.
#
# Opens the given URL in a Playwright browser and runs an interactive chat
# whose tools act on that browser's active page.
#
#   page-pilot https://example.com --provider ollama --model qwen2.5-coder:7b

import argparse
import asyncio
import base64
import logging
import signal

from playwright.async_api import async_playwright
from rich.logging import RichHandler
from rich.prompt import Prompt

from page_pilot import display
from page_pilot.backends import create_backend
from page_pilot.config import DEFAULT_API_URLS, Settings
from page_pilot.harness import AgentSession
from page_pilot.page import PageFault, PageResolver, active_page_resolver
from page_pilot.policy import PolicyEngine
from page_pilot.tools import ToolDispatcher

VIEWPORT_SIZE = {"width": 1280, "height": 1080}
GOTO_TIMEOUT_MS = 90_000


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="page-pilot", description="Chat with an LLM about the page you have open.")
    parser.add_argument("url", help="Page to open.")
    parser.add_argument("--provider", choices=sorted(DEFAULT_API_URLS), help="Model backend kind.")
    parser.add_argument("--api-url", help="Base URL of the model backend.")
    parser.add_argument("--model", help="Model name sent to the backend.")
    parser.add_argument("--headed", action="store_true", help="Show the browser window.")
    parser.add_argument("--verbose", action="store_true", help="Log tool dispatch details.")
    return parser.parse_args(argv)


def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    overrides = {}
    if args.provider:
        overrides["provider"] = args.provider
        overrides["api_url"] = DEFAULT_API_URLS[args.provider]
    if args.api_url:
        overrides["api_url"] = args.api_url.rstrip("/")
    if args.model:
        overrides["model"] = args.model
    return settings.model_copy(update=overrides)


async def _screenshot(resolve_page: PageResolver) -> str | None:
    try:
        page = await resolve_page()
        png = await page.screenshot()
    except PageFault as exc:
        display.notice(str(exc), "error")
        return None
    display.image_attached()
    return base64.b64encode(png).decode("utf-8")


async def _send(session: AgentSession, text: str, image: str | None) -> None:
    loop = asyncio.get_running_loop()
    task = asyncio.create_task(session.send(text, image=image))
    try:
        loop.add_signal_handler(signal.SIGINT, session.cancel)
    except NotImplementedError:
        pass
    try:
        await task
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


async def chat(settings: Settings, url: str, headless: bool = True) -> None:
    policy = PolicyEngine(settings.rate_limit)
    backend = create_backend(settings)

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=headless)
        context = await browser.new_context(viewport=VIEWPORT_SIZE)
        page = await context.new_page()
        await page.goto(url, wait_until="domcontentloaded", timeout=GOTO_TIMEOUT_MS)

        resolve_page = active_page_resolver(context)
        session = AgentSession(backend, ToolDispatcher(policy, resolve_page), settings)
        display.banner(settings.provider, settings.model, page.url)

        image: str | None = None
        try:
            while True:
                try:
                    text = await asyncio.to_thread(Prompt.ask, "[cyan]you[/cyan]", console=display.console)
                except EOFError:
                    break
                text = text.strip()
                if text in ("/quit", "/exit"):
                    break
                if text == "/screenshot":
                    image = await _screenshot(resolve_page)
                    continue
                await _send(session, text, image)
                image = None
        finally:
            await backend.aclose()
            await browser.close()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=display.console, show_path=False)],
    )
    try:
        asyncio.run(chat(_settings(args), args.url, headless=not args.headed))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
