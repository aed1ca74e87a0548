# display.py
# All terminal output for the page co-pilot.
#
# This module owns presentation entirely. harness.py and run.py never format
# strings for the user; they call named functions here.
#
# Colour language:
#   cyan: session / routing events
#   blue: model calls and replies
#   yellow: transient notices
#   green: final answers
#   red: policy denials, failures
#   magenta: tool execution internals

import json
from contextlib import contextmanager
from typing import Any, Iterator

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from page_pilot.models import ToolResult

console = Console()

_NOTICE_STYLES = {
    "info": "yellow",
    "success": "green",
    "error": "red",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ")
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def banner(provider: str, model: str, url: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Page Pilot[/bold cyan]\n"
            "[dim]Chat with the page you have open. Sensitive sites and fields stay off-limits.[/dim]\n\n"
            f"[dim]Provider :[/dim] [white]{escape(provider)}[/white]\n"
            f"[dim]Model    :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Page     :[/dim] [white]{escape(url)}[/white]\n\n"
            "[dim]/screenshot attaches the page to your next message · Ctrl-C cancels a reply · /quit exits[/dim]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW MESSAGE[/cyan]", style="cyan"))
    console.print(_label("USER", "cyan"), f"[white]{escape(prompt)}[/white]")


@contextmanager
def thinking() -> Iterator[None]:
    """Loading placeholder shown while a model reply is pending; gone on exit."""
    with console.status("[blue]Thinking…[/blue]", spinner="dots"):
        yield


def model_reply(reply: str) -> None:
    console.print(_label("MODEL", "blue"), f"[dim]{escape(_mono(reply, 200))}[/dim]")


def notice(message: str, kind: str = "info") -> None:
    color = _NOTICE_STYLES.get(kind, "yellow")
    console.print(f"  [{color}]{escape(message)}[/{color}]")


def cancelled() -> None:
    console.print("  [dim]Generation cancelled.[/dim]")


def image_attached() -> None:
    console.print("  [dim]Screenshot attached to your next message.[/dim]")


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


def tool_started(tool: str, params: Any, depth: int, max_depth: int) -> None:
    console.print(
        f"  [magenta]Tool[/magenta]     [bold white]{escape(tool)}[/bold white]"
        f"  [dim]{escape(_mono(json.dumps(params, ensure_ascii=False, default=str), 80))}[/dim]"
        f"  [dim magenta]({depth}/{max_depth})[/dim magenta]"
    )


def tool_result(result: ToolResult) -> None:
    if result.error:
        console.print(f"  [magenta]Result[/magenta]   [red]{escape(_mono(result.error, 140))}[/red]")
        return
    rendered = result.result if isinstance(result.result, str) else json.dumps(result.result, ensure_ascii=False)
    console.print(f"  [magenta]Result[/magenta]   [white]{escape(_mono(rendered, 140))}[/white]")


def tool_blocked(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("SECURITY BLOCK", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def depth_exhausted(max_depth: int) -> None:
    console.print(f"  [dim yellow]Tool limit reached ({max_depth}/{max_depth}). Answering without tools.[/dim yellow]")


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: str) -> None:
    console.print()
    console.print(
        Panel(
            Markdown(result),
            title=_label("ASSISTANT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def backend_error(provider: str, endpoint: str, error: str) -> None:
    console.print()
    console.print(
        Panel(
            "[bold red]Connection error[/bold red]\n\n"
            f"[dim]Provider :[/dim] [white]{escape(provider or 'unknown')}[/white]\n"
            f"[dim]Endpoint :[/dim] [white]{escape(endpoint or 'unknown')}[/white]\n"
            f"[dim]Error    :[/dim] [white]{escape(error)}[/white]\n\n"
            "[dim]Check that the model server is running and PAGE_PILOT_API_URL points at it.[/dim]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
