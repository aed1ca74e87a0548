# policy.py
# Client-side security policy for page actions.
#
# Decides allow/deny for every tool attempt. Read-only tools always pass.
# Write-capable tools must clear, in order:
#   rate limit → domain blocklist (click/type) → sensitive-field blocklist (type)
#
# The engine performs no I/O. Its one piece of mutable state is the
# execution log used for rate-limit accounting, guarded by a lock so a
# single engine can be shared by every session the host creates.

import threading
import time
from collections import deque
from typing import Any, Callable
from urllib.parse import urlsplit

from pydantic import BaseModel, Field

from page_pilot.models import READ_ONLY_TOOLS, ToolName, ValidationResult, is_write_capable


# ---------------------------------------------------------------------------
# Blocklists
# ---------------------------------------------------------------------------

BLOCKED_DOMAIN_FRAGMENTS: dict[str, tuple[str, ...]] = {
    "banking": (
        "bank", "banking", "paypal", "stripe", "chase", "wellsfargo", "citi",
        "bbva", "santander", "coinbase", "binance", "revolut", "wise",
    ),
    "authentication": (
        "login", "signin", "signup", "oauth", "auth", "sso", "accounts.google",
        "id.apple", "login.microsoftonline",
    ),
    "admin": ("admin", "dashboard", "console.cloud", "portal.azure"),
    "government": ("gov", "gob", "hacienda", "agenciatributaria"),
}

SENSITIVE_FIELD_FRAGMENTS: tuple[str, ...] = (
    "password",
    "card",
    "tarjeta",
    "cvv",
    "cvc",
    "ssn",
    "social",
    "pin",
    "otp",
    "token",
    "secret",
    # autocomplete tokens for payment and credential fields
    "cc-number",
    "cc-csc",
    "cc-exp",
    "new-password",
    "current-password",
)

DOMAIN_GATED_TOOLS = frozenset({ToolName.CLICK_ELEMENT.value, ToolName.TYPE_TEXT.value})


class RateLimitConfig(BaseModel):
    """Sliding-window budget for write-capable actions."""

    max_executions: int = Field(default=15, ge=1)
    window_ms: int = Field(default=60_000, ge=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _match_domain(hostname: str, address: str) -> str | None:
    for fragments in BLOCKED_DOMAIN_FRAGMENTS.values():
        for fragment in fragments:
            if fragment in hostname or fragment in address:
                return fragment
    return None


def _match_selector(selector: str) -> str | None:
    for fragment in SENSITIVE_FIELD_FRAGMENTS:
        if fragment in selector:
            return fragment
    return None


def _parse_address(address: str) -> tuple[str, str]:
    """
    Return (hostname, full address), both lower-cased.
    Raises ValueError when the address cannot be trusted as a URL.
    """
    parts = urlsplit(address)
    if not parts.scheme:
        raise ValueError(f"Address has no scheme: {address!r}")
    return (parts.hostname or "").lower(), address.lower()


# ---------------------------------------------------------------------------
# PolicyEngine
# ---------------------------------------------------------------------------


class PolicyEngine:
    """
    Gatekeeper for every tool attempt.

    Example:
        policy = PolicyEngine()
        verdict = policy.validate("click_element", {"selector": "#go"}, "https://example.com")
        if verdict.allowed:
            ...
            policy.record_execution("click_element")
    """

    def __init__(
        self,
        rate_limit: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rate_limit = rate_limit or RateLimitConfig()
        self._clock = clock
        self._log: deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def rate_limit(self) -> RateLimitConfig:
        return self._rate_limit

    # ------------------------------------------------------------------
    # Execution log
    # ------------------------------------------------------------------

    def _prune(self, now: float) -> None:
        window = self._rate_limit.window_ms / 1000.0
        while self._log and now - self._log[0] > window:
            self._log.popleft()

    def record_execution(self, tool: str) -> None:
        """Count an attempted write-capable action against the budget."""
        if not is_write_capable(tool):
            return
        with self._lock:
            self._log.append(self._clock())

    def execution_log(self) -> tuple[float, ...]:
        """Snapshot of the timestamps currently held, oldest first."""
        with self._lock:
            return tuple(self._log)

    def _rate_exceeded(self) -> bool:
        # Checked here, recorded after dispatch under a separate acquisition.
        # Sessions sharing one engine can overshoot by their in-flight count.
        with self._lock:
            self._prune(self._clock())
            return len(self._log) >= self._rate_limit.max_executions

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def validate(self, tool: str, params: dict[str, Any], current_page_address: str) -> ValidationResult:
        if tool in READ_ONLY_TOOLS:
            return ValidationResult(allowed=True)

        if self._rate_exceeded():
            return ValidationResult(
                allowed=False,
                reason=(
                    f"⛔ Rate limit reached ({self._rate_limit.max_executions} actions per "
                    f"{self._rate_limit.window_ms // 1000} seconds). Wait a moment before trying again."
                ),
            )

        if tool in DOMAIN_GATED_TOOLS:
            try:
                hostname, address = _parse_address(current_page_address)
            except ValueError:
                return ValidationResult(
                    allowed=False,
                    reason="🔒 The address of the current page could not be verified, so the action was blocked.",
                )

            fragment = _match_domain(hostname, address)
            if fragment is not None:
                return ValidationResult(
                    allowed=False,
                    reason=(
                        f'🔒 Action blocked: "{hostname}" is classified as a sensitive site ({fragment}). '
                        "Automated actions are not allowed on this kind of site. "
                        "Please perform this action manually."
                    ),
                )

        if tool == ToolName.TYPE_TEXT:
            selector = str(params.get("selector") or "")
            fragment = _match_selector(selector.lower())
            if fragment is not None:
                return ValidationResult(
                    allowed=False,
                    reason=(
                        f'🔒 Action blocked: the selector "{selector}" targets a sensitive field ({fragment}). '
                        "Typing into password, payment or personal-data fields is not allowed."
                    ),
                )

        return ValidationResult(allowed=True)
