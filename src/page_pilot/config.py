# config.py
# Runtime settings, read from the environment (and a local .env file).

import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from page_pilot.policy import RateLimitConfig

ENV_PREFIX = "PAGE_PILOT_"

Provider = Literal["ollama", "openai", "proxy"]

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful browsing assistant working alongside the user on the page they have open. "
    "Use markdown for formatting. Be brief but precise."
)

DEFAULT_API_URLS: dict[str, str] = {
    "ollama": "http://localhost:11434",
    "openai": "http://localhost:1234",
    "proxy": "http://localhost:3000",
}


class Settings(BaseModel):
    provider: Provider = "ollama"
    api_url: str = DEFAULT_API_URLS["ollama"]
    model: str = "qwen2.5-coder:3b"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    timeout: float = Field(default=120.0, gt=0, description="Seconds to wait for a model reply.")
    history_limit: int = Field(default=20, ge=1)

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    custom_instructions: str = ""
    response_style: str = "normal"

    api_key: str | None = None
    auth_header: str | None = None

    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self.auth_header:
            headers["X-Custom-Auth"] = self.auth_header
        return headers

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from PAGE_PILOT_* variables, falling back to defaults."""
        load_dotenv()

        def env(name: str) -> str | None:
            value = os.getenv(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        values: dict = {}
        provider = env("PROVIDER")
        if provider:
            values["provider"] = provider.lower()
            values["api_url"] = DEFAULT_API_URLS.get(values["provider"], DEFAULT_API_URLS["ollama"])

        for field, name in (
            ("api_url", "API_URL"),
            ("model", "MODEL"),
            ("temperature", "TEMPERATURE"),
            ("timeout", "TIMEOUT"),
            ("history_limit", "HISTORY_LIMIT"),
            ("system_prompt", "SYSTEM_PROMPT"),
            ("custom_instructions", "CUSTOM_INSTRUCTIONS"),
            ("response_style", "RESPONSE_STYLE"),
            ("api_key", "API_KEY"),
            ("auth_header", "AUTH_HEADER"),
        ):
            value = env(name)
            if value is not None:
                values[field] = value

        rate_limit = {}
        if env("RATE_LIMIT_MAX") is not None:
            rate_limit["max_executions"] = env("RATE_LIMIT_MAX")
        if env("RATE_LIMIT_WINDOW_MS") is not None:
            rate_limit["window_ms"] = env("RATE_LIMIT_WINDOW_MS")
        if rate_limit:
            values["rate_limit"] = rate_limit

        return cls.model_validate(values)
