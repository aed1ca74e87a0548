# backends.py
# Model-serving adapters.
#
# The harness speaks one provider-neutral ChatRequest and expects plain reply
# text back. Each adapter owns the payload shape of one kind of endpoint and
# translates every transport or protocol failure into BackendError.
#
#   ollama  POST {api_url}/api/chat              (httpx)
#   openai  {api_url}/v1 chat.completions        (openai SDK, LM Studio etc.)
#   proxy   POST {api_url}/api/ai/chat           (httpx, chat-proxy middleware)

from typing import Any, Protocol

import httpx
from openai import AsyncOpenAI, OpenAIError

from page_pilot.config import Settings
from page_pilot.models import ChatRequest, ConversationTurn, Role


class BackendError(Exception):
    """Raised when a model backend cannot produce a reply."""

    def __init__(self, message: str, provider: str = "", endpoint: str = "") -> None:
        super().__init__(message)
        self.provider = provider
        self.endpoint = endpoint


class ModelBackend(Protocol):
    provider: str
    endpoint: str

    async def complete(self, request: ChatRequest) -> str: ...

    async def aclose(self) -> None: ...


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _data_url(image: str) -> str:
    return image if image.startswith("data:") else f"data:image/png;base64,{image}"


def _bare_base64(image: str) -> str:
    return image.split(",", 1)[1] if image.startswith("data:") and "," in image else image


def ollama_message(turn: ConversationTurn) -> dict[str, Any]:
    message: dict[str, Any] = {"role": turn.role.value, "content": turn.content}
    if turn.images:
        message["images"] = [_bare_base64(image) for image in turn.images]
    return message


def openai_message(turn: ConversationTurn) -> dict[str, Any]:
    if not turn.images:
        return {"role": turn.role.value, "content": turn.content}
    parts: list[dict[str, Any]] = [{"type": "text", "text": turn.content}]
    for image in turn.images:
        parts.append({"type": "image_url", "image_url": {"url": _data_url(image)}})
    return {"role": turn.role.value, "content": parts}


def ollama_payload(request: ChatRequest) -> dict[str, Any]:
    return {
        "model": request.model,
        "messages": [ollama_message(turn) for turn in request.messages],
        "stream": False,
        "options": {"temperature": request.temperature},
    }


def proxy_payload(request: ChatRequest) -> dict[str, Any]:
    image = None
    for turn in reversed(request.messages):
        if turn.role is Role.USER and turn.images:
            image = _data_url(turn.images[0])
            break
    return {
        "message": request.last_user_message,
        "messages": [{"role": turn.role.value, "content": turn.content} for turn in request.messages],
        "model": request.model,
        "temperature": request.temperature,
        "image": image,
    }


def _json_body(response: httpx.Response, provider: str, endpoint: str) -> dict[str, Any]:
    if response.status_code >= 400:
        raise BackendError(f"HTTP {response.status_code}: {response.text[:200]}", provider, endpoint)
    try:
        data = response.json()
    except ValueError as exc:
        raise BackendError(f"Response is not JSON: {exc}", provider, endpoint) from exc
    if not isinstance(data, dict):
        raise BackendError("Response is not a JSON object.", provider, endpoint)
    return data


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class _HttpBackend:
    provider = ""
    path = ""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.endpoint = settings.api_url + self.path
        self._client = httpx.AsyncClient(
            headers=settings.headers,
            timeout=settings.timeout,
            transport=transport,
        )

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(self.endpoint, json=payload)
        except httpx.HTTPError as exc:
            raise BackendError(str(exc) or exc.__class__.__name__, self.provider, self.endpoint) from exc
        return _json_body(response, self.provider, self.endpoint)

    async def aclose(self) -> None:
        await self._client.aclose()


class OllamaBackend(_HttpBackend):
    provider = "ollama"
    path = "/api/chat"

    async def complete(self, request: ChatRequest) -> str:
        data = await self._post(ollama_payload(request))
        message = data.get("message") or {}
        return str(message.get("content") or "")


class ProxyBackend(_HttpBackend):
    provider = "proxy"
    path = "/api/ai/chat"

    async def complete(self, request: ChatRequest) -> str:
        data = await self._post(proxy_payload(request))
        if not data.get("success"):
            raise BackendError(str(data.get("error") or "Proxy error"), self.provider, self.endpoint)
        return str(data.get("response") or "")


class OpenAICompatibleBackend:
    provider = "openai"

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        self.endpoint = settings.api_url + "/v1"
        default_headers = {"X-Custom-Auth": settings.auth_header} if settings.auth_header else None
        self._client = client or AsyncOpenAI(
            base_url=self.endpoint,
            api_key=settings.api_key or "not-needed",
            timeout=settings.timeout,
            default_headers=default_headers,
        )

    async def complete(self, request: ChatRequest) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=request.model,
                messages=[openai_message(turn) for turn in request.messages],
                temperature=request.temperature,
                stream=False,
            )
        except OpenAIError as exc:
            raise BackendError(str(exc), self.provider, self.endpoint) from exc
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    async def aclose(self) -> None:
        await self._client.close()


def create_backend(settings: Settings) -> ModelBackend:
    if settings.provider == "ollama":
        return OllamaBackend(settings)
    if settings.provider == "openai":
        return OpenAICompatibleBackend(settings)
    if settings.provider == "proxy":
        return ProxyBackend(settings)
    raise ValueError(f"Unsupported provider: {settings.provider}")
