# models.py
# Data contracts for the page co-pilot agent loop.
# Schema and boundary decoding only.

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator


class UnknownToolError(ValueError):
    """Raised when a tool call names a capability outside the closed tool set."""


class InvalidToolParamsError(ValueError):
    """Raised when a known tool is called with parameters of the wrong shape."""


class ToolName(str, Enum):
    READ_PAGE = "read_page"
    CLICK_ELEMENT = "click_element"
    TYPE_TEXT = "type_text"
    SCROLL = "scroll"
    GET_LINKS = "get_links"
    GOOGLE_SEARCH = "google_search"


TOOL_NAMES = frozenset(t.value for t in ToolName)
READ_ONLY_TOOLS = frozenset(
    t.value for t in (ToolName.READ_PAGE, ToolName.GET_LINKS, ToolName.SCROLL)
)


def is_write_capable(tool: str) -> bool:
    """Every known tool that is not read-only counts against the rate budget."""
    return tool in TOOL_NAMES and tool not in READ_ONLY_TOOLS


# ---------------------------------------------------------------------------
# Tool calls: one variant per capability, tagged by `tool`
# ---------------------------------------------------------------------------


class _ToolCallBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    @property
    def params(self) -> dict[str, Any]:
        return self.model_dump(exclude={"tool"})


class ReadPage(_ToolCallBase):
    tool: Literal["read_page"] = "read_page"
    mode: Literal["text", "html"] = "text"


class ClickElement(_ToolCallBase):
    tool: Literal["click_element"] = "click_element"
    selector: str = Field(..., min_length=1)


class TypeText(_ToolCallBase):
    tool: Literal["type_text"] = "type_text"
    selector: str = Field(..., min_length=1)
    text: str = ""


class Scroll(_ToolCallBase):
    tool: Literal["scroll"] = "scroll"
    direction: Literal["up", "down", "top", "bottom"] = "down"

    @field_validator("direction", mode="before")
    @classmethod
    def _default_down(cls, value: Any) -> Any:
        # Anything unrecognised scrolls down one screen.
        if value not in ("up", "down", "top", "bottom"):
            return "down"
        return value


class GetLinks(_ToolCallBase):
    tool: Literal["get_links"] = "get_links"


class GoogleSearch(_ToolCallBase):
    tool: Literal["google_search"] = "google_search"
    query: str = Field(..., min_length=1)


ToolCall = Annotated[
    Union[ReadPage, ClickElement, TypeText, Scroll, GetLinks, GoogleSearch],
    Field(discriminator="tool"),
]

_TOOL_CALL_ADAPTER: TypeAdapter = TypeAdapter(ToolCall)


def decode_tool_call(tool: Any, params: Any = None) -> ToolCall:
    """
    Decode an untyped (tool, params) pair into its typed variant.

    Raises UnknownToolError for names outside the closed set and
    InvalidToolParamsError for parameters that do not fit the variant.
    """
    if not isinstance(tool, str) or tool not in TOOL_NAMES:
        raise UnknownToolError(f"Unknown tool: {tool}")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise InvalidToolParamsError(f"Invalid parameters for {tool}: expected an object.")
    try:
        return _TOOL_CALL_ADAPTER.validate_python({**params, "tool": tool})
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"][1:]) or "params" for err in exc.errors()
        )
        raise InvalidToolParamsError(f"Invalid parameters for {tool}: {fields}") from exc


# ---------------------------------------------------------------------------
# Policy and dispatch results
# ---------------------------------------------------------------------------


class ValidationResult(BaseModel):
    """Outcome of a single policy check. Lives for one tool attempt only."""

    allowed: bool
    reason: str | None = None
    requires_confirmation: bool = False


class ToolResult(BaseModel):
    """Normalized result of a dispatch. `blocked` marks a policy denial."""

    success: bool | None = None
    result: Any = None
    error: str | None = None
    blocked: bool = False

    @classmethod
    def ok(cls, result: Any) -> "ToolResult":
        return cls(success=True, result=result)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(error=error)

    @classmethod
    def denied(cls, reason: str) -> "ToolResult":
        return cls(error=reason, blocked=True)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConversationTurn(BaseModel):
    role: Role
    content: str
    images: list[str] = Field(default_factory=list, description="Base64-encoded images, no data: prefix.")


class ChatRequest(BaseModel):
    """Provider-neutral request handed to a model backend."""

    model: str
    messages: list[ConversationTurn]
    temperature: float = 0.7

    @property
    def last_user_message(self) -> str:
        for turn in reversed(self.messages):
            if turn.role is Role.USER:
                return turn.content
        return ""


class TurnOutcome(BaseModel):
    """What a single user-initiated exchange produced."""

    reply: str | None = None
    tool_calls: int = 0
    blocked: bool = False
    cancelled: bool = False
    error: str | None = None
    notices: list[str] = Field(default_factory=list)
