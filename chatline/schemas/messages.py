from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ContentType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    PDF = "PDF"


class LifecycleStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    SUCCESS = "success"
    ERROR = "error"
    ABORTED = "aborted"


Role = Literal["user", "assistant"]


class WireModel(BaseModel):
    """Base for models exchanged with the chat server (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ToolRequest(WireModel):
    id: str
    name: str = ""
    argument: str = ""  # opaque serialized payload


class ToolResult(WireModel):
    id: str
    text: str = ""
    is_error: bool | None = None
    tool_name: str | None = None

    @property
    def failed(self) -> bool:
        return self.is_error is True


class Attachment(WireModel):
    content_type: ContentType
    url: str


class Message(BaseModel):
    """A single logical turn in a conversation.

    Instances are frozen; every change goes through ``model_copy(update=...)``
    so untouched messages keep their identity inside the store.
    """

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    role: Role
    content: str = ""
    thinking: str | None = None
    tool_requests: list[ToolRequest] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    attachment: Attachment | None = None
    timestamp: str | None = None
    status: LifecycleStatus | None = None
