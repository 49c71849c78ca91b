from pydantic import Field

from chatline.schemas.messages import ContentType, WireModel


class SessionSummary(WireModel):
    session_id: str
    session_title: str = "Untitled session"
    updated_at: float = 0


class ModelSelector(WireModel):
    provider_id: str | None = None
    model_name: str | None = None


class ModelProvider(WireModel):
    provider_id: str
    provider_name: str | None = None
    models: list[ModelSelector] = Field(default_factory=list)


class UploadRef(WireModel):
    upload_id: str
    content_type: ContentType
    url: str | None = None  # display URL; falls back to the upload id


class ChatRequest(WireModel):
    session_id: str
    prompt: str
    provider_id: str | None = None
    model_name: str | None = None
    upload_id: str | None = None
    content_type: ContentType | None = None

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
