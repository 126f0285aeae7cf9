"""WhatsApp Cloud API webhook schemas."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class MediaBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    mime_type: str | None = None
    sha256: str | None = None
    voice: bool | None = None


class TextBody(BaseModel):
    body: str


class ReplyBody(BaseModel):
    id: str
    title: str | None = None
    description: str | None = None


class FlowReplyBody(BaseModel):
    """A submitted structured form (``nfm_reply``)."""

    response_json: str
    body: str | None = None
    name: str | None = None


class InteractiveBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    button_reply: ReplyBody | None = None
    list_reply: ReplyBody | None = None
    nfm_reply: FlowReplyBody | None = None


class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    from_: str = Field(alias="from")
    id: str
    timestamp: str | None = None
    type: str
    audio: MediaBody | None = None
    voice: MediaBody | None = None
    text: TextBody | None = None
    interactive: InteractiveBody | None = None


class ChangeValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messaging_product: str | None = None
    metadata: dict = Field(default_factory=dict)
    contacts: list[dict] = Field(default_factory=list)
    messages: list[InboundMessage] = Field(default_factory=list)
    statuses: list[dict] = Field(default_factory=list)


class WebhookChange(BaseModel):
    field: str | None = None
    value: ChangeValue


class WebhookEntry(BaseModel):
    id: str | None = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    object: str | None = None
    entry: list[WebhookEntry] = Field(default_factory=list)


class ParsedMessage(BaseModel):
    """Channel-neutral view of one inbound message."""

    message_id: str
    sender: str
    kind: Literal["audio", "text", "selection", "flow", "unsupported"]
    media_id: str | None = None
    mime_type: str | None = None
    text: str | None = None
    selection_id: str | None = None
    selection_title: str | None = None
    flow_token: str | None = None
    flow_response: dict | None = None
