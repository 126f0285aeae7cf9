"""WhatsApp Cloud API client used as the messaging channel."""

import json
import logging

import httpx

from voicecal.config import Settings, get_settings
from voicecal.schemas.whatsapp import InboundMessage, ParsedMessage, WebhookPayload
from voicecal.services.errors import ChannelError

logger = logging.getLogger(__name__)

MAX_BUTTONS = 3
MAX_LIST_OPTIONS = 10
BUTTON_TITLE_LIMIT = 20
LIST_TITLE_LIMIT = 24


class WhatsAppService:
    """Send and receive messages through the WhatsApp Cloud API."""

    def __init__(
        self, settings: Settings | None = None, client: httpx.Client | None = None
    ) -> None:
        self.settings = settings or get_settings()
        self.base_url = f"{self.settings.whatsapp_api_url}/{self.settings.whatsapp_api_version}"
        self.client = client or httpx.Client(timeout=self.settings.channel_timeout_seconds)

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.whatsapp_access_token}"}

    # Inbound

    @staticmethod
    def parse_inbound(payload: dict) -> list[ParsedMessage]:
        """Flatten a webhook delivery into channel-neutral messages."""
        webhook = WebhookPayload.model_validate(payload)
        parsed = []
        for entry in webhook.entry:
            for change in entry.changes:
                for message in change.value.messages:
                    parsed.append(_parse_message(message))
        return parsed

    # Outbound

    def send_text(self, to: str, body: str) -> str | None:
        return self._send(
            {"to": to, "type": "text", "text": {"preview_url": False, "body": body}},
            "send text",
        )

    def send_buttons(self, to: str, body: str, buttons: list[tuple[str, str]]) -> str | None:
        """Send up to three reply buttons as ``(id, title)`` pairs."""
        if not buttons or len(buttons) > MAX_BUTTONS:
            raise ValueError(f"Reply buttons need 1-{MAX_BUTTONS} options, got {len(buttons)}")
        return self._send(
            {
                "to": to,
                "type": "interactive",
                "interactive": {
                    "type": "button",
                    "body": {"text": body},
                    "action": {
                        "buttons": [
                            {
                                "type": "reply",
                                "reply": {"id": option_id, "title": title[:BUTTON_TITLE_LIMIT]},
                            }
                            for option_id, title in buttons
                        ]
                    },
                },
            },
            "send buttons",
        )

    def send_list(
        self,
        to: str,
        body: str,
        options: list[tuple[str, str]],
        button_text: str = "Select option",
    ) -> str | None:
        """Send a single-section list of up to ten ``(id, title)`` rows."""
        if not options or len(options) > MAX_LIST_OPTIONS:
            raise ValueError(f"List prompts need 1-{MAX_LIST_OPTIONS} options, got {len(options)}")
        return self._send(
            {
                "to": to,
                "type": "interactive",
                "interactive": {
                    "type": "list",
                    "body": {"text": body},
                    "action": {
                        "button": button_text,
                        "sections": [
                            {
                                "title": "Options",
                                "rows": [
                                    {"id": option_id, "title": title[:LIST_TITLE_LIMIT]}
                                    for option_id, title in options
                                ],
                            }
                        ],
                    },
                },
            },
            "send list",
        )

    def send_flow(
        self,
        to: str,
        body: str,
        flow_token: str,
        fields: list[dict],
        cta: str = "Fill in details",
    ) -> str | None:
        """Send the configured structured form, seeded with the requested fields."""
        if not self.settings.whatsapp_flow_id:
            raise ChannelError("Structured forms are not configured: invalid flow id")
        return self._send(
            {
                "to": to,
                "type": "interactive",
                "interactive": {
                    "type": "flow",
                    "body": {"text": body},
                    "action": {
                        "name": "flow",
                        "parameters": {
                            "flow_message_version": "3",
                            "flow_token": flow_token,
                            "flow_id": self.settings.whatsapp_flow_id,
                            "flow_cta": cta,
                            "flow_action": "navigate",
                            "flow_action_payload": {
                                "screen": "CLARIFY",
                                "data": {"fields": fields},
                            },
                        },
                    },
                },
            },
            "send flow",
        )

    # Media

    def get_media_url(self, media_id: str) -> tuple[str, str | None]:
        response = self.client.get(f"{self.base_url}/{media_id}", headers=self._headers)
        _raise_for_status(response, "media lookup")
        data = response.json()
        if not data.get("url"):
            raise ChannelError(f"Media {media_id} not found: lookup returned no url")
        return data["url"], data.get("mime_type")

    def download_media(self, media_id: str) -> tuple[bytes, str | None]:
        """Download a media object, bounded by the configured timeout and size."""
        url, mime_type = self.get_media_url(media_id)
        limit = self.settings.audio_max_bytes
        chunks = []
        total = 0
        with self.client.stream(
            "GET", url, headers=self._headers, timeout=self.settings.download_timeout_seconds
        ) as response:
            if not response.is_success:
                response.read()
            _raise_for_status(response, "media download")
            for chunk in response.iter_bytes():
                total += len(chunk)
                if total > limit:
                    raise ChannelError(f"Invalid audio: media exceeds {limit} bytes")
                chunks.append(chunk)
        logger.info(f"Downloaded media {media_id} ({total} bytes)")
        return b"".join(chunks), mime_type

    def close(self) -> None:
        self.client.close()

    def _send(self, message: dict, action: str) -> str | None:
        payload = {"messaging_product": "whatsapp", "recipient_type": "individual", **message}
        response = self.client.post(
            f"{self.base_url}/{self.settings.whatsapp_phone_number_id}/messages",
            headers=self._headers,
            json=payload,
        )
        _raise_for_status(response, action)
        messages = response.json().get("messages") or []
        return messages[0].get("id") if messages else None


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.is_success:
        return
    raise ChannelError(
        f"WhatsApp {action} failed: {response.status_code} {response.reason_phrase} "
        f"{response.text[:200]}"
    )


def _parse_message(message: InboundMessage) -> ParsedMessage:
    base = {"message_id": message.id, "sender": message.from_}

    media = message.audio or message.voice
    if message.type in ("audio", "voice") and media:
        return ParsedMessage(kind="audio", media_id=media.id, mime_type=media.mime_type, **base)

    if message.type == "text" and message.text:
        return ParsedMessage(kind="text", text=message.text.body, **base)

    if message.type == "interactive" and message.interactive:
        interactive = message.interactive
        reply = interactive.button_reply or interactive.list_reply
        if reply:
            return ParsedMessage(
                kind="selection",
                selection_id=reply.id,
                selection_title=reply.title,
                **base,
            )
        if interactive.nfm_reply:
            try:
                response = json.loads(interactive.nfm_reply.response_json)
            except json.JSONDecodeError:
                logger.warning(f"Unparseable flow response in message {message.id}")
                response = {}
            return ParsedMessage(
                kind="flow",
                flow_token=response.get("flow_token"),
                flow_response=response,
                **base,
            )

    return ParsedMessage(kind="unsupported", **base)
