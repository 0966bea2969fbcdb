"""Translation between WhatsApp messages and Chatwoot messages.

Everything here is pure: no database, no HTTP. Callers resolve identities,
reply mappings and attachment downloads around these functions.
"""

from __future__ import annotations

import mimetypes
import re
from dataclasses import dataclass, field
from typing import Any

from app.schemas.chatwoot import ChatwootWebhookPayload, WAMessageEvent
from app.services.chatwoot.errors import TranslationError
from app.services.chatwoot.phone import is_group_jid

SOURCE_ID_PREFIX = "WAID:"

_WRAPPERS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

# Keys that accompany real content but never carry any themselves
_METADATA_KEYS = {"messageContextInfo", "senderKeyDistributionMessage"}

# Nothing to forward
_SILENT_KINDS = {
    "protocolMessage",
    "pollUpdateMessage",
    "keepInChatMessage",
    "encReactionMessage",
    "pinInChatMessage",
    "callLogMesssage",
}

_MEDIA_KINDS = {
    "imageMessage": ("image", "image", "jpg"),
    "videoMessage": ("video", "video", "mp4"),
    "audioMessage": ("audio", "audio", "mp3"),
    "documentMessage": ("document", "file", "bin"),
    "stickerMessage": ("sticker", "image", "webp"),
}

_PLACEHOLDERS = {
    "image": "[Image]",
    "video": "[Video]",
    "audio": "[Audio]",
    "document": "[Document]",
    "sticker": "[Sticker]",
}

_FALLBACK_MIME = {
    "image": "image/jpeg",
    "video": "video/mp4",
    "audio": "audio/mpeg",
    "file": "application/octet-stream",
}

_CAPTIONABLE = {"image", "video", "document"}

# protocolMessage.type arrives as the enum name or its number
_REVOKE_TYPES = {"REVOKE", 0}

_MD_BOLD = re.compile(r"\*\*(?=\S)(.+?)(?<=\S)\*\*")
_MD_ITALIC = re.compile(r"(?<![*\w])\*(?=[^\s*])([^*\n]+?)(?<=\S)\*(?![*\w])")
_MD_STRIKE = re.compile(r"~~(?=\S)(.+?)(?<=\S)~~")
_BOLD_MARK = "\x00"


@dataclass(frozen=True)
class AttachmentDraft:
    file_type: str
    url: str
    file_name: str
    mime_type: str


@dataclass(frozen=True)
class SupportMessageDraft:
    kind: str
    content: str | None
    message_type: str
    source_id: str
    attachments: tuple[AttachmentDraft, ...] = ()
    in_reply_to_external_id: str | None = None


@dataclass(frozen=True)
class MediaPayload:
    file_type: str  # image, video, audio, document
    url: str
    file_name: str
    mime_type: str
    data: bytes | None = field(default=None, repr=False)


@dataclass(frozen=True)
class WhatsAppSendRequest:
    action: str  # send, delete
    text: str | None = None
    media: MediaPayload | None = None
    quoted_message_id: str | None = None
    target_message_id: str | None = None


def source_id_for(whatsapp_message_id: str) -> str:
    return f"{SOURCE_ID_PREFIX}{whatsapp_message_id}"


def whatsapp_id_from_source_id(source_id: str | None) -> str | None:
    if not source_id:
        return None
    if source_id.startswith(SOURCE_ID_PREFIX):
        return source_id[len(SOURCE_ID_PREFIX):] or None
    return source_id


def convert_markdown(text: str) -> str:
    """Chatwoot markdown to WhatsApp: **bold** -> *bold*, *italic* -> _italic_, ~~strike~~ -> ~strike~."""
    text = _MD_BOLD.sub(lambda m: f"{_BOLD_MARK}{m.group(1)}{_BOLD_MARK}", text)
    text = _MD_ITALIC.sub(r"_\1_", text)
    text = _MD_STRIKE.sub(r"~\1~", text)
    return text.replace(_BOLD_MARK, "*")


def unwrap_message(message: dict[str, Any] | None) -> dict[str, Any]:
    current = message or {}
    for _ in range(5):
        for wrapper in _WRAPPERS:
            inner = current.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                current = inner["message"]
                break
        else:
            return current
    return current


def revoked_message_id(event: WAMessageEvent) -> str | None:
    """Id of the message a "delete for everyone" revokes, or None for any other event."""
    body = unwrap_message(event.message).get("protocolMessage")
    if not isinstance(body, dict) or body.get("type") not in _REVOKE_TYPES:
        return None
    return (body.get("key") or {}).get("id") or None


def message_kind(message: dict[str, Any]) -> str | None:
    for key, value in message.items():
        if key in _METADATA_KEYS or value is None:
            continue
        return key
    return None


def _context_info(body: Any) -> dict[str, Any]:
    if isinstance(body, dict):
        return body.get("contextInfo") or {}
    return {}


def _sender_label(event: WAMessageEvent) -> str:
    if event.push_name:
        return event.push_name
    participant = event.key.participant or event.key.remote_jid
    return participant.split("@", 1)[0].split(":", 1)[0]


def _format_location(body: dict[str, Any]) -> str:
    lat = body.get("degreesLatitude")
    lng = body.get("degreesLongitude")
    if lat is None or lng is None:
        raise TranslationError("location_missing_coordinates", "Location message without coordinates")
    lines = ["Location:"]
    if body.get("name"):
        lines.append(str(body["name"]))
    if body.get("address"):
        lines.append(str(body["address"]))
    lines.append(f"Lat: {lat}, Lng: {lng}")
    lines.append(f"https://maps.google.com/?q={lat},{lng}")
    return "\n".join(lines)


def _vcard_phones(vcard: str) -> list[str]:
    phones = []
    for line in (vcard or "").splitlines():
        if not line.upper().startswith(("TEL", "ITEM1.TEL", "ITEM2.TEL")):
            continue
        _, _, value = line.partition(":")
        value = value.strip()
        if value:
            phones.append(value)
    return phones


def _format_contact(body: dict[str, Any]) -> str:
    name = body.get("displayName") or "Unknown"
    lines = [f"Contact: {name}"]
    for phone in _vcard_phones(body.get("vcard") or ""):
        lines.append(f"Phone: {phone}")
    return "\n".join(lines)


def _format_poll(body: dict[str, Any]) -> str:
    lines = [f"[Poll] {body.get('name') or ''}".rstrip()]
    for index, option in enumerate(body.get("options") or [], start=1):
        lines.append(f"{index}. {option.get('optionName', '')}")
    return "\n".join(lines)


def _media_file_name(kind: str, body: dict[str, Any], message_id: str, extension: str) -> str:
    if kind == "document" and body.get("fileName"):
        return str(body["fileName"])
    mime = body.get("mimetype") or ""
    guessed = mimetypes.guess_extension(mime.split(";", 1)[0].strip()) if mime else None
    if kind == "audio" and body.get("ptt"):
        guessed = ".ogg"
    return f"{message_id}{guessed or '.' + extension}"


def _text_and_reply(kind: str, body: Any) -> tuple[str | None, str | None]:
    """Returns (content, in_reply_to_external_id) for non-media kinds."""
    ctx = _context_info(body)
    quoted = ctx.get("stanzaId")
    if kind == "conversation":
        return str(body), None
    if kind == "extendedTextMessage":
        return body.get("text"), quoted
    if kind in ("locationMessage", "liveLocationMessage"):
        return _format_location(body), quoted
    if kind == "contactMessage":
        return _format_contact(body), quoted
    if kind == "contactsArrayMessage":
        cards = [_format_contact(contact) for contact in body.get("contacts") or []]
        if not cards:
            raise TranslationError("empty_contacts", "Contacts message without contacts")
        return "\n\n".join(cards), quoted
    if kind == "listResponseMessage":
        title = body.get("title") or (body.get("singleSelectReply") or {}).get("selectedRowId")
        return title, quoted
    if kind in ("buttonsResponseMessage", "templateButtonReplyMessage"):
        return body.get("selectedDisplayText") or body.get("selectedButtonId") or body.get("selectedId"), quoted
    if kind == "interactiveResponseMessage":
        return (body.get("body") or {}).get("text"), quoted
    if kind in ("pollCreationMessage", "pollCreationMessageV2", "pollCreationMessageV3"):
        return _format_poll(body), quoted
    raise TranslationError("unsupported_message", f"Unsupported WhatsApp message kind {kind}")


def to_support_message(
    event: WAMessageEvent,
    sign_group_sender: bool = False,
    separator: str = "\n",
) -> SupportMessageDraft | None:
    """Translate a WhatsApp message into a Chatwoot message draft.

    Returns None for messages with nothing to forward (protocol messages,
    reaction removals). Raises TranslationError for shapes it cannot map.
    """
    message = unwrap_message(event.message)
    kind = message_kind(message)
    if kind is None:
        raise TranslationError("empty_message", "WhatsApp message has no content")
    if kind in _SILENT_KINDS:
        return None

    body = message[kind]
    message_type = "outgoing" if event.key.from_me else "incoming"
    attachments: tuple[AttachmentDraft, ...] = ()
    reply_to: str | None

    if kind == "reactionMessage":
        emoji = (body or {}).get("text")
        if not emoji:
            return None
        content = f"[Reaction] {emoji}"
        reply_to = ((body or {}).get("key") or {}).get("id")
        label = "reaction"
    elif kind in _MEDIA_KINDS:
        label, file_type, extension = _MEDIA_KINDS[kind]
        body = body or {}
        caption = body.get("caption")
        reply_to = _context_info(body).get("stanzaId")
        if event.media_url:
            name = _media_file_name(label, body, event.key.id, extension)
            mime = body.get("mimetype") or mimetypes.guess_type(name)[0] or _FALLBACK_MIME[file_type]
            attachments = (AttachmentDraft(file_type=file_type, url=event.media_url, file_name=name, mime_type=mime),)
            content = caption
        else:
            placeholder = _PLACEHOLDERS[label]
            if label == "document" and body.get("fileName"):
                placeholder = f"{placeholder} {body['fileName']}"
            content = f"{placeholder}\n{caption}" if caption else placeholder
    else:
        content, reply_to = _text_and_reply(kind, body)
        label = "text" if kind in ("conversation", "extendedTextMessage") else kind.removesuffix("Message")

    if not content and not attachments:
        raise TranslationError("empty_content", f"WhatsApp {kind} has no renderable content")

    if content and sign_group_sender and is_group_jid(event.key.remote_jid) and not event.key.from_me:
        content = f"**{_sender_label(event)}**{separator}{content}"

    return SupportMessageDraft(
        kind=label,
        content=content,
        message_type=message_type,
        source_id=source_id_for(event.key.id),
        attachments=attachments,
        in_reply_to_external_id=reply_to or None,
    )


def _send_file_type(chatwoot_file_type: str | None) -> str:
    if chatwoot_file_type in ("image", "video", "audio"):
        return chatwoot_file_type
    return "document"


def _mime_for(file_type: str | None, file_name: str | None) -> str:
    if file_name:
        guessed, _ = mimetypes.guess_type(file_name)
        if guessed:
            return guessed
    return _FALLBACK_MIME.get(file_type or "file", _FALLBACK_MIME["file"])


def agent_signature(payload: ChatwootWebhookPayload, content: str, separator: str) -> str:
    sender = payload.sender
    name = (sender.available_name or sender.name) if sender else None
    if not name:
        return content
    return f"*{name}*{separator}{content}"


def to_whatsapp_send(
    payload: ChatwootWebhookPayload,
    sign_with_agent_name: bool = False,
    separator: str = "\n",
    quoted_message_id: str | None = None,
    target_message_id: str | None = None,
) -> list[WhatsAppSendRequest]:
    """Translate a Chatwoot webhook message into WhatsApp send instructions.

    A deleted message maps to a single delete request for ``target_message_id``.
    Otherwise one request per attachment is produced, with the text carried as
    the caption of the first attachment that accepts one.
    """
    attributes = payload.content_attributes
    if attributes and attributes.deleted:
        if not target_message_id:
            return []
        return [WhatsAppSendRequest(action="delete", target_message_id=target_message_id)]

    text = convert_markdown((payload.content or "").strip()) or None
    if text and sign_with_agent_name:
        text = agent_signature(payload, text, separator)

    attachments = [item for item in payload.attachments if item.data_url]
    if not attachments:
        if not text:
            raise TranslationError("empty_webhook_message", "Webhook message has no content or attachments")
        return [WhatsAppSendRequest(action="send", text=text, quoted_message_id=quoted_message_id)]

    media = []
    for item in attachments:
        file_type = _send_file_type(item.file_type)
        file_name = item.file_name or item.data_url.rsplit("/", 1)[-1].split("?", 1)[0] or file_type
        media.append(
            MediaPayload(
                file_type=file_type,
                url=item.data_url,
                file_name=file_name,
                mime_type=_mime_for(item.file_type, file_name),
            )
        )

    caption_index = next((i for i, m in enumerate(media) if m.file_type in _CAPTIONABLE), None)
    requests: list[WhatsAppSendRequest] = []
    if text and caption_index is None:
        requests.append(WhatsAppSendRequest(action="send", text=text, quoted_message_id=quoted_message_id))
    for index, item in enumerate(media):
        requests.append(
            WhatsAppSendRequest(
                action="send",
                text=text if index == caption_index else None,
                media=item,
                quoted_message_id=quoted_message_id,
            )
        )
    return requests
