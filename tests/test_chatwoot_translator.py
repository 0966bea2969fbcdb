import pytest

from app.schemas.chatwoot import ChatwootWebhookPayload, WAMessageEvent
from app.services.chatwoot.errors import TranslationError
from app.services.chatwoot.translator import (
    convert_markdown,
    revoked_message_id,
    source_id_for,
    to_support_message,
    to_whatsapp_send,
    unwrap_message,
    whatsapp_id_from_source_id,
)


def _event(message, *, jid="5511987654321@s.whatsapp.net", from_me=False, media_url=None, **extra):
    payload = {
        "key": {"id": "ABC123", "remoteJid": jid, "fromMe": from_me, **extra.pop("key", {})},
        "message": message,
        "messageTimestamp": 1760000000,
        **extra,
    }
    if media_url:
        payload["mediaUrl"] = media_url
    return WAMessageEvent.model_validate(payload)


def _webhook(**fields):
    payload = {"event": "message_created", "id": 55, "message_type": "outgoing", "content": None}
    payload.update(fields)
    return ChatwootWebhookPayload.model_validate(payload)


def test_source_id_round_trip_accepts_raw_ids():
    assert source_id_for("ABC") == "WAID:ABC"
    assert whatsapp_id_from_source_id("WAID:ABC") == "ABC"
    assert whatsapp_id_from_source_id("ABC") == "ABC"
    assert whatsapp_id_from_source_id(None) is None


def test_plain_text_becomes_incoming_message():
    draft = to_support_message(_event({"conversation": "hello"}))
    assert draft.kind == "text"
    assert draft.content == "hello"
    assert draft.message_type == "incoming"
    assert draft.source_id == "WAID:ABC123"
    assert draft.attachments == ()


def test_from_me_becomes_outgoing():
    draft = to_support_message(_event({"conversation": "sent from phone"}, from_me=True))
    assert draft.message_type == "outgoing"


def test_extended_text_keeps_reply_reference():
    message = {"extendedTextMessage": {"text": "answer", "contextInfo": {"stanzaId": "QUOTED1"}}}
    draft = to_support_message(_event(message))
    assert draft.content == "answer"
    assert draft.in_reply_to_external_id == "QUOTED1"


def test_wrapped_messages_are_unwrapped():
    message = {"ephemeralMessage": {"message": {"viewOnceMessageV2": {"message": {"conversation": "secret"}}}}}
    assert unwrap_message(message) == {"conversation": "secret"}
    assert to_support_message(_event(message)).content == "secret"


def test_image_with_media_url_becomes_attachment_with_caption():
    message = {"imageMessage": {"caption": "look", "mimetype": "image/png"}}
    draft = to_support_message(_event(message, media_url="https://media.local/abc"))
    assert draft.kind == "image"
    assert draft.content == "look"
    assert len(draft.attachments) == 1
    attachment = draft.attachments[0]
    assert attachment.file_type == "image"
    assert attachment.mime_type == "image/png"
    assert attachment.url == "https://media.local/abc"


def test_media_without_url_degrades_to_placeholder():
    draft = to_support_message(_event({"imageMessage": {"caption": "look"}}))
    assert draft.attachments == ()
    assert draft.content == "[Image]\nlook"

    document = to_support_message(_event({"documentMessage": {"fileName": "report.pdf"}}))
    assert document.content == "[Document] report.pdf"


def test_sticker_is_forwarded_as_image():
    draft = to_support_message(_event({"stickerMessage": {"mimetype": "image/webp"}}, media_url="https://m/s"))
    assert draft.kind == "sticker"
    assert draft.attachments[0].file_type == "image"


def test_document_keeps_file_name():
    message = {"documentMessage": {"fileName": "invoice.pdf", "mimetype": "application/pdf"}}
    draft = to_support_message(_event(message, media_url="https://m/doc"))
    assert draft.attachments[0].file_type == "file"
    assert draft.attachments[0].file_name == "invoice.pdf"


def test_location_renders_coordinates():
    message = {"locationMessage": {"degreesLatitude": -23.5, "degreesLongitude": -46.6, "name": "Office"}}
    draft = to_support_message(_event(message))
    assert "Office" in draft.content
    assert "Lat: -23.5, Lng: -46.6" in draft.content
    assert draft.kind == "location"


def test_contact_card_lists_phones():
    vcard = "BEGIN:VCARD\nVERSION:3.0\nFN:Bob\nTEL;type=CELL:+1 555 0100\nEND:VCARD"
    draft = to_support_message(_event({"contactMessage": {"displayName": "Bob", "vcard": vcard}}))
    assert draft.content == "Contact: Bob\nPhone: +1 555 0100"


def test_contacts_array_joins_every_card():
    cards = [
        {"displayName": "Bob", "vcard": "BEGIN:VCARD\nFN:Bob\nTEL:+1 555 0100\nEND:VCARD"},
        {"displayName": "Eve"},
    ]
    draft = to_support_message(_event({"contactsArrayMessage": {"contacts": cards}}))
    assert draft.content == "Contact: Bob\nPhone: +1 555 0100\n\nContact: Eve"
    assert draft.kind == "contactsArray"


def test_empty_contacts_array_is_rejected():
    with pytest.raises(TranslationError) as exc:
        to_support_message(_event({"contactsArrayMessage": {"contacts": []}}))
    assert exc.value.code == "empty_contacts"


def test_list_response_uses_title_then_row_id():
    message = {
        "listResponseMessage": {
            "title": "Plan B",
            "singleSelectReply": {"selectedRowId": "row-2"},
            "contextInfo": {"stanzaId": "MENU1"},
        }
    }
    draft = to_support_message(_event(message))
    assert draft.content == "Plan B"
    assert draft.in_reply_to_external_id == "MENU1"
    assert draft.kind == "listResponse"

    untitled = to_support_message(_event({"listResponseMessage": {"singleSelectReply": {"selectedRowId": "row-2"}}}))
    assert untitled.content == "row-2"


def test_button_response_prefers_display_text():
    message = {"buttonsResponseMessage": {"selectedButtonId": "btn-yes", "selectedDisplayText": "Yes"}}
    assert to_support_message(_event(message)).content == "Yes"

    bare = {"buttonsResponseMessage": {"selectedButtonId": "btn-yes"}}
    assert to_support_message(_event(bare)).content == "btn-yes"


def test_interactive_response_uses_body_text():
    message = {"interactiveResponseMessage": {"body": {"text": "Confirmed"}, "nativeFlowResponseMessage": {}}}
    draft = to_support_message(_event(message))
    assert draft.content == "Confirmed"
    assert draft.kind == "interactiveResponse"


def test_poll_creation_lists_numbered_options():
    options = [{"optionName": "Pizza"}, {"optionName": "Sushi"}]
    message = {"pollCreationMessageV3": {"name": "Lunch?", "options": options}}
    draft = to_support_message(_event(message))
    assert draft.content == "[Poll] Lunch?\n1. Pizza\n2. Sushi"


def test_reaction_points_at_reacted_message():
    message = {"reactionMessage": {"text": "👍", "key": {"id": "TARGET1"}}}
    draft = to_support_message(_event(message))
    assert draft.content == "[Reaction] 👍"
    assert draft.in_reply_to_external_id == "TARGET1"


def test_reaction_removal_and_protocol_messages_are_skipped():
    assert to_support_message(_event({"reactionMessage": {"text": "", "key": {"id": "T"}}})) is None
    assert to_support_message(_event({"protocolMessage": {"type": 0}})) is None


def test_unknown_shapes_raise_translation_error():
    with pytest.raises(TranslationError):
        to_support_message(_event({"mysteryMessage": {"foo": "bar"}}))
    with pytest.raises(TranslationError):
        to_support_message(_event({}))


def test_group_messages_are_signed_with_sender():
    event = _event(
        {"conversation": "hi all"},
        jid="120363041234567890@g.us",
        key={"participant": "5511987654321@s.whatsapp.net"},
        pushName="Ana",
    )
    draft = to_support_message(event, sign_group_sender=True, separator="\n")
    assert draft.content == "**Ana**\nhi all"
    assert to_support_message(event).content == "hi all"


# ==================== Chatwoot -> WhatsApp ====================


def test_text_reply_is_single_send():
    requests = to_whatsapp_send(_webhook(content="Hello there"), quoted_message_id="Q1")
    assert len(requests) == 1
    assert requests[0].action == "send"
    assert requests[0].text == "Hello there"
    assert requests[0].quoted_message_id == "Q1"


def test_agent_signature_is_prefixed():
    payload = _webhook(content="On it", sender={"id": 3, "available_name": "Maria", "type": "user"})
    requests = to_whatsapp_send(payload, sign_with_agent_name=True, separator="\n")
    assert requests[0].text == "*Maria*\nOn it"


def test_caption_rides_on_single_image():
    payload = _webhook(
        content="see attached",
        attachments=[{"file_type": "image", "data_url": "https://chat.example.com/files/photo.png"}],
    )
    requests = to_whatsapp_send(payload)
    assert len(requests) == 1
    assert requests[0].text == "see attached"
    assert requests[0].media.file_type == "image"
    assert requests[0].media.file_name == "photo.png"
    assert requests[0].media.mime_type == "image/png"


def test_caption_goes_on_first_captionable_attachment():
    payload = _webhook(
        content="two files",
        attachments=[
            {"file_type": "audio", "data_url": "https://chat.example.com/files/voice.mp3"},
            {"file_type": "file", "data_url": "https://chat.example.com/files/terms.pdf"},
        ],
    )
    requests = to_whatsapp_send(payload)
    assert [r.media.file_type for r in requests] == ["audio", "document"]
    assert requests[0].text is None
    assert requests[1].text == "two files"


def test_text_with_uncaptionable_attachment_sends_text_first():
    payload = _webhook(
        content="listen",
        attachments=[{"file_type": "audio", "data_url": "https://chat.example.com/files/voice.mp3"}],
    )
    requests = to_whatsapp_send(payload)
    assert len(requests) == 2
    assert requests[0].text == "listen"
    assert requests[0].media is None
    assert requests[1].media.file_type == "audio"


def test_deleted_message_maps_to_delete_request():
    payload = _webhook(event="message_updated", content_attributes={"deleted": True})
    requests = to_whatsapp_send(payload, target_message_id="WA-1")
    assert len(requests) == 1
    assert requests[0].action == "delete"
    assert requests[0].target_message_id == "WA-1"
    assert to_whatsapp_send(payload) == []


def test_markdown_is_converted_to_whatsapp_marks():
    assert convert_markdown("**bold** and *italic*") == "*bold* and _italic_"
    assert convert_markdown("~~gone~~") == "~gone~"
    assert convert_markdown("2*3*4 stays") == "2*3*4 stays"
    assert convert_markdown("* list item") == "* list item"
    assert convert_markdown("") == ""


def test_revoke_names_the_deleted_message():
    assert revoked_message_id(_event({"protocolMessage": {"type": "REVOKE", "key": {"id": "GONE1"}}})) == "GONE1"
    assert revoked_message_id(_event({"protocolMessage": {"type": 0, "key": {"id": "GONE2"}}})) == "GONE2"
    assert revoked_message_id(_event({"protocolMessage": {"type": "EPHEMERAL_SETTING"}})) is None
    assert revoked_message_id(_event({"conversation": "hi"})) is None


def test_empty_webhook_message_raises():
    with pytest.raises(TranslationError):
        to_whatsapp_send(_webhook(content="   "))
