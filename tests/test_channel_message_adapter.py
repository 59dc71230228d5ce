import pytest

from services.channel_message_adapter import ChannelMessageAdapter


@pytest.fixture
def adapter(log_util):
    return ChannelMessageAdapter(log_util)


@pytest.mark.parametrize("message_type, body, expected", [
    ("text", {"text": {"body": "  Hello  "}}, "Hello"),
    ("button", {"button": {"text": "Yes", "payload": "YES_PAYLOAD"}}, "Yes"),
    ("interactive", {"interactive": {"type": "list_reply", "list_reply": {"id": "row-0-1", "title": "Gold"}}}, "Gold"),
    ("interactive", {"interactive": {"type": "button_reply", "button_reply": {"id": "opt_2"}}}, "opt_2"),
])
def test_whatsapp_replies(adapter, message_type, body, expected):
    assert adapter.normalize_message("whatsapp", message_type, body).get_text_content() == expected


def test_whatsapp_media_without_caption_uses_url(adapter):
    normalized = adapter.normalize_message("WhatsApp", "image", {"image": {"link": "https://cdn.test/a.png"}})
    assert normalized.media_type == "image"
    assert normalized.get_text_content() == "https://cdn.test/a.png"


def test_other_channels(adapter):
    assert adapter.normalize_message("telegram", "callback_query", {"callback_query": {"data": "menu"}}).user_reply == "menu"
    assert adapter.normalize_message("telegram", "text", {"message": {"text": "hi"}}).user_reply == "hi"
    assert adapter.normalize_message("instagram", "postback", {"postback": {"payload": "START"}}).user_reply == "START"
    assert adapter.normalize_message("facebook", "text", {"message": {"quick_reply": {"payload": "YES"}}}).user_reply == "YES"
    assert adapter.normalize_message("email", "text", {"subject": "Order", "body": " "}).user_reply == "Order"
    assert adapter.normalize_message("sms", "text", {"text": "yo"}).user_reply == "yo"
    assert adapter.normalize_message("pigeon", "text", {"content": "coo"}).user_reply == "coo"


def test_empty_payload(adapter):
    normalized = adapter.normalize_message("webchat", "text", {})
    assert normalized.get_text_content() == ""
