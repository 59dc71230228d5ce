"""
Channel Message Adapter Service
Normalizes channel-specific message payloads to a consistent structure.
"""
from typing import Optional, Dict, Any
from utils.log_utils import LogUtil

MEDIA_MESSAGE_TYPES = ["image", "video", "audio", "document", "sticker"]


class NormalizedMessage:
    """
    Normalized message structure that all channels conform to.
    """
    def __init__(
        self,
        user_reply: Optional[str] = None,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None
    ):
        self.user_reply = user_reply
        self.media_url = media_url
        self.media_type = media_type

    def get_text_content(self) -> str:
        """
        Text handed to the session: the reply, or the media url for bare media
        """
        return self.user_reply or self.media_url or ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = {}
        if self.user_reply:
            result["user_reply"] = self.user_reply
        if self.media_url:
            result["media_url"] = self.media_url
        if self.media_type:
            result["media_type"] = self.media_type
        return result


def _strip(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


class ChannelMessageAdapter:
    """
    Adapter service to normalize channel-specific message payloads.
    Each channel has its own parser that converts to NormalizedMessage.
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def normalize_message(
        self,
        channel: str,
        message_type: str,
        message_body: Dict[str, Any]
    ) -> NormalizedMessage:
        """
        Normalize channel-specific message to common structure.

        Args:
            channel: Channel name (whatsapp, instagram, facebook, telegram, email, sms, webchat)
            message_type: Message type (text, button, interactive, image, postback, etc.)
            message_body: Channel-specific message payload

        Returns:
            NormalizedMessage with consistent structure
        """
        channel_lower = (channel or "").lower()

        if channel_lower == "whatsapp":
            return self._normalize_whatsapp(message_type, message_body)
        elif channel_lower in ["gmail", "email"]:
            return self._normalize_email(message_body)
        elif channel_lower == "telegram":
            return self._normalize_telegram(message_type, message_body)
        elif channel_lower in ["instagram", "facebook"]:
            return self._normalize_messenger(message_type, message_body)
        elif channel_lower not in ["sms", "webchat"]:
            self.log_util.warning(
                service_name="ChannelMessageAdapter",
                message=f"[EVENT] Unknown channel '{channel}', using generic normalization"
            )
        return self._normalize_generic(message_type, message_body)

    def _normalize_whatsapp(self, message_type: str, message_body: Dict[str, Any]) -> NormalizedMessage:
        """Normalize WhatsApp Cloud API message format"""
        user_reply = None
        media_url = None
        media_type = None

        if message_type == "text":
            text = message_body.get("text")
            user_reply = _strip(text.get("body") if isinstance(text, dict) else text)

        elif message_type == "button":
            button_data = message_body.get("button", {})
            # Prefer text over payload
            user_reply = _strip(button_data.get("text") or button_data.get("payload"))

        elif message_type == "interactive":
            interactive_data = message_body.get("interactive", {})
            interactive_type = interactive_data.get("type")
            if interactive_type in ["button_reply", "list_reply"]:
                reply = interactive_data.get(interactive_type, {})
                user_reply = _strip(reply.get("title") or reply.get("id"))

        elif message_type in MEDIA_MESSAGE_TYPES:
            media_type = message_type
            media_data = message_body.get(message_type, {})
            media_url = media_data.get("url") or media_data.get("link")
            user_reply = _strip(media_data.get("caption"))

        return NormalizedMessage(user_reply=user_reply, media_url=media_url, media_type=media_type)

    def _normalize_email(self, message_body: Dict[str, Any]) -> NormalizedMessage:
        # The body is the answer; the subject only when the body is empty
        body = _strip(message_body.get("body")) or _strip(message_body.get("text"))
        return NormalizedMessage(user_reply=body or _strip(message_body.get("subject")))

    def _normalize_telegram(self, message_type: str, message_body: Dict[str, Any]) -> NormalizedMessage:
        """Normalize Telegram update format"""
        # Button presses arrive as callback queries
        if message_type == "callback_query":
            callback_data = message_body.get("callback_query", {})
            return NormalizedMessage(user_reply=_strip(callback_data.get("data")))

        message = message_body.get("message", message_body)
        user_reply = _strip(message.get("text")) or _strip(message.get("caption"))
        return NormalizedMessage(user_reply=user_reply)

    def _normalize_messenger(self, message_type: str, message_body: Dict[str, Any]) -> NormalizedMessage:
        """Normalize Instagram / Facebook Messenger format"""
        if message_type == "postback":
            postback = message_body.get("postback", {})
            return NormalizedMessage(user_reply=_strip(postback.get("title") or postback.get("payload")))

        message = message_body.get("message", message_body)
        quick_reply = message.get("quick_reply") or {}
        user_reply = _strip(message.get("text")) or _strip(quick_reply.get("payload"))

        media_url = None
        media_type = None
        attachments = message.get("attachments") or []
        if attachments:
            media_type = attachments[0].get("type")
            media_url = (attachments[0].get("payload") or {}).get("url")
        return NormalizedMessage(user_reply=user_reply, media_url=media_url, media_type=media_type)

    def _normalize_generic(self, message_type: str, message_body: Dict[str, Any]) -> NormalizedMessage:
        """Generic normalization for sms, webchat and unknown channels"""
        user_reply = (
            message_body.get("text") or
            message_body.get("body") or
            message_body.get("message") or
            message_body.get("content")
        )
        if isinstance(user_reply, dict):
            user_reply = user_reply.get("text") or user_reply.get("body")

        media_url = message_body.get("media_url") or message_body.get("url")
        media_type = message_type if media_url and message_type in MEDIA_MESSAGE_TYPES else None
        return NormalizedMessage(user_reply=_strip(user_reply), media_url=media_url, media_type=media_type)
