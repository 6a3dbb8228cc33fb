from typing import Optional, Union

import httpx

from app.logging_config import get_logger

logger = get_logger("telegram_service")

FileRef = Union[str, bytes]


class TelegramService:
    """Telegram Bot API transport. Every call returns the raw API dict with "ok"."""

    BASE_URL = "https://api.telegram.org/bot{token}"
    FILE_URL = "https://api.telegram.org/file/bot{token}/{path}"

    def __init__(self, bot_token: str):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)

    def _make_request(self, method: str, data: Optional[dict] = None, files: Optional[dict] = None) -> dict:
        url = f"{self.base_url}/{method}"
        try:
            with httpx.Client(timeout=30.0) as client:
                if files:
                    response = client.post(url, data=data or {}, files=files)
                else:
                    response = client.post(url, json=data or {})
                return response.json()
        except Exception as e:
            logger.error(f"Telegram API error: {e}", extra={"context": {"method": method}})
            return {"ok": False, "error": str(e)}

    def _send_file(
        self,
        method: str,
        field: str,
        chat_id: str,
        file: FileRef,
        caption: Optional[str] = None,
        message_thread_id: Optional[int] = None,
        filename: str = "file",
        mime_type: str = "application/octet-stream",
    ) -> dict:
        data = {"chat_id": chat_id}
        if caption:
            data["caption"] = caption
        if message_thread_id:
            data["message_thread_id"] = message_thread_id

        if isinstance(file, bytes):
            return self._make_request(method, data=data, files={field: (filename, file, mime_type)})
        data[field] = file
        return self._make_request(method, data)

    def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: Optional[dict] = None,
        parse_mode: Optional[str] = None,
        message_thread_id: Optional[int] = None,
        reply_to_message_id: Optional[int] = None,
    ) -> dict:
        data = {"chat_id": chat_id, "text": text}
        if parse_mode:
            data["parse_mode"] = parse_mode
        if reply_markup:
            data["reply_markup"] = reply_markup
        if message_thread_id:
            data["message_thread_id"] = message_thread_id
        if reply_to_message_id:
            data["reply_to_message_id"] = reply_to_message_id
        return self._make_request("sendMessage", data)

    def send_photo(
        self,
        chat_id: str,
        photo: FileRef,
        caption: Optional[str] = None,
        message_thread_id: Optional[int] = None,
        protect_content: bool = False,
    ) -> dict:
        if protect_content and not isinstance(photo, bytes):
            data = {"chat_id": chat_id, "photo": photo, "protect_content": True}
            if caption:
                data["caption"] = caption
            return self._make_request("sendPhoto", data)
        return self._send_file(
            "sendPhoto", "photo", chat_id, photo, caption, message_thread_id, "photo.jpg", "image/jpeg"
        )

    def send_video(
        self,
        chat_id: str,
        video: FileRef,
        caption: Optional[str] = None,
        message_thread_id: Optional[int] = None,
    ) -> dict:
        return self._send_file(
            "sendVideo", "video", chat_id, video, caption, message_thread_id, "video.mp4", "video/mp4"
        )

    def send_chat_action(self, chat_id: str, action: str = "typing") -> dict:
        """Typing indicator; Telegram clears it after ~5s or on the next message."""
        return self._make_request("sendChatAction", {"chat_id": chat_id, "action": action})

    def forward_message(
        self,
        chat_id: str,
        from_chat_id: str,
        message_id: int,
        message_thread_id: Optional[int] = None,
    ) -> dict:
        data = {"chat_id": chat_id, "from_chat_id": from_chat_id, "message_id": message_id}
        if message_thread_id:
            data["message_thread_id"] = message_thread_id
        return self._make_request("forwardMessage", data)

    def get_file_bytes(self, file_id: str) -> Optional[bytes]:
        result = self._make_request("getFile", {"file_id": file_id})
        if not result.get("ok"):
            logger.warning(f"getFile failed: {result}")
            return None

        path = result["result"].get("file_path")
        if not path:
            return None
        try:
            with httpx.Client(timeout=60.0) as client:
                response = client.get(self.FILE_URL.format(token=self.bot_token, path=path))
                if response.status_code != 200:
                    logger.warning(f"File download failed: {response.status_code}")
                    return None
                return response.content
        except httpx.HTTPError as e:
            logger.warning(f"File download error: {e}")
            return None

    def ban_chat_member(self, chat_id: str, user_id: str) -> dict:
        return self._make_request("banChatMember", {"chat_id": chat_id, "user_id": int(user_id)})

    def unban_chat_member(self, chat_id: str, user_id: str) -> dict:
        return self._make_request(
            "unbanChatMember", {"chat_id": chat_id, "user_id": int(user_id), "only_if_banned": True}
        )

    def delete_message(self, chat_id: str, message_id: int) -> dict:
        return self._make_request("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    def create_chat_invite_link(self, chat_id: str, member_limit: int = 1) -> Optional[str]:
        result = self._make_request("createChatInviteLink", {"chat_id": chat_id, "member_limit": member_limit})
        if result.get("ok"):
            return result["result"].get("invite_link")
        logger.warning(f"Failed to create invite link: {result}")
        return None

    def export_chat_invite_link(self, chat_id: str) -> Optional[str]:
        result = self._make_request("exportChatInviteLink", {"chat_id": chat_id})
        if result.get("ok"):
            return result.get("result")
        logger.warning(f"Failed to export invite link: {result}")
        return None

    def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> dict:
        data = {"callback_query_id": callback_query_id}
        if text:
            data["text"] = text
        return self._make_request("answerCallbackQuery", data)

    def edit_message_text(
        self,
        chat_id: str,
        message_id: int,
        text: str,
        reply_markup: Optional[dict] = None,
    ) -> dict:
        data = {"chat_id": chat_id, "message_id": message_id, "text": text}
        data["reply_markup"] = reply_markup or {"inline_keyboard": []}
        return self._make_request("editMessageText", data)


def message_id_of(result: dict) -> Optional[int]:
    if not result or not result.get("ok"):
        return None
    payload = result.get("result")
    if isinstance(payload, dict):
        return payload.get("message_id")
    return None


def retry_after_seconds(result: dict) -> Optional[int]:
    """Seconds Telegram asked us to wait on a 429, if any."""
    if not result or result.get("ok"):
        return None
    parameters = result.get("parameters") or {}
    retry_after = parameters.get("retry_after")
    return int(retry_after) if retry_after is not None else None


def build_payment_buttons(task_id: int) -> dict:
    return {
        "inline_keyboard": [
            [
                {"text": "Tasdiqlash", "callback_data": f"pay:approve:{task_id}"},
                {"text": "Rad etish", "callback_data": f"pay:reject:{task_id}"},
            ]
        ]
    }


def build_publish_buttons(task_id: int) -> dict:
    return {
        "inline_keyboard": [
            [
                {"text": "Kanalga chiqarish", "callback_data": f"pub:post:{task_id}"},
                {"text": "Preview", "callback_data": f"pub:preview:{task_id}"},
            ],
            [
                {"text": "Media tasdiq", "callback_data": f"pub:media:{task_id}"},
                {"text": "Media rad", "callback_data": f"pub:media_reject:{task_id}"},
                {"text": "Media reset", "callback_data": f"pub:media_reset:{task_id}"},
            ],
        ]
    }


def build_escalation_buttons(task_id: int, open_url: Optional[str]) -> dict:
    row = []
    if open_url:
        row.append({"text": "Ochish", "url": open_url})
    row.append({"text": "AI ni qaytarish", "callback_data": f"esc:resume:{task_id}"})
    row.append({"text": "Bloklash", "callback_data": f"esc:block:{task_id}"})
    return {"inline_keyboard": [row]}
