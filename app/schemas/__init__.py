from app.schemas.profile import ProfileResponse
from app.schemas.telegram import (
    TelegramCallbackQuery,
    TelegramMessage,
    TelegramUpdate,
    TelegramUser,
    TelegramWebhookResponse,
)

__all__ = [
    "ProfileResponse",
    "TelegramCallbackQuery",
    "TelegramMessage",
    "TelegramUpdate",
    "TelegramUser",
    "TelegramWebhookResponse",
]
