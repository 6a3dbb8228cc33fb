from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.errors import ExternalServiceError
from app.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAIProvider(LLMProvider):
    """Chat completions against any OpenAI-compatible endpoint."""

    def __init__(self, api_key: str, default_model: str = "gpt-5-mini", base_url: Optional[str] = None):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = f"{(base_url or DEFAULT_BASE_URL).rstrip('/')}/chat/completions"

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else 60.0

        with httpx.Client(timeout=timeout) as client:
            logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")
            response = client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_completion_tokens": max_tokens,
                },
            )

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise ExternalServiceError("openai", f"{response.status_code} - {response.text}")

        data = response.json()
        content = ""
        choices = data.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(content=content, model=data.get("model", model), usage=data.get("usage"))
