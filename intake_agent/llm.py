# intake_agent/llm.py
import logging
from typing import Any, Dict, List, Optional, Protocol

import openai
from openai import AsyncOpenAI

from .config import OPENAI_API_KEY, OPENAI_BASE_URL, OPENAI_MODEL, MODEL_TIMEOUT
from .errors import AIServiceError, ConfigurationError

logger = logging.getLogger(__name__)

_TRANSIENT = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class ModelClient(Protocol):
    async def complete(
        self, messages: List[Dict[str, str]], max_tokens: int, temperature: float,
        **kwargs: Any,
    ) -> Dict[str, str]:
        """Return {"response": text}; text may be empty."""
        ...


class OpenAIModelClient:
    """Chat-completions backed model collaborator."""

    def __init__(self, api_key: str = OPENAI_API_KEY, model: str = OPENAI_MODEL,
                 base_url: Optional[str] = OPENAI_BASE_URL, client: Optional[AsyncOpenAI] = None):
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                raise ConfigurationError("OPENAI_API_KEY is not set", context={"model": self.model})
            # retries are owned by with_retry, not the SDK
            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url,
                                       timeout=MODEL_TIMEOUT, max_retries=0)
        return self._client

    async def complete(self, messages, max_tokens, temperature, response_format=None, **kwargs):
        params: Dict[str, Any] = dict(model=self.model, messages=messages,
                                      max_tokens=max_tokens, temperature=temperature)
        if response_format:
            params["response_format"] = response_format
        try:
            resp = await self.client.chat.completions.create(**params)
        except _TRANSIENT as e:
            raise AIServiceError(f"model call failed: {type(e).__name__}",
                                 context={"model": self.model}, retryable=True, original_error=e)
        except openai.OpenAIError as e:
            raise AIServiceError(f"model call rejected: {type(e).__name__}",
                                 context={"model": self.model}, retryable=False, original_error=e)

        choices = getattr(resp, "choices", None) or []
        content = choices[0].message.content if choices else None
        logger.debug("model %s returned %d chars", self.model, len(content or ""))
        return {"response": content or ""}
