"""
Language Model Client
Chat completion client for any OpenAI-compatible endpoint (OpenAI, OpenRouter).
"""

import logging
from typing import Optional

import openai

from backend.core.errors import ExternalAPIError

logger = logging.getLogger(__name__)


class LLMClient:
    """
    Thin async wrapper around the OpenAI chat completions API.

    Every failure, including a missing API key and an empty completion, is
    raised as ExternalAPIError(llm-completion).

    Usage:
        llm = LLMClient(api_key="sk-...", model="gpt-4o-mini")
        text = await llm.complete(system_prompt, "Do you have blue shoes?")
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout: float = 20.0,
        max_retries: int = 1,
        temperature: float = 0.3,
        max_tokens: int = 400,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client: Optional[openai.AsyncOpenAI] = None
        if api_key:
            self._client = openai.AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout,
                max_retries=max_retries,
            )
        else:
            logger.warning("No language model API key configured; replies will use the fallback text")

    async def complete(self, system_prompt: str, user_message: str) -> str:
        if self._client is None:
            raise ExternalAPIError("llm-completion", "Language model API key not configured")

        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.APIStatusError as e:
            raise ExternalAPIError("llm-completion", f"HTTP {e.status_code}", status_code=e.status_code)
        except openai.APIError as e:
            raise ExternalAPIError("llm-completion", str(e))

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            raise ExternalAPIError("llm-completion", "Malformed completion payload")

        if not content or not content.strip():
            raise ExternalAPIError("llm-completion", "Empty completion")

        return content.strip()

    async def close(self):
        if self._client is not None:
            await self._client.close()
