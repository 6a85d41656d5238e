"""LLM client creation factory and chat-completion wrapper.

This module provides a centralized way to create LLM clients (OpenAI-compatible
endpoints such as Zhipu GLM, or Anthropic) so that API keys, base URLs and
timeouts are configured consistently.
"""

import os
from typing import Any, Dict, List, Optional

from loguru import logger
from openai import OpenAI

from safetykg.errors import LLMUnavailableError
from safetykg.utils.config import LLMConfig


def create_openai_client(
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: int = 2,
    **kwargs: Any,
) -> OpenAI:
    """Create and configure an OpenAI client.

    Args:
        api_key: The API key. If None, falls back to OPENAI_API_KEY.
        base_url: The base URL. If None, falls back to OPENAI_BASE_URL.
        timeout: Request timeout in seconds.
        max_retries: Number of retries.
        **kwargs: Additional arguments to pass to the OpenAI constructor.

    Returns:
        Configured OpenAI client.
    """
    final_api_key = api_key or os.getenv("OPENAI_API_KEY")
    final_base_url = base_url or os.getenv("OPENAI_BASE_URL")

    masked_key = (
        f"{final_api_key[:4]}...{final_api_key[-4:]}"
        if final_api_key and len(final_api_key) > 8
        else "None"
    )
    logger.debug(
        f"Creating OpenAI client: base_url={final_base_url}, "
        f"api_key={masked_key}, timeout={timeout}"
    )

    return OpenAI(
        api_key=final_api_key,
        base_url=final_base_url,
        timeout=timeout,
        max_retries=max_retries,
        **kwargs,
    )


class ChatClient:
    """Single-shot chat completion over the configured provider.

    Retries are owned by the caller; the underlying SDK client is created with
    ``max_retries=0`` so a failed request surfaces immediately.
    """

    def __init__(self, config: Optional[LLMConfig] = None, client: Any = None) -> None:
        self.config = config or LLMConfig()
        self._client = client

    @property
    def model(self) -> str:
        return self.config.model

    def is_configured(self) -> bool:
        """Return True when credentials for the provider are available."""
        if self._client is not None:
            return True
        if self.config.provider == "anthropic":
            return bool(self.config.api_key or os.getenv("ANTHROPIC_API_KEY"))
        return bool(self.config.api_key or os.getenv("OPENAI_API_KEY"))

    def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send one chat request and return the raw text content.

        Raises:
            LLMUnavailableError: If no API key is configured.
        """
        if not self.is_configured():
            raise LLMUnavailableError(
                f"LLM API key not configured for provider '{self.config.provider}'"
            )

        max_tokens = max_tokens or self.config.max_tokens
        temperature = self.config.temperature if temperature is None else temperature

        if self.config.provider == "anthropic":
            return self._complete_anthropic(messages, max_tokens, temperature)
        return self._complete_openai(messages, max_tokens, temperature)

    def _complete_openai(
        self, messages: List[Dict[str, str]], max_tokens: int, temperature: float
    ) -> str:
        if self._client is None:
            self._client = create_openai_client(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                max_retries=0,
            )

        response = self._client.chat.completions.create(
            model=self.config.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        if not response.choices:
            return ""
        content = response.choices[0].message.content
        if isinstance(content, list):
            parts = []
            for item in content:
                if isinstance(item, dict):
                    parts.append(str(item.get("text", "")))
                else:
                    parts.append(str(item))
            return "\n".join(parts).strip()
        return str(content or "")

    def _complete_anthropic(
        self, messages: List[Dict[str, str]], max_tokens: int, temperature: float
    ) -> str:
        if self._client is None:
            import anthropic

            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if self.config.api_key:
                client_kwargs["api_key"] = self.config.api_key
            if self.config.base_url:
                client_kwargs["base_url"] = self.config.base_url
            self._client = anthropic.Anthropic(**client_kwargs)

        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        conversation = [m for m in messages if m["role"] != "system"]
        message = self._client.messages.create(
            model=self.config.model,
            timeout=self.config.timeout,
            system=system,
            messages=conversation,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        parts = []
        for block in message.content:
            if getattr(block, "type", None) == "text":
                parts.append(getattr(block, "text", ""))
        return "\n".join(parts).strip()
