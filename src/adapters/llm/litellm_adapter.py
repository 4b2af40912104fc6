"""LiteLLM adapter implementing ILLMProvider."""

import asyncio
import time
from typing import Any, AsyncIterator, Dict, List, Optional

from litellm import acompletion, completion

from src.config import settings
from src.domain.interfaces import ILLMProvider
from src.domain.schema import UsageCounter
from src.utils.logger import get_logger

logger = get_logger(__name__)


class LLMProviderError(Exception):
    """Raised when the model provider fails after all retries."""
    pass


def _usage_from(response: Any) -> Optional[UsageCounter]:
    usage = getattr(response, "usage", None)
    if not usage:
        return None
    input_tokens = getattr(usage, "prompt_tokens", 0) or 0
    output_tokens = getattr(usage, "completion_tokens", 0) or 0
    total = getattr(usage, "total_tokens", 0) or input_tokens + output_tokens
    return UsageCounter(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)


class LiteLLMAdapter(ILLMProvider):
    """LiteLLM adapter for chat and streaming completions.

    LiteLLM detects the provider from the model name prefix and reads API keys
    from the environment (OPENAI_API_KEY, ANTHROPIC_API_KEY, ...). Ollama
    models (``ollama/...``) are pointed at ``settings.ollama_base_url``.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        """Initialize adapter with model configuration.

        Args:
            model: Model name (defaults to settings.litellm_model).
            max_retries: Attempts per call (defaults to settings.llm_max_retries).
            retry_delay: Base delay of the exponential backoff in seconds.
        """
        self.model = model or settings.litellm_model
        self.max_retries = max_retries or settings.llm_max_retries
        self.retry_delay = settings.llm_retry_delay if retry_delay is None else retry_delay
        self._last_usage = UsageCounter()

    @property
    def last_usage(self) -> UsageCounter:
        return self._last_usage

    def _completion_kwargs(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str],
        temperature: Optional[float],
    ) -> Dict[str, Any]:
        model_name = model or self.model
        kwargs: Dict[str, Any] = {
            "model": model_name,
            "messages": messages,
            "temperature": settings.llm_temperature if temperature is None else temperature,
        }
        if model_name.startswith("ollama/"):
            kwargs["api_base"] = settings.ollama_base_url
        return kwargs

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Generate a chat completion.

        Args:
            messages: List of message dicts with 'role' and 'content' keys.
            model: Model name (overrides default).
            temperature: Sampling temperature.

        Returns:
            Generated text response.

        Raises:
            LLMProviderError: If completion fails after retries.
        """
        completion_kwargs = self._completion_kwargs(messages, model, temperature)

        for attempt in range(self.max_retries):
            start_time = time.time()
            try:
                # Run blocking completion in executor
                loop = asyncio.get_running_loop()
                response = await loop.run_in_executor(
                    None,
                    lambda: completion(**completion_kwargs),
                )
                self._last_usage = _usage_from(response) or UsageCounter()
                logger.info(
                    "llm.chat_completion",
                    model=completion_kwargs["model"],
                    latency_ms=round((time.time() - start_time) * 1000),
                    total_tokens=self._last_usage.total_tokens,
                )
                if hasattr(response, "choices") and len(response.choices) > 0:
                    return response.choices[0].message.content or ""
                return ""

            except Exception as e:
                logger.warning(
                    "llm.chat_completion_failed",
                    model=completion_kwargs["model"],
                    attempt=attempt + 1,
                    error=str(e),
                )
                if attempt == self.max_retries - 1:
                    raise LLMProviderError(str(e)) from e

                # Exponential backoff
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

        return ""

    async def stream_completion(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion as text chunks.

        A failed attempt is retried only while nothing has been yielded yet;
        a failure mid-stream raises so the caller can keep the partial output.

        Raises:
            LLMProviderError: If the stream fails.
        """
        completion_kwargs = self._completion_kwargs(messages, model, temperature)
        completion_kwargs["stream"] = True
        completion_kwargs["stream_options"] = {"include_usage": True}
        self._last_usage = UsageCounter()

        for attempt in range(self.max_retries):
            start_time = time.time()
            yielded = False
            try:
                response = await acompletion(**completion_kwargs)
                async for chunk in response:
                    usage = _usage_from(chunk)
                    if usage is not None:
                        self._last_usage = usage
                    choices = getattr(chunk, "choices", None) or []
                    if not choices:
                        continue
                    text = getattr(choices[0].delta, "content", None)
                    if text:
                        yielded = True
                        yield text
                logger.info(
                    "llm.stream_completion",
                    model=completion_kwargs["model"],
                    latency_ms=round((time.time() - start_time) * 1000),
                    total_tokens=self._last_usage.total_tokens,
                )
                return

            except Exception as e:
                logger.warning(
                    "llm.stream_completion_failed",
                    model=completion_kwargs["model"],
                    attempt=attempt + 1,
                    partial=yielded,
                    error=str(e),
                )
                if yielded or attempt == self.max_retries - 1:
                    raise LLMProviderError(str(e)) from e

                # Exponential backoff
                await asyncio.sleep(self.retry_delay * (2 ** attempt))
