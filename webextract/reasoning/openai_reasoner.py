"""
OpenAI-backed reasoning capability.
"""

from typing import List, Optional

import openai
from openai import AsyncOpenAI
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from webextract.config import get_settings
from webextract.reasoning.base import Reasoner
from webextract.utils.errors import CompletionError, EmbeddingError, MissingConfigurationError
from webextract.utils.logging import get_logger, log_performance

logger = get_logger(__name__)

# Provider errors worth another attempt. Anything else fails the call at once.
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)

EMBEDDING_BATCH_SIZE = 100


class OpenAIReasoner(Reasoner):
    """
    Chat completions and embeddings through ``openai.AsyncOpenAI``.

    Transient provider failures are retried with exponential backoff; the
    final failure surfaces as ``CompletionError`` or ``EmbeddingError``.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        completion_model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        temperature: float = 0.0,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize the reasoner.

        Args:
            client: Preconfigured client (built from settings when omitted)
            completion_model: Chat model name
            embedding_model: Embedding model name
            temperature: Sampling temperature
            timeout: Per-request timeout in seconds
        """
        self.settings = get_settings()
        self.completion_model = completion_model or self.settings.completion_model
        self.embedding_model = embedding_model or self.settings.embedding_model
        self.temperature = temperature
        self.timeout = timeout or self.settings.reasoning_timeout

        if client is None:
            if not self.settings.openai_api_key:
                raise MissingConfigurationError("openai_api_key")
            client = AsyncOpenAI(api_key=self.settings.openai_api_key, timeout=self.timeout)
        self.client = client

    @log_performance
    async def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        json_mode: bool = False,
    ) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            text = await self._create_completion(messages, json_mode)
        except openai.OpenAIError as e:
            logger.error(f"Completion failed: {e}")
            raise CompletionError(
                f"Completion failed: {e}", {"model": self.completion_model}
            ) from e

        if text is None:
            raise CompletionError("Completion returned no content", {"model": self.completion_model})
        return text.strip()

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _create_completion(self, messages: List[dict], json_mode: bool) -> Optional[str]:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self.client.chat.completions.create(
            model=self.completion_model,
            messages=messages,
            temperature=self.temperature,
            **kwargs,
        )
        return response.choices[0].message.content

    @log_performance
    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        vectors: List[List[float]] = []
        for i in range(0, len(texts), EMBEDDING_BATCH_SIZE):
            batch = texts[i:i + EMBEDDING_BATCH_SIZE]
            try:
                vectors.extend(await self._create_embeddings(batch))
            except openai.OpenAIError as e:
                logger.error(f"Embedding failed: {e}")
                raise EmbeddingError(
                    f"Embedding failed: {e}", {"model": self.embedding_model}
                ) from e
        return vectors

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _create_embeddings(self, batch: List[str]) -> List[List[float]]:
        response = await self.client.embeddings.create(model=self.embedding_model, input=batch)
        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]

    async def close(self) -> None:
        await self.client.close()
