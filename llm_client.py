"""
Catalog Search Service — Language Model Clients

The search core talks to the language model through one call,
complete(prompt) -> text, and never imposes its own timeout; request
timeouts belong to the client configuration here.
"""
from __future__ import annotations
import logging
from typing import Optional

from openai import AsyncOpenAI

from vector_store import EmbeddingProvider

logger = logging.getLogger(__name__)


class LanguageModel:
    """Abstract text-completion provider."""

    async def complete(self, prompt: str) -> str:
        """Return the model's free-form answer. Raises on provider errors."""
        raise NotImplementedError


class OpenAILanguageModel(LanguageModel):
    """Chat-completions backed model (single user turn, deterministic)."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-3.5-turbo",
        temperature: float = 0.0,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.temperature = temperature
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def complete(self, prompt: str) -> str:
        completion = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.temperature,
        )
        content = completion.choices[0].message.content
        if content is None:
            raise RuntimeError("Empty response from language model")
        return content


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings endpoint wrapper used by the pgvector store."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dim: int = 1536,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.dim = dim
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        response = await self._client.embeddings.create(model=self.model, input=texts)
        return [item.embedding for item in response.data]
