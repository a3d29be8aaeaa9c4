import numpy as np
from numpy.typing import NDArray
from openai import AsyncOpenAI, OpenAIError

from roleplay_runtime.embeddings.base import EmbeddingsModel
from roleplay_runtime.errors import UpstreamError


class OpenAIEmbeddings(EmbeddingsModel):
    """Embeddings from the OpenAI embeddings endpoint."""

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        embedding_size: int = 1536,
        api_key: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model_name = model_name
        self.embedding_size = embedding_size
        self.client = client or AsyncOpenAI(api_key=api_key)

    async def get_embeddings(self, texts: str | list[str]) -> NDArray[np.float64]:
        inputs = [texts] if isinstance(texts, str) else texts
        if not inputs:
            return np.zeros((0, self.embedding_size), dtype=np.float64)
        try:
            response = await self.client.embeddings.create(model=self.model_name, input=inputs)
        except OpenAIError as exc:
            raise UpstreamError(f"OpenAI embeddings request failed: {exc}") from exc
        ordered = sorted(response.data, key=lambda item: item.index)
        return np.array([item.embedding for item in ordered], dtype=np.float64)
