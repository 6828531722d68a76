"""HTTP client for the embedding service.

Posts the query text to ``{base_url}/api/v1/embed`` and reads the first
returned vector. Product embeddings are read from the catalog and never
recomputed here.
"""

from typing import List, Optional

import httpx
import structlog

from ..catalog.base import EmbeddingProvider
from ..common.config import RankingConfig
from ..common.errors import UpstreamSearchError

logger = structlog.get_logger("embedding_client")


class HttpEmbeddingProvider(EmbeddingProvider):
    """``EmbeddingProvider`` backed by the embedding service REST API.

    Parameters
    - base_url: Embedding service root, e.g. ``http://localhost:9006``
    - model: Model name sent with each request
    - timeout: Request timeout in seconds
    - client: Optional preconfigured ``httpx.AsyncClient`` (e.g. with a
      mock transport); created lazily otherwise
    """

    def __init__(
        self,
        base_url: str,
        model: str = "default",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.http_client = client
        self._owns_client = client is None

    @classmethod
    def from_config(cls, config: RankingConfig) -> "HttpEmbeddingProvider":
        return cls(
            base_url=config.embedding_service_url,
            model=config.embedding_model,
            timeout=config.embedding_timeout_seconds,
        )

    async def initialize(self):
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

    async def close(self):
        if self.http_client is not None and self._owns_client:
            await self.http_client.aclose()
            self.http_client = None

    async def embed(self, text: str) -> List[float]:
        """Return the embedding for ``text``.

        Raises ``UpstreamSearchError`` when the service is unreachable or
        answers without a vector; the vector branch cannot run without one.
        """
        await self.initialize()
        try:
            response = await self.http_client.post(
                f"{self.base_url}/api/v1/embed",
                json={
                    "items": [{"text": text}],
                    "model": self.model
                }
            )
        except httpx.HTTPError as e:
            logger.error("Embedding service request failed", error=str(e))
            raise UpstreamSearchError(f"Embedding service unreachable: {e}", source="embedding") from e

        if response.status_code != 200:
            logger.error("Embedding service returned error", status_code=response.status_code)
            raise UpstreamSearchError(
                f"Embedding service returned status {response.status_code}", source="embedding"
            )

        try:
            vectors = response.json().get("vectors", [])
        except (ValueError, AttributeError) as e:
            raise UpstreamSearchError("Embedding service returned an unreadable body", source="embedding") from e
        if not vectors:
            raise UpstreamSearchError("Embedding service returned no vectors", source="embedding")
        return [float(v) for v in vectors[0]]
