"""
Text embeddings for imported messages.

- OpenAIEmbeddingClient: async batch client for an OpenAI-compatible
  /embeddings endpoint (httpx)
- EmbeddingCache / CachingEmbeddingService: memoizing wrapper keyed by
  normalized text, with an injected clock so tests control expiry
- embed_messages: the per-batch enrichment step of the import pipeline
"""

import logging
import re
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import httpx

from chat_import.archive import MediaEntries
from chat_import.config import settings
from chat_import.media import is_pdf, is_placeholder_only
from chat_import.metrics import record_embedding_request
from chat_import.schemas import ParsedMessage

logger = logging.getLogger(__name__)

Vector = List[float]


class EmbeddingError(Exception):
    """Raised when a batch embedding request fails as a whole."""


class EmbeddingService(Protocol):
    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[Vector]]: ...


# =============================================================================
# HTTP client
# =============================================================================

class OpenAIEmbeddingClient:
    """Async embedding client with batching."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.total_tokens = 0
        self.total_requests = 0

    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[Vector]]:
        """Embed texts in one request; vectors come back in input order."""
        if not texts:
            return []
        try:
            resp = await self.client.post(
                f"{self.base_url}/embeddings",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"input": list(texts), "model": self.model},
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        try:
            items = data.get("data") or []
            if len(items) != len(texts):
                raise EmbeddingError(f"Embedding response has {len(items)} vectors for {len(texts)} inputs")
            ordered = sorted(items, key=lambda item: item.get("index", 0))
            vectors = [item["embedding"] for item in ordered]
            tokens = (data.get("usage") or {}).get("total_tokens", 0)
        except (AttributeError, KeyError, TypeError) as e:
            raise EmbeddingError(f"Malformed embedding response: {e!r}") from e

        self.total_tokens += tokens
        self.total_requests += 1
        return vectors

    async def aclose(self) -> None:
        await self.client.aclose()


# =============================================================================
# Memoizing cache
# =============================================================================

def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


class EmbeddingCache:
    """
    Explicit text -> vector map with TTL and capacity.

    Entries older than ttl_seconds (by the injected clock) are misses;
    past max_entries the oldest entry is evicted.
    """

    def __init__(self, ttl_seconds: float, max_entries: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: "OrderedDict[str, Tuple[Vector, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Vector]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        vector, stored_at = entry
        if self.clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return vector

    def put(self, key: str, vector: Vector) -> None:
        self._entries.pop(key, None)
        self._entries[key] = (vector, self.clock())
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


class CachingEmbeddingService:
    """Serves repeated texts from the cache and sends only misses upstream."""

    def __init__(self, inner: EmbeddingService, cache: EmbeddingCache):
        self.inner = inner
        self.cache = cache

    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[Vector]]:
        keys = [normalize_text(text) for text in texts]
        results: List[Optional[Vector]] = [self.cache.get(key) for key in keys]

        misses: dict[str, List[int]] = {}
        for i, (key, vector) in enumerate(zip(keys, results)):
            if vector is None:
                misses.setdefault(key, []).append(i)

        if misses:
            miss_keys = list(misses)
            vectors = await self.inner.embed_batch([texts[misses[key][0]] for key in miss_keys])
            for key, vector in zip(miss_keys, vectors):
                if vector is not None:
                    self.cache.put(key, vector)
                for i in misses[key]:
                    results[i] = vector

        logger.debug(f"Embedding cache: {len(texts) - sum(len(v) for v in misses.values())} hits, {len(misses)} misses")
        return results

    async def aclose(self) -> None:
        close = getattr(self.inner, "aclose", None)
        if close is not None:
            await close()


def create_embedding_service() -> Optional[EmbeddingService]:
    """Build the configured embedding service, or None when no API key is set."""
    if not settings.OPENAI_API_KEY:
        logger.warning("Embedding service not configured; messages will be stored without vectors")
        return None
    client = OpenAIEmbeddingClient(
        api_key=settings.OPENAI_API_KEY,
        model=settings.EMBEDDING_MODEL,
        base_url=settings.OPENAI_BASE_URL,
        timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
    )
    if settings.EMBEDDING_CACHE_TTL_SECONDS <= 0:
        return client
    cache = EmbeddingCache(settings.EMBEDDING_CACHE_TTL_SECONDS, settings.EMBEDDING_CACHE_MAX_ENTRIES)
    return CachingEmbeddingService(client, cache)


# =============================================================================
# Pipeline step
# =============================================================================

def substitute_pdf_text(message: ParsedMessage, media: MediaEntries) -> None:
    """Replace a PDF message's body with the document text plus a [PDF: ...] marker."""
    if message.media_type != "document" or not is_pdf(message.media_filename):
        return
    entry = media.get(message.media_filename)
    if entry is not None and entry.extracted_text:
        message.body = f"{entry.extracted_text}\n\n[PDF: {message.media_filename}]"


def is_embeddable(message: ParsedMessage) -> bool:
    """Pure media placeholders carry no meaning worth a vector."""
    return not message.has_media or not is_placeholder_only(message.body)


async def embed_messages(
    batch: List[ParsedMessage],
    media: MediaEntries,
    service: Optional[EmbeddingService],
) -> int:
    """
    Attach a vector (or None) to every message in one outer batch.

    PDF text is substituted into bodies first so document content is what
    gets embedded. Eligible bodies go out as a single request; if that
    request fails, every message in the batch keeps a null vector.

    Returns:
        Number of messages that received a vector
    """
    for message in batch:
        substitute_pdf_text(message, media)
        message.embedding = None

    mask = [is_embeddable(message) for message in batch]
    eligible = [message for message, keep in zip(batch, mask) if keep]
    if not eligible:
        return 0
    if service is None:
        record_embedding_request("skipped")
        return 0

    try:
        vectors = await service.embed_batch([message.body for message in eligible])
    except Exception as e:  # noqa: BLE001
        logger.warning(f"Embedding batch error, storing {len(eligible)} messages without vectors: {e}")
        record_embedding_request("error")
        return 0

    record_embedding_request("ok")
    embedded = 0
    for message, vector in zip(eligible, vectors):
        message.embedding = vector
        if vector is not None:
            embedded += 1
    return embedded
