"""Embedding backends and the batching client that fronts them.

The client is the only place that bounds concurrency for embedding calls;
callers hand it whole documents' worth of strings.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

import httpx
import numpy as np
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from notesrag.errors import EmbeddingServiceError, RetryableServiceError
from notesrag.models import EmbeddingResult

DEFAULT_EMBEDDING_MODEL = "openai/text-embedding-3-large"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENAI_PREFIX = "openai/"

logger = logging.getLogger(__name__)


class EmbeddingBackend(Protocol):
    def embed_batch(self, model: str, texts: Sequence[str]) -> EmbeddingResult:
        """Embed ``texts`` in order; raise RetryableServiceError on transient failure."""


@dataclass(slots=True)
class EmbeddingConfig:
    batch_size: int = 16
    normalize: bool = True
    device: str | None = None


class SentenceTransformerBackend:
    """Local `SentenceTransformer` models, loaded on first use."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self._models: Dict[str, object] = {}
        self._lock = threading.Lock()

    def _load_model(self, model: str):
        with self._lock:
            if model not in self._models:
                from sentence_transformers import SentenceTransformer

                logger.info("Loading sentence-transformer model %s", model)
                self._models[model] = SentenceTransformer(model, device=self.config.device)
            return self._models[model]

    def embed_batch(self, model: str, texts: Sequence[str]) -> EmbeddingResult:
        encoder = self._load_model(model)
        try:
            vectors = encoder.encode(
                list(texts),
                batch_size=self.config.batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=self.config.normalize,
            )
        except RuntimeError as exc:
            raise RetryableServiceError(f"Local embedding failed: {exc}") from exc
        return EmbeddingResult(embeddings=np.asarray(vectors, dtype="float32").tolist(), usage=None)


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(connect=10.0, read=60.0, write=20.0, pool=10.0)


class HttpEmbeddingBackend:
    """OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = (base_url or os.environ.get("OPENAI_BASE_URL") or DEFAULT_OPENAI_BASE_URL).rstrip("/")
        api_key = api_key if api_key is not None else os.environ.get("OPENAI_API_KEY", "")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=default_timeout(),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )

    def close(self) -> None:
        self._client.close()

    def embed_batch(self, model: str, texts: Sequence[str]) -> EmbeddingResult:
        try:
            response = self._client.post("/embeddings", json={"model": model, "input": list(texts)})
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as exc:
            raise RetryableServiceError(f"Embedding request failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableServiceError(
                f"Embedding service returned {response.status_code}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise EmbeddingServiceError(
                f"Embedding service returned {response.status_code}: {response.text[:200]}"
            )

        payload = response.json()
        data = sorted(payload.get("data") or [], key=lambda item: item.get("index", 0))
        if len(data) != len(texts):
            raise EmbeddingServiceError(
                f"Expected {len(texts)} embeddings, received {len(data)}"
            )
        usage = payload.get("usage") or {}
        tokens = usage.get("total_tokens", usage.get("prompt_tokens"))
        return EmbeddingResult(
            embeddings=[[float(x) for x in item["embedding"]] for item in data],
            usage={"tokens": int(tokens)} if tokens is not None else None,
        )


def build_backend(model_id: str) -> tuple[EmbeddingBackend, str]:
    """Return the backend serving ``model_id`` and the name it knows the model by."""
    if model_id.startswith(OPENAI_PREFIX):
        return HttpEmbeddingBackend(), model_id[len(OPENAI_PREFIX) :]
    return SentenceTransformerBackend(), model_id


def _merge_usage(parts: Sequence[Optional[Dict[str, int]]]) -> Optional[Dict[str, int]]:
    present = [part for part in parts if part]
    if not present:
        return None
    merged: Dict[str, int] = {}
    for part in present:
        for key, value in part.items():
            merged[key] = merged.get(key, 0) + int(value)
    return merged


class EmbeddingClient:
    """Batches strings to a backend with bounded parallelism and retries."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        *,
        model_alias: Dict[str, str] | None = None,
        max_retries: int = 2,
        batch_size: int = 64,
        retry_wait: wait_base | None = None,
    ) -> None:
        self.backend = backend
        self.model_alias = dict(model_alias or {})
        self.max_retries = max_retries
        self.batch_size = max(batch_size, 1)
        self.retry_wait = retry_wait or wait_exponential_jitter(initial=0.5, max=8.0)

    @classmethod
    def for_model(cls, model_id: str, **kwargs) -> "EmbeddingClient":
        backend, backend_model = build_backend(model_id)
        return cls(backend, model_alias={model_id: backend_model}, **kwargs)

    def close(self) -> None:
        """Release the backend's connections, if it holds any."""
        close = getattr(self.backend, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> "EmbeddingClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _call(self, model: str, texts: Sequence[str]) -> EmbeddingResult:
        retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self.retry_wait,
            retry=retry_if_exception_type(RetryableServiceError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        return retrying(self.backend.embed_batch, self.model_alias.get(model, model), list(texts))

    def embed_one(self, model: str, value: str) -> tuple[List[float], Optional[Dict[str, int]]]:
        result = self._call(model, [value])
        if not result.embeddings:
            raise EmbeddingServiceError("Embedding service returned no vector")
        return result.embeddings[0], result.usage

    def embed_many(
        self, model: str, values: Sequence[str], *, max_parallel_calls: int = 4
    ) -> EmbeddingResult:
        values = list(values)
        if not values:
            return EmbeddingResult(embeddings=[], usage=None)

        batches = [values[i : i + self.batch_size] for i in range(0, len(values), self.batch_size)]
        if len(batches) == 1:
            results = [self._call(model, batches[0])]
        else:
            with ThreadPoolExecutor(max_workers=max(max_parallel_calls, 1)) as pool:
                results = list(pool.map(lambda batch: self._call(model, batch), batches))

        embeddings: List[List[float]] = []
        for result in results:
            embeddings.extend(result.embeddings)
        return EmbeddingResult(embeddings=embeddings, usage=_merge_usage([r.usage for r in results]))
