"""
Admission control and retries for embedding requests.

At most ``concurrency`` requests are in flight per provider, whatever the size
of the file worker pool. Transient failures are retried with exponential
backoff; a permanent failure only fails the chunk that caused it.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .cache import EmbeddingCache
from .chunker import estimate_tokens
from .embed import TASK_DOCUMENT, TASK_QUERY, EmbeddingBatch, EmbeddingProvider
from .errors import (
    ConfigurationError,
    ProviderError,
    ProviderPermanentFailure,
    ProviderTransientFailure,
    StorageFailure,
)
from .metrics import Metrics
from .model import Chunk, EmbeddingRecord

logger = logging.getLogger(__name__)

OnEmbedded = Callable[[Chunk, EmbeddingRecord], None]

class ProviderGates:
    """
    Admission semaphores keyed by provider id. Every controller that shares a
    registry shares one gate per provider, so the bound holds across them.
    A gate is created once and never replaced.
    """

    def __init__(self):
        self._gates: Dict[str, Tuple[int, threading.BoundedSemaphore]] = {}
        self._lock = threading.Lock()

    def gate(self, provider_id: str, limit: int) -> threading.BoundedSemaphore:
        with self._lock:
            entry = self._gates.get(provider_id)
            if entry is None:
                entry = self._gates[provider_id] = (limit, threading.BoundedSemaphore(limit))
            elif entry[0] != limit:
                raise ConfigurationError(
                    f"Provider '{provider_id}' already admits {entry[0]} concurrent requests; cannot change it to {limit}"
                )
            return entry[1]


@dataclass
class EmbedOutcome:
    embedded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    tokens: int = 0
    cost: float = 0.0
    cancelled: bool = False

    def __post_init__(self):
        self._lock = threading.Lock()

    def ok(self, chunk_id: str, tokens: int, cost: float):
        with self._lock:
            self.embedded.append(chunk_id)
            self.tokens += tokens
            self.cost += cost

    def fail(self, chunk_id: str, reason: str):
        with self._lock:
            self.failed[chunk_id] = reason


class ConcurrencyController:
    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache,
        concurrency: int = 4,
        retries: int = 3,
        retry_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        batch_size: int = 16,
        metrics: Optional[Metrics] = None,
        gates: Optional[ProviderGates] = None,
    ):
        self.provider = provider
        self.cache = cache
        self.concurrency = concurrency
        self.retries = retries
        self.retry_delay = retry_delay
        self.retry_max_delay = retry_max_delay
        self.batch_size = batch_size
        self.metrics = metrics or Metrics()
        self.gates = gates or ProviderGates()
        self.gate = self.gates.gate(provider.provider_id, concurrency)

    def _before_sleep(self, state: RetryCallState):
        self.metrics.incr("provider_retries")
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "Retrying %s request (attempt %d): %s",
            self.provider.provider_id,
            state.attempt_number,
            exc,
            extra={"data": {"provider": self.provider.provider_id, "attempt": state.attempt_number}},
        )

    def request(self, texts: Sequence[str], task: str = TASK_DOCUMENT) -> EmbeddingBatch:
        """One provider call under the admission gate, retried on transient failures."""
        retrying = Retrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, max=self.retry_max_delay),
            retry=retry_if_exception_type(ProviderTransientFailure),
            before_sleep=self._before_sleep,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    with self.gate:
                        self.metrics.incr("provider_requests")
                        return self.provider.embed(texts, task=task)
        except ProviderError:
            self.metrics.incr("provider_errors")
            raise
        raise ProviderTransientFailure("retry loop exited without a result")

    def embed_query(self, text: str, task: str = TASK_QUERY) -> np.ndarray:
        batch = self.request([text], task=task)
        self.metrics.incr("tokens_used", batch.tokens)
        self.metrics.add_cost(batch.cost)
        return batch.vectors[0]

    def embed_chunks(
        self,
        chunks: Sequence[Chunk],
        on_embedded: OnEmbedded,
        cancel: Optional[threading.Event] = None,
    ) -> EmbedOutcome:
        """
        Embed chunks that missed the cache. Each success is written to the
        cache and then handed to ``on_embedded`` before the next one, so a
        crash loses at most the chunks still in flight.
        """
        outcome = EmbedOutcome()
        batches = self._batches(chunks)
        if not batches:
            return outcome

        # a storage failure stops the rest of this call only
        halted = threading.Event()
        storage_error: Optional[StorageFailure] = None
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="embed") as pool:
            futures = [pool.submit(self._run_batch, batch, on_embedded, outcome, cancel, halted) for batch in batches]
            for future in as_completed(futures):
                try:
                    future.result()
                except StorageFailure as exc:
                    storage_error = storage_error or exc
        if storage_error is not None:
            raise storage_error
        return outcome

    def _batches(self, chunks: Sequence[Chunk]) -> List[List[Chunk]]:
        # batches never mix files so cancellation lands between files
        batches: List[List[Chunk]] = []
        current: List[Chunk] = []
        for chunk in chunks:
            if current and (len(current) >= self.batch_size or current[-1].path != chunk.path):
                batches.append(current)
                current = []
            current.append(chunk)
        if current:
            batches.append(current)
        return batches

    def _run_batch(
        self,
        batch: List[Chunk],
        on_embedded: OnEmbedded,
        outcome: EmbedOutcome,
        cancel: Optional[threading.Event],
        halted: threading.Event,
    ):
        if halted.is_set() or (cancel is not None and cancel.is_set()):
            outcome.cancelled = True
            return
        try:
            result = self.request([c.text for c in batch])
        except ProviderPermanentFailure as exc:
            if len(batch) > 1:
                # isolate the offending chunk
                for chunk in batch:
                    self._run_batch([chunk], on_embedded, outcome, cancel, halted)
                return
            self._fail(batch[0], exc, outcome)
            return
        except ProviderTransientFailure as exc:
            for chunk in batch:
                self._fail(chunk, exc, outcome)
            return

        weights = [estimate_tokens(c.text) for c in batch]
        total = sum(weights) or 1
        for chunk, vector, weight in zip(batch, result.vectors, weights):
            tokens = round(result.tokens * weight / total)
            cost = result.cost * weight / total
            record = EmbeddingRecord(
                content_hash=chunk.id,
                provider=self.provider.provider_id,
                model=self.provider.model_id,
                vector=np.asarray(vector, dtype=np.float32),
                tokens=tokens,
                cost=cost,
            )
            try:
                self.cache.put(record)
                on_embedded(chunk, record)
            except StorageFailure:
                # stop new work; already committed chunks stay valid
                halted.set()
                raise
            outcome.ok(chunk.id, tokens, cost)
            self.metrics.incr("chunks_embedded")
            self.metrics.incr("tokens_used", tokens)
            self.metrics.add_cost(cost)

    def _fail(self, chunk: Chunk, exc: ProviderError, outcome: EmbedOutcome):
        outcome.fail(chunk.id, str(exc))
        self.metrics.incr("chunks_failed")
        logger.error(
            "Embedding failed for %s:%d-%d: %s",
            chunk.path,
            chunk.start_line,
            chunk.end_line,
            exc,
            extra={"data": {"chunk": chunk.id, "path": chunk.path}},
        )
