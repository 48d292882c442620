"""
Timeout-bounded embedding generation and the pending-embedding backfill queue.
"""

import queue
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..models.core import EMBEDDING_FAILED, EMBEDDING_PENDING, EMBEDDING_PROCESSING, EMBEDDING_READY
from ..utils.bedrock_embed import BedrockEmbedError
from ..utils.config import BedrockEmbedConfig, MemoryConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError

logger = get_logger(__name__)


class EmbeddingService:
    """Runs embedding calls on a bounded worker pool so callers can time out.

    A timeout or provider failure returns None, which callers treat as a
    pending embedding rather than an error.
    """

    def __init__(self, embedder, config: BedrockEmbedConfig):
        self.embedder = embedder
        self.config = config
        self._executor = ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix='embed')

    def _run(self, fn, text: str, timeout: Optional[float]) -> Optional[List[float]]:
        if not text or not text.strip():
            return None
        timeout = self.config.timeout_seconds if timeout is None else timeout
        if timeout <= 0:
            return None

        future = self._executor.submit(fn, text)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(f'Embedding timed out after {timeout:.1f}s, marking pending')
            return None
        except BedrockEmbedError as e:
            logger.warning(f'Embedding failed, marking pending: {e}')
            return None
        except Exception as e:
            logger.error(f'Unexpected embedding error, marking pending: {e}')
            return None

    def embed(self, text: str, timeout: Optional[float] = None) -> Optional[List[float]]:
        """Embed fact content, or None on timeout or failure."""
        return self._run(self.embedder.embed_document, text, timeout)

    def embed_query(self, text: str, timeout: Optional[float] = None) -> Optional[List[float]]:
        """Embed a retrieval query, or None on timeout or failure."""
        return self._run(self.embedder.embed_query, text, timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


@dataclass
class BackfillItem:
    owner_id: str
    record_id: str
    content: str


class EmbeddingBackfillQueue:
    """Bounded retry queue that fills in embeddings for records stored as pending.

    Items that do not fit in the queue keep their pending status in the store
    and are picked up again by sweep().
    """

    def __init__(self, store, embedding_service: EmbeddingService, config: MemoryConfig):
        self.store = store
        self.embedding_service = embedding_service
        self.config = config
        self._queue: 'queue.Queue[BackfillItem]' = queue.Queue(maxsize=config.backfill_queue_size)
        self._queued_ids = set()
        self._ids_lock = threading.Lock()
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

    def __len__(self) -> int:
        return self._queue.qsize()

    def enqueue(self, owner_id: str, record_id: str, content: str) -> bool:
        """Queue a record for backfill.

        Returns:
            True if queued (or already queued), False if the queue is full
        """
        with self._ids_lock:
            if record_id in self._queued_ids:
                return True
            try:
                self._queue.put_nowait(BackfillItem(owner_id, record_id, content))
            except queue.Full:
                logger.warning(f'Backfill queue full, record {record_id} stays pending until the next sweep')
                return False
            self._queued_ids.add(record_id)
        return True

    def sweep(self) -> int:
        """Queue store records that are still pending. Returns the number queued."""
        try:
            records = self.store.pending_embeddings(self.config.backfill_batch_size)
        except OpenSearchError as e:
            logger.warning(f'Backfill sweep could not list pending records: {e}')
            return 0
        return sum(1 for r in records if self.enqueue(r.owner_id, r.id, r.content))

    def _backfill(self, item: BackfillItem) -> bool:
        self.store.update_embedding(item.owner_id, item.record_id, None, EMBEDDING_PROCESSING)
        try:
            return self._embed_and_write(item)
        except OpenSearchError:
            # Only pending records are swept, so a record must not be left processing
            try:
                self.store.update_embedding(item.owner_id, item.record_id, None, EMBEDDING_PENDING)
            except OpenSearchError as e:
                logger.error(f'Could not reset record {item.record_id} to pending: {e}')
            raise

    def _embed_and_write(self, item: BackfillItem) -> bool:
        for attempt in range(self.config.backfill_max_attempts):
            embedding = self.embedding_service.embed(item.content)
            if embedding:
                self.store.update_embedding(item.owner_id, item.record_id, embedding, EMBEDDING_READY)
                return True
            if attempt < self.config.backfill_max_attempts - 1:
                delay = self.config.backfill_retry_delay * (2**attempt)
                time.sleep(delay + random.uniform(0, self.config.backfill_retry_delay))

        self.store.update_embedding(item.owner_id, item.record_id, None, EMBEDDING_FAILED)
        logger.warning(f'Embedding backfill gave up on record {item.record_id} after {self.config.backfill_max_attempts} attempts')
        return False

    def process_pending(self, max_items: Optional[int] = None) -> Dict[str, int]:
        """Drain the queue synchronously.

        Args:
            max_items: Stop after this many items (drain everything if None)

        Returns:
            Counts of 'ready' and 'failed' records
        """
        counts = {'ready': 0, 'failed': 0}
        processed = 0
        while max_items is None or processed < max_items:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                if self._backfill(item):
                    counts['ready'] += 1
                else:
                    counts['failed'] += 1
            except OpenSearchError as e:
                # The record is left pending in the store, a later sweep retries it
                logger.warning(f'Store error while backfilling record {item.record_id}: {e}')
                counts['failed'] += 1
            finally:
                with self._ids_lock:
                    self._queued_ids.discard(item.record_id)
                self._queue.task_done()
                processed += 1

        if processed:
            logger.info(f'Embedding backfill processed {processed} records: {counts}')
        return counts

    def _run_worker(self, interval_seconds: float) -> None:
        while not self._stop.is_set():
            self.sweep()
            self.process_pending()
            self._stop.wait(interval_seconds)

    def start(self, interval_seconds: float = 30.0) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run_worker, args=(interval_seconds, ), name='embedding-backfill', daemon=True)
        self._worker.start()
        logger.info('Started embedding backfill worker')

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._worker:
            self._worker.join(timeout)
            self._worker = None
