"""
Memory Management Service: the single storage entry point plus retrieval, assembly and validation.
"""

import threading
import time
import uuid
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.categories import Category, CategorySet, validate_dynamic_category
from ..models.core import (EMBEDDING_PENDING, EMBEDDING_READY, ContextBudgetResult, MemoryRecord, StorageAction,
                           StorageDecision, StoreResult, ValidationResult)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.text_signals import (content_hash, detect_explicit_storage, detect_fingerprint, sanitize_for_storage,
                                  score_importance, strip_storage_command)
from ..utils.timestamp_utils import Deadline
from ..utils.token_utils import estimate_tokens
from .category_router import CategoryEmbeddingCache, CategoryRouter
from .context_assembler import ContextAssembler, DocumentInput
from .deduplication import DeduplicationEngine
from .embedding import EmbeddingBackfillQueue, EmbeddingService
from .fact_extraction import FactExtractionError, FactExtractionService
from .semantic_retrieval import SemanticRetrievalEngine
from .validators import CorrectnessValidatorChain

logger = get_logger(__name__)

SUPERSEDE_RETRY_DELAY = 0.1


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


class InvalidRequestError(MemoryManagementError, ValueError):
    """Raised when a caller passes a missing owner, empty text or an invalid category."""
    pass


class MemoryManagementService:
    """Unified service for fact storage, retrieval, context assembly and answer validation.

    Category assignment always goes through the same router that retrieval
    uses, whatever the request path. Every collaborator can be injected; the
    defaults build the Bedrock and OpenSearch clients from the global config.
    """

    def __init__(self,
                 store=None,
                 embedder=None,
                 llm=None,
                 app_config: Optional[AppConfig] = None,
                 embedding_cache: Optional[CategoryEmbeddingCache] = None):
        """Initialize the memory management service."""
        self.config = app_config or config
        self.store = store or OpenSearchClient(self.config.opensearch)
        self.embedder = embedder or BedrockEmbed(self.config.bedrock_embed)
        self.llm = llm or BedrockLLM(self.config.bedrock_llm)

        try:
            self.store.create_indexes()
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch indexes: {e}')

        self.embedding_service = EmbeddingService(self.embedder, self.config.bedrock_embed)
        self.embedding_cache = embedding_cache or CategoryEmbeddingCache()
        if not len(self.embedding_cache):
            self.embedding_cache.warm_up(self.embedding_service.embed)

        self.router = CategoryRouter(self.config.router, self.embedding_cache, dynamic_categories=self.dynamic_categories)
        self.deduplication = DeduplicationEngine(self.store, self.config.memory)
        self.retrieval = SemanticRetrievalEngine(self.store, self.router, self.embedding_service, self.config.retrieval,
                                                 self.config.router)
        self.assembler = ContextAssembler(self.config.context)
        self.validators = CorrectnessValidatorChain(self.config.validator)
        self.fact_extraction = FactExtractionService(self.llm, self.config.memory)
        self.backfill = EmbeddingBackfillQueue(self.store, self.embedding_service, self.config.memory)

        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

        logger.info('Initialized MemoryManagementService')

    # Helpers

    @staticmethod
    def _require(value: Optional[str], field_name: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise InvalidRequestError(f'{field_name} is required')
        return value.strip()

    def _lock_for(self, owner_id: str, scope: str) -> threading.Lock:
        """Advisory lock around the check-then-write sequence for one (owner, scope)."""
        with self._locks_guard:
            lock = self._locks.get((owner_id, scope))
            if lock is None:
                lock = self._locks[(owner_id, scope)] = threading.Lock()
            return lock

    @contextmanager
    def _write_lock(self, owner_id: str, category: str, fingerprint: Optional[str] = None):
        """Hold the category lock, plus the fingerprint lock when the fact has a lineage.

        A fingerprint lineage spans categories. Locks are taken in sorted order.
        """
        scopes = {f'category:{category}'}
        if fingerprint:
            scopes.add(f'fingerprint:{fingerprint}')
        with ExitStack() as stack:
            for scope in sorted(scopes):
                stack.enter_context(self._lock_for(owner_id, scope))
            yield

    def dynamic_categories(self, owner_id: str) -> List[Category]:
        try:
            return self.store.list_dynamic_categories(owner_id)
        except OpenSearchError as e:
            logger.warning(f'Could not load dynamic categories for owner {owner_id}: {e}')
            return []

    def _subcategory(self, owner_id: str, category: str) -> str:
        found = CategorySet(dynamic=self.dynamic_categories(owner_id)).get(category)
        return found.subcategory if found else 'General'

    def _update_budget(self, owner_id: str, category: str, delta: int) -> bool:
        """Apply a token delta to the category budget. Returns True when the ceiling is exceeded."""
        ceiling = self.config.memory.category_token_ceiling
        try:
            budget = self.store.adjust_category_budget(owner_id, category, delta, ceiling)
            if budget.tokens_used < 0:
                logger.warning(f'Negative token budget ({budget.tokens_used}) for owner {owner_id} category {category}, recomputing')
                budget = self.store.set_category_budget(owner_id, category, self.store.sum_category_tokens(owner_id, category), ceiling)
            if budget.exceeded:
                logger.warning(f'Category {category} for owner {owner_id} is over its token ceiling: {budget.tokens_used}/{ceiling}')
            return budget.exceeded
        except OpenSearchError as e:
            logger.warning(f'Failed to update token budget for owner {owner_id} category {category}: {e}')
            return False

    def _supersede(self, owner_id: str, record_id: str, superseded_by: str) -> Optional[MemoryRecord]:
        """Mark a record non-current, retrying with backoff. Returns the retired record on success."""
        attempts = self.config.memory.supersede_retry_attempts
        for attempt in range(attempts):
            try:
                record = self.store.get_record(owner_id, record_id)
                if record is None or not record.is_current:
                    return None
                self.store.mark_superseded(owner_id, record_id, superseded_by)
                return record
            except OpenSearchError as e:
                logger.warning(f'Supersede attempt {attempt + 1}/{attempts} for record {record_id} failed: {e}')
                if attempt < attempts - 1:
                    time.sleep(SUPERSEDE_RETRY_DELAY * (2**attempt))

        # Left current; the next write on this lineage or cleanup_duplicate_current_facts retires it
        logger.error(f'Could not supersede record {record_id} for owner {owner_id}, lineage has two current records')
        return None

    def _evaluate(self, content: str, owner_id: str, category: str, embedding: Optional[List[float]]) -> StorageDecision:
        try:
            return self.deduplication.evaluate(content, owner_id, category, embedding)
        except OpenSearchError as e:
            logger.warning(f'Deduplication unavailable for owner {owner_id}, creating new record: {e}')
            return StorageDecision(action=StorageAction.CREATE, reason='dedup_unavailable')

    # Storage

    def store_fact(self, owner_id: str, text: str, explicit: Optional[bool] = None) -> StoreResult:
        """Store one fact through routing, deduplication and supersession.

        Args:
            owner_id: Owner scope
            text: Fact text, possibly prefixed with a "remember this" command
            explicit: Force explicit-storage handling (detected from the text if None)

        Returns:
            StoreResult with the action taken and the affected record ids

        Raises:
            InvalidRequestError: If the owner is missing or the text has no storable content
            MemoryManagementError: If the record could not be written
        """
        owner_id = self._require(owner_id, 'owner_id')
        text = self._require(text, 'text')

        if explicit is None:
            explicit = detect_explicit_storage(text)
        content = sanitize_for_storage(text, self.config.memory.min_content_chars)
        if content and explicit:
            content = sanitize_for_storage(strip_storage_command(content), self.config.memory.min_content_chars)
        if not content:
            raise InvalidRequestError('text has no storable content')

        timeout = self.config.bedrock_embed.explicit_timeout_seconds if explicit else self.config.bedrock_embed.timeout_seconds
        embedding = self.embedding_service.embed(content, timeout=timeout)

        routing = self.router.route(content, owner_id, embedding)
        category = routing.primary_category
        importance = score_importance(content, category, explicit)

        fingerprint = None
        detected = detect_fingerprint(content)
        if detected and detected[1] >= self.config.memory.fingerprint_confidence_threshold:
            fingerprint = detected[0]

        with self._write_lock(owner_id, category, fingerprint):
            decision = self._evaluate(content, owner_id, category, embedding)

            if decision.action == StorageAction.BOOST_EXISTING:
                try:
                    self.store.boost_record(owner_id, decision.target_id, explicit=explicit)
                except OpenSearchError as e:
                    logger.warning(f'Failed to boost record {decision.target_id}: {e}')
                logger.info(f'Stored fact for owner {owner_id}: {decision.action.value} {decision.target_id} ({decision.reason})')
                return StoreResult(action=decision.action, record_id=decision.target_id, category=category)

            now = datetime.now()
            record = MemoryRecord(id=str(uuid.uuid4()),
                                  owner_id=owner_id,
                                  category=category,
                                  subcategory=self._subcategory(owner_id, category),
                                  content=content,
                                  token_count=estimate_tokens(content),
                                  created_at=now,
                                  last_accessed_at=now,
                                  embedding=embedding,
                                  embedding_status=EMBEDDING_READY if embedding else EMBEDDING_PENDING,
                                  importance=importance,
                                  explicit=explicit,
                                  fingerprint=fingerprint,
                                  content_hash=content_hash(content),
                                  metadata={
                                      'routing_confidence': routing.confidence,
                                      'secondary_categories': routing.secondary_categories,
                                      'storage_reason': decision.reason,
                                  })
            try:
                self.store.insert_record(record)
            except OpenSearchError as e:
                logger.error(f'Failed to store fact for owner {owner_id}: {e}')
                raise MemoryManagementError(f'Fact storage failed: {e}')

            deltas: Dict[str, int] = defaultdict(int)
            deltas[category] += record.token_count
            superseded_ids = []
            for old_id in decision.superseded_ids:
                retired = self._supersede(owner_id, old_id, record.id)
                if retired:
                    superseded_ids.append(old_id)
                    deltas[retired.category] -= retired.token_count

        budget_exceeded = False
        for budget_category, delta in deltas.items():
            exceeded = self._update_budget(owner_id, budget_category, delta)
            budget_exceeded = budget_exceeded or (exceeded and budget_category == category)

        if record.embedding_status == EMBEDDING_PENDING:
            self.backfill.enqueue(owner_id, record.id, content)

        logger.info(f'Stored fact for owner {owner_id}: {decision.action.value} {record.id} in {category} ({decision.reason})')
        return StoreResult(action=decision.action,
                           record_id=record.id,
                           category=category,
                           superseded_ids=superseded_ids,
                           embedding_status=record.embedding_status,
                           budget_exceeded=budget_exceeded)

    def store_interaction(self, owner_id: str, messages: List[Dict[str, str]]) -> List[StoreResult]:
        """Extract facts from a conversation turn and store each of them.

        Args:
            owner_id: Owner scope
            messages: List of message dicts with 'role' and 'content' keys

        Returns:
            One StoreResult per stored fact
        """
        owner_id = self._require(owner_id, 'owner_id')
        if not messages:
            logger.warning('Empty messages provided for fact storage')
            return []

        try:
            facts = self.fact_extraction.extract_facts(owner_id, messages)
        except FactExtractionError as e:
            logger.warning(f'Fact extraction failed for owner {owner_id}, storing user text instead: {e}')
            facts = self.fact_extraction.fallback_fact(messages)

        explicit = detect_explicit_storage(self.fact_extraction.user_text(messages))
        results = []
        for fact in facts:
            try:
                results.append(self.store_fact(owner_id, fact, explicit=explicit))
            except InvalidRequestError as e:
                logger.debug(f'Skipped extracted fact for owner {owner_id}: {e}')
        return results

    def register_category(self, owner_id: str, name: str, keywords: Sequence[str], description: str = '') -> Category:
        """Register a dynamic category for an owner.

        Raises:
            InvalidRequestError: If the name is invalid, reserved, or the owner has no free slot
        """
        owner_id = self._require(owner_id, 'owner_id')
        name = (name or '').strip().lower()
        error = validate_dynamic_category(name, self.store.list_dynamic_categories(owner_id), self.config.memory.max_dynamic_categories)
        if error:
            raise InvalidRequestError(error)

        category = Category(name=name,
                            description=description or name.replace('_', ' '),
                            keywords=frozenset(k.strip().lower() for k in keywords if k and k.strip()),
                            subcategory='Custom',
                            dynamic=True)
        self.store.save_dynamic_category(owner_id, category)
        return category

    # Retrieval and validation

    def retrieve_context(self,
                         owner_id: str,
                         query: str,
                         document_text: DocumentInput = None,
                         vault_text: Optional[str] = None,
                         deadline_seconds: Optional[float] = None) -> ContextBudgetResult:
        """Retrieve relevant facts and assemble them with documents and vault under the token budgets.

        Args:
            owner_id: Owner scope
            query: User query
            document_text: Optional document text or (label, text) pairs
            vault_text: Optional vault corpus
            deadline_seconds: Request deadline (config default if None)

        Returns:
            ContextBudgetResult; memory may be partial or empty, never an error

        Raises:
            InvalidRequestError: If the owner or query is missing
        """
        owner_id = self._require(owner_id, 'owner_id')
        query = self._require(query, 'query')
        deadline = Deadline(self.config.retrieval.deadline_seconds if deadline_seconds is None else deadline_seconds)

        ranked = []
        retrieval_telemetry = {}
        try:
            retrieval = self.retrieval.retrieve(query, owner_id, deadline)
            ranked = retrieval.candidates
            retrieval_telemetry = retrieval.telemetry
        except Exception as e:
            logger.error(f'Retrieval failed for owner {owner_id}, assembling context without memory: {e}')

        result = self.assembler.assemble(ranked, document_text=document_text, vault_text=vault_text, query=query)
        result.telemetry['retrieval'] = retrieval_telemetry
        result.telemetry['deadline_exceeded'] = deadline.expired()
        return result

    def validate_answer(self, query: str, context: str, draft: str, deadline_seconds: Optional[float] = None) -> ValidationResult:
        """Run the correctness validator chain on a draft answer.

        Raises:
            InvalidRequestError: If the query is missing or the draft is None
        """
        query = self._require(query, 'query')
        if draft is None:
            raise InvalidRequestError('draft is required')
        deadline = Deadline(deadline_seconds) if deadline_seconds is not None else None
        return self.validators.run(query, context or '', draft, deadline)

    # Maintenance

    def cleanup_duplicate_current_facts(self, owner_id: str) -> int:
        """Keep the newest current record per fingerprint or exact content and supersede the rest.

        Returns:
            Number of records superseded
        """
        owner_id = self._require(owner_id, 'owner_id')
        groups: Dict[Tuple[str, str], List[MemoryRecord]] = defaultdict(list)
        try:
            for record in self.store.current_records(owner_id):
                if record.fingerprint:
                    groups[('fingerprint', record.fingerprint)].append(record)
                elif record.content_hash:
                    groups[(record.category, record.content_hash)].append(record)
        except OpenSearchError as e:
            logger.error(f'Could not list current records for owner {owner_id}: {e}')
            raise MemoryManagementError(f'Duplicate cleanup failed: {e}')

        superseded = 0
        for key, records in groups.items():
            if len(records) < 2:
                continue
            records.sort(key=lambda r: r.created_at, reverse=True)
            newest = records[0]
            logger.warning(f'Found {len(records)} current records for {key[0]} {key[1]} of owner {owner_id}, keeping {newest.id}')
            for record in records[1:]:
                with self._write_lock(owner_id, record.category, record.fingerprint):
                    retired = self._supersede(owner_id, record.id, newest.id)
                if retired:
                    superseded += 1
                    self._update_budget(owner_id, retired.category, -retired.token_count)
        return superseded

    def process_pending_embeddings(self, max_items: Optional[int] = None) -> Dict[str, int]:
        """Queue records still pending in the store and drain the backfill queue."""
        self.backfill.sweep()
        return self.backfill.process_pending(max_items)

    def health_check(self) -> Dict[str, bool]:
        return {
            'opensearch': self.store.health_check(),
            'bedrock_embed': self.embedder.health_check(),
            'bedrock_llm': self.llm.health_check(),
        }

    def shutdown(self) -> None:
        self.backfill.stop()
        self.embedding_service.shutdown()
