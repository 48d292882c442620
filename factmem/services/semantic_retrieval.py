"""
Semantic retrieval: candidate gathering, composite scoring, boosts and diversified selection.
"""

import math
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..models.core import MemoryRecord, RetrievalCandidate, RetrievalResult, RoutingResult
from ..utils.config import RetrievalConfig, RouterConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.text_signals import (detect_ordinal, keyword_match_score, keyword_terms, mentions_name, ordinal_facts,
                                  phrase_contained, proper_names, salient_nouns, text_similarity)
from ..utils.timestamp_utils import Deadline, recency_score
from ..utils.vectors import cosine_similarity

logger = get_logger(__name__)

# Fixed scoring weights, not learned
SEMANTIC_WEIGHT = 0.4
KEYWORD_WEIGHT = 0.3
RECENCY_WEIGHT = 0.1
IMPORTANCE_WEIGHT = 0.1
USAGE_WEIGHT = 0.1

USAGE_SATURATION = 20
EXPLICIT_CANDIDATE_LIMIT = 20
FALLBACK_NEAREST_K = 20


def usage_score(usage_frequency: int) -> float:
    return min(usage_frequency / USAGE_SATURATION, 1.0)


def composite_score(semantic: float, keyword: float, recency: float, importance: float, usage: float) -> float:
    return (SEMANTIC_WEIGHT * semantic + KEYWORD_WEIGHT * keyword + RECENCY_WEIGHT * recency + IMPORTANCE_WEIGHT * importance +
            USAGE_WEIGHT * usage)


class SemanticRetrievalEngine:
    """Ranks an owner's current facts against a query.

    Candidates from the routed categories, explicit-storage records and the
    topic fallback are merged by record id before any scoring happens.
    """

    def __init__(self, store, router, embedding_service, config: RetrievalConfig, router_config: RouterConfig):
        self.store = store
        self.router = router
        self.embedding_service = embedding_service
        self.config = config
        self.router_config = router_config

    def _fetch(self, operation: Callable[..., Iterable], *args, **kwargs) -> List:
        try:
            return list(operation(*args, **kwargs))
        except OpenSearchError as e:
            logger.warning(f'Store lookup {getattr(operation, "__name__", operation)} failed during retrieval: {e}')
            return []

    def _embed_query(self, query: str, deadline: Deadline) -> Optional[List[float]]:
        if self.embedding_service is None:
            return None
        return self.embedding_service.embed_query(query, timeout=deadline.cap(self.embedding_service.config.timeout_seconds))

    def needs_fallback(self, routing: RoutingResult, primary_count: int) -> bool:
        return routing.confidence < self.router_config.confidence_threshold or primary_count < self.config.min_primary_results

    @staticmethod
    def fallback_terms(query: str) -> List[str]:
        terms = salient_nouns(query)
        for name in proper_names(query):
            if name.lower() not in terms:
                terms.append(name.lower())
        return terms

    def gather(self, query: str, owner_id: str, routing: RoutingResult, embedding: Optional[List[float]],
               deadline: Deadline) -> Tuple[Dict[str, RetrievalCandidate], bool]:
        """Collect candidates, collapsing duplicates across sources by record id.

        Returns:
            Tuple of (candidate pool keyed by record id, whether the topic fallback ran)
        """
        pool: Dict[str, RetrievalCandidate] = {}

        def add(records: Iterable[MemoryRecord], source: str) -> None:
            for record in records:
                if record.is_current and record.id not in pool:
                    pool[record.id] = RetrievalCandidate(record=record, source=source)

        for category in [routing.primary_category] + list(routing.secondary_categories):
            add(self._fetch(self.store.category_records, owner_id, category, self.config.candidate_pool_size), 'primary')
        primary_count = len(pool)

        add(self._fetch(self.store.explicit_records, owner_id, EXPLICIT_CANDIDATE_LIMIT), 'explicit')

        fallback_used = False
        if self.needs_fallback(routing, primary_count):
            if deadline.expired():
                logger.warning(f'Deadline reached before topic fallback for owner {owner_id}, scoring {len(pool)} candidates')
            else:
                fallback_used = True
                terms = self.fallback_terms(query)
                add(self._fetch(self.store.search_text, owner_id, terms, self.config.fallback_limit), 'fallback')
                if embedding:
                    nearest = self._fetch(self.store.nearest_records, owner_id, embedding, None, FALLBACK_NEAREST_K)
                    add([record for record, _ in nearest], 'fallback')
        return pool, fallback_used

    def score(self, candidate: RetrievalCandidate, query: str, embedding: Optional[List[float]], now: datetime) -> RetrievalCandidate:
        """Fill in sub-scores and the composite score."""
        record = candidate.record
        if phrase_contained(query, record.content):
            candidate.semantic = 1.0
        elif embedding and record.embedding:
            candidate.semantic = max(0.0, cosine_similarity(embedding, record.embedding))
        else:
            # Pending embeddings still compete through text similarity
            candidate.semantic = text_similarity(query, record.content)

        candidate.keyword = keyword_match_score(query, record.content)
        candidate.recency = recency_score(record.created_at, record.last_accessed_at, now)
        candidate.importance = min(1.0, max(record.importance, record.relevance_score))
        candidate.usage = usage_score(record.usage_frequency)
        candidate.composite = composite_score(candidate.semantic, candidate.keyword, candidate.recency, candidate.importance,
                                              candidate.usage)
        candidate.score = candidate.composite
        return candidate

    def apply_boosts(self, candidate: RetrievalCandidate, query: str, has_terms: bool) -> RetrievalCandidate:
        """Apply explicit-storage, entity and ordinal adjustments, in that order."""
        content = candidate.record.content

        matches_query = (has_terms and candidate.keyword > 0) or candidate.semantic >= self.config.min_similarity
        if candidate.record.explicit and matches_query:
            boosted = max(candidate.score + self.config.explicit_boost, self.config.explicit_floor)
            candidate.boosts['explicit'] = boosted - candidate.score
            candidate.score = boosted

        for name in proper_names(query):
            if mentions_name(content, name):
                floor_delta = max(0.0, self.config.entity_floor - candidate.score)
                candidate.boosts['entity'] = floor_delta
                candidate.score = max(candidate.score, self.config.entity_floor)
                break

        requested = detect_ordinal(query)
        if requested:
            own = [fact for fact in ordinal_facts(content) if fact.subject == requested.subject]
            if own:
                if any(fact.position == requested.position for fact in own):
                    candidate.boosts['ordinal_match'] = self.config.ordinal_match_boost
                    candidate.score += self.config.ordinal_match_boost
                else:
                    candidate.boosts['ordinal_mismatch'] = -self.config.ordinal_mismatch_penalty
                    candidate.score -= self.config.ordinal_mismatch_penalty
        return candidate

    def is_relevant(self, candidate: RetrievalCandidate, has_terms: bool) -> bool:
        if candidate.boosted:
            return True
        if candidate.semantic >= self.config.min_similarity:
            return True
        return has_terms and candidate.keyword > 0

    def select(self, candidates: List[RetrievalCandidate], now: datetime) -> List[RetrievalCandidate]:
        """Diversified selection: top fraction, boosted candidates first, then recent/older quotas."""
        max_results = self.config.max_results
        ranked = sorted(candidates, key=lambda c: c.score, reverse=True)

        if len(ranked) > max_results:
            cutoff = math.ceil(len(ranked) * self.config.top_fraction)
            ranked = ranked[:cutoff] + [c for c in ranked[cutoff:] if c.boosted]

        selected = [c for c in ranked if c.boosted][:max_results]
        remaining = [c for c in ranked if not c.boosted]
        slots = max_results - len(selected)
        if slots > 0 and remaining:
            recent_cutoff = now - timedelta(days=self.config.recent_days)
            recent = [c for c in remaining if c.record.created_at >= recent_cutoff]
            older = [c for c in remaining if c.record.created_at < recent_cutoff]

            recent_quota = int(slots * self.config.recent_fraction + 0.5)
            older_quota = slots - recent_quota
            picked = recent[:recent_quota] + older[:older_quota]

            # Hand unused quota to whichever bucket still has candidates
            picked_ids = {c.record.id for c in picked}
            for candidate in remaining:
                if len(picked) >= slots:
                    break
                if candidate.record.id not in picked_ids:
                    picked.append(candidate)
                    picked_ids.add(candidate.record.id)
            selected.extend(picked)

        selected.sort(key=lambda c: c.score, reverse=True)
        return selected[:max_results]

    def retrieve(self, query: str, owner_id: str, deadline: Optional[Deadline] = None) -> RetrievalResult:
        """Retrieve the facts most relevant to a query.

        Args:
            query: Natural language query
            owner_id: Owner scope
            deadline: Optional request deadline; once expired the fallback is skipped

        Returns:
            RetrievalResult with at most max_results ranked candidates. An empty
            list means no relevant memory, not an error.
        """
        started = time.monotonic()
        deadline = deadline or Deadline(self.config.deadline_seconds)
        now = datetime.now()

        embedding = self._embed_query(query, deadline)
        routing = self.router.route(query, owner_id, embedding)
        pool, fallback_used = self.gather(query, owner_id, routing, embedding, deadline)

        has_terms = bool(keyword_terms(query))
        scored = []
        for candidate in pool.values():
            self.score(candidate, query, embedding, now)
            self.apply_boosts(candidate, query, has_terms)
            if self.is_relevant(candidate, has_terms):
                scored.append(candidate)

        selected = self.select(scored, now)
        if selected:
            try:
                self.store.record_hits(owner_id, [c.record.id for c in selected])
            except OpenSearchError as e:
                logger.warning(f'Failed to record retrieval hits for owner {owner_id}: {e}')

        boost_counts: Dict[str, int] = {}
        for candidate in selected:
            for name in candidate.boosts:
                boost_counts[name] = boost_counts.get(name, 0) + 1
        telemetry = {
            'category': routing.primary_category,
            'confidence': routing.confidence,
            'secondary_categories': routing.secondary_categories,
            'fallback_used': fallback_used,
            'candidate_count': len(pool),
            'relevant_count': len(scored),
            'returned': len(selected),
            'boosts': boost_counts,
            'embedding_available': embedding is not None,
            'duration_ms': int((time.monotonic() - started) * 1000),
        }
        logger.info(f'Retrieval telemetry for owner {owner_id}: {telemetry}')
        return RetrievalResult(candidates=selected, routing=routing, fallback_used=fallback_used, telemetry=telemetry)
