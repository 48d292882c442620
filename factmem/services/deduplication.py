"""
Duplicate and supersession checks that run before a fact is written.
"""

from typing import List, Optional

from ..models.core import MemoryRecord, StorageAction, StorageDecision
from ..utils.config import MemoryConfig
from ..utils.logging_config import get_logger
from ..utils.text_signals import content_hash, detect_fingerprint, has_temporal_marker, merge_conflict, normalize_text
from ..utils.vectors import cosine_similarity

logger = get_logger(__name__)


class DeduplicationEngine:
    """Decides whether a new fact is created, merged into an existing record, or supersedes older ones.

    Checks run in a fixed order: deterministic fingerprint lineage, nearest
    duplicate by vector distance, then temporal supersession against the most
    recent records of the category. The engine only reads from the store; the
    caller performs the write under its per-owner category and fingerprint locks.
    """

    def __init__(self, store, config: MemoryConfig):
        self.store = store
        self.config = config

    def _fingerprint_decision(self, new_content: str, owner_id: str) -> Optional[StorageDecision]:
        detected = detect_fingerprint(new_content)
        if not detected:
            return None
        fingerprint, confidence = detected
        if confidence < self.config.fingerprint_confidence_threshold:
            return None

        existing = self.store.find_by_fingerprint(owner_id, fingerprint)
        if not existing:
            return None
        if len(existing) > 1:
            logger.warning(f'Found {len(existing)} current records for fingerprint {fingerprint} of owner {owner_id}, superseding all')

        normalized = normalize_text(new_content)
        for record in existing:
            if normalize_text(record.content) == normalized:
                return StorageDecision(action=StorageAction.BOOST_EXISTING,
                                       target_id=record.id,
                                       reason=f'fingerprint_duplicate:{fingerprint}',
                                       distance=0.0)

        return StorageDecision(action=StorageAction.SUPERSEDE_AND_CREATE,
                               target_id=existing[0].id,
                               superseded_ids=[r.id for r in existing],
                               reason=f'fingerprint:{fingerprint}')

    def _exact_decision(self, new_content: str, owner_id: str, category: str) -> Optional[StorageDecision]:
        existing = self.store.find_by_content_hash(owner_id, category, content_hash(new_content))
        if not existing:
            return None
        return StorageDecision(action=StorageAction.BOOST_EXISTING, target_id=existing[0].id, reason='exact_duplicate', distance=0.0)

    def _duplicate_decision(self, new_content: str, owner_id: str, category: str,
                            embedding: List[float]) -> Optional[StorageDecision]:
        neighbours = self.store.nearest_records(owner_id, embedding, category=category, k=5)
        for record, distance in neighbours:
            if distance >= self.config.dedup_distance_threshold:
                break
            conflict = merge_conflict(record.content, new_content)
            if conflict:
                logger.debug(f'Near-duplicate {record.id} kept separate ({conflict}, distance {distance:.3f})')
                continue
            return StorageDecision(action=StorageAction.BOOST_EXISTING,
                                   target_id=record.id,
                                   reason='near_duplicate',
                                   distance=round(distance, 4))
        return None

    def _supersession_decision(self, new_content: str, owner_id: str, category: str,
                               embedding: List[float]) -> Optional[StorageDecision]:
        if not has_temporal_marker(new_content):
            return None

        recent: List[MemoryRecord] = self.store.recent_records(owner_id, category, limit=self.config.supersession_window)
        matches = []
        for record in recent:
            if not record.embedding or not has_temporal_marker(record.content):
                continue
            similarity = cosine_similarity(embedding, record.embedding)
            if similarity <= self.config.supersession_similarity_threshold:
                continue
            # Changed numbers are expected in an update; changed ordinals or names are a different fact
            if merge_conflict(record.content, new_content, check_numbers=False):
                continue
            matches.append((similarity, record))

        if not matches:
            return None
        matches.sort(key=lambda pair: pair[0], reverse=True)
        best_similarity, best = matches[0]
        return StorageDecision(action=StorageAction.SUPERSEDE_AND_CREATE,
                               target_id=best.id,
                               superseded_ids=[record.id for _, record in matches],
                               reason='temporal_update',
                               similarity=round(best_similarity, 4))

    def evaluate(self, new_content: str, owner_id: str, category: str,
                 embedding: Optional[List[float]] = None) -> StorageDecision:
        """Decide how a new fact should be stored.

        Args:
            new_content: Sanitized fact text
            owner_id: Owner scope
            category: Category the fact was routed to
            embedding: Embedding of the fact, None if embedding failed or timed out

        Returns:
            StorageDecision with the action and the record ids it affects
        """
        decision = self._fingerprint_decision(new_content, owner_id)
        if decision:
            return decision

        # Exact matches merge even while embeddings are unavailable
        decision = self._exact_decision(new_content, owner_id, category)
        if decision:
            return decision

        if not embedding:
            return StorageDecision(action=StorageAction.CREATE, reason='embedding_unavailable')

        decision = self._duplicate_decision(new_content, owner_id, category, embedding)
        if decision:
            return decision

        decision = self._supersession_decision(new_content, owner_id, category, embedding)
        if decision:
            return decision

        return StorageDecision(action=StorageAction.CREATE, reason='new_fact')
