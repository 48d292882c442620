"""
Core data models for the fact memory system.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

EMBEDDING_READY = 'ready'
EMBEDDING_PENDING = 'pending'
EMBEDDING_PROCESSING = 'processing'
EMBEDDING_FAILED = 'failed'


@dataclass
class MemoryRecord:
    """Represents one atomic fact stored for an owner.

    Superseded records are kept with is_current=False so that a fact lineage
    can be audited or rolled back.
    """
    id: str
    owner_id: str  # User/tenant scope
    category: str
    content: str  # Compressed natural-language fact
    token_count: int  # Computed at write time
    created_at: datetime
    last_accessed_at: datetime
    subcategory: str = 'general'
    embedding: Optional[List[float]] = None  # Absent while embedding is pending
    embedding_status: str = EMBEDDING_READY
    relevance_score: float = 0.5
    importance: float = 0.5  # Precomputed from content signals
    usage_frequency: int = 0
    is_current: bool = True
    explicit: bool = False  # "Remember this exactly" requests
    fingerprint: Optional[str] = None  # Deterministic lineage key, e.g. user_email
    content_hash: Optional[str] = None  # Hash of the normalized content
    superseded_by: Optional[str] = None
    superseded_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        """Serialize to a store document."""
        document = {
            'id': self.id,
            'owner_id': self.owner_id,
            'category': self.category,
            'subcategory': self.subcategory,
            'content': self.content,
            'token_count': self.token_count,
            'embedding_status': self.embedding_status,
            'relevance_score': self.relevance_score,
            'importance': self.importance,
            'usage_frequency': self.usage_frequency,
            'is_current': self.is_current,
            'explicit': self.explicit,
            'fingerprint': self.fingerprint,
            'content_hash': self.content_hash,
            'superseded_by': self.superseded_by,
            'superseded_at': self.superseded_at.isoformat() if self.superseded_at else None,
            'created_at': self.created_at.isoformat(),
            'last_accessed_at': self.last_accessed_at.isoformat(),
            'metadata': self.metadata,
        }
        # knn_vector fields reject nulls
        if self.embedding:
            document['embedding'] = self.embedding
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> 'MemoryRecord':
        """Build a record from a store document."""
        superseded_at = document.get('superseded_at')
        return cls(id=document['id'],
                   owner_id=document['owner_id'],
                   category=document['category'],
                   subcategory=document.get('subcategory') or 'general',
                   content=document['content'],
                   token_count=int(document.get('token_count', 0)),
                   embedding=document.get('embedding'),
                   embedding_status=document.get('embedding_status', EMBEDDING_READY),
                   relevance_score=float(document.get('relevance_score', 0.5)),
                   importance=float(document.get('importance', 0.5)),
                   usage_frequency=int(document.get('usage_frequency', 0)),
                   is_current=bool(document.get('is_current', True)),
                   explicit=bool(document.get('explicit', False)),
                   fingerprint=document.get('fingerprint'),
                   content_hash=document.get('content_hash'),
                   superseded_by=document.get('superseded_by'),
                   superseded_at=datetime.fromisoformat(superseded_at) if superseded_at else None,
                   created_at=datetime.fromisoformat(document['created_at']),
                   last_accessed_at=datetime.fromisoformat(document['last_accessed_at']),
                   metadata=document.get('metadata') or {})


@dataclass
class CategoryBudget:
    """Running token total for one (owner, category) pair."""
    owner_id: str
    category: str
    tokens_used: int
    max_tokens: int

    @property
    def exceeded(self) -> bool:
        return self.tokens_used > self.max_tokens


@dataclass
class RoutingResult:
    """Outcome of routing a text fragment to a category."""
    primary_category: str
    confidence: float
    secondary_categories: List[str] = field(default_factory=list)
    scores: Dict[str, float] = field(default_factory=dict)
    fallback_reason: Optional[str] = None  # Set when the router defaulted


class StorageAction(str, Enum):
    CREATE = 'CREATE'
    BOOST_EXISTING = 'BOOST_EXISTING'
    SUPERSEDE_AND_CREATE = 'SUPERSEDE_AND_CREATE'


@dataclass
class StorageDecision:
    """Result of duplicate and supersession checks for a new fact."""
    action: StorageAction
    target_id: Optional[str] = None
    superseded_ids: List[str] = field(default_factory=list)
    reason: str = ''
    distance: Optional[float] = None
    similarity: Optional[float] = None


@dataclass
class StoreResult:
    """Outcome of a store_fact call."""
    action: StorageAction
    record_id: str
    category: str
    superseded_ids: List[str] = field(default_factory=list)
    embedding_status: str = EMBEDDING_READY
    budget_exceeded: bool = False


@dataclass
class RetrievalCandidate:
    """A record scored against one query. Lives for a single retrieval call."""
    record: MemoryRecord
    source: str  # 'primary', 'explicit' or 'fallback'
    semantic: float = 0.0
    keyword: float = 0.0
    recency: float = 0.0
    importance: float = 0.0
    usage: float = 0.0
    composite: float = 0.0
    score: float = 0.0  # Composite plus boosts
    boosts: Dict[str, float] = field(default_factory=dict)

    @property
    def boosted(self) -> bool:
        # Penalties are negative; a floor that changed nothing still counts as a boost
        return any(delta >= 0 for delta in self.boosts.values())


@dataclass
class RetrievalResult:
    """Ranked candidates plus the routing and telemetry that produced them."""
    candidates: List[RetrievalCandidate]
    routing: RoutingResult
    fallback_used: bool = False
    telemetry: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceBudget:
    """Token accounting for one context source."""
    allotted_tokens: int
    budget: int
    truncated: bool = False
    compliant: bool = True


@dataclass
class ContextBudgetResult:
    """Assembled context with per-source token accounting."""
    final_context: str
    sources: Dict[str, SourceBudget]
    total_tokens: int
    total_budget: int
    compliant: bool
    telemetry: Dict[str, Any] = field(default_factory=dict)

    @property
    def per_source_tokens(self) -> Dict[str, int]:
        return {name: source.allotted_tokens for name, source in self.sources.items()}


@dataclass
class ValidationStepResult:
    """Outcome of one validator step."""
    name: str
    applied: bool
    reason: str
    telemetry: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    """Final answer after the validator chain, with per-step telemetry."""
    final_answer: str
    telemetry: List[ValidationStepResult] = field(default_factory=list)

    @property
    def corrections(self) -> List[str]:
        return [step.name for step in self.telemetry if step.applied]
