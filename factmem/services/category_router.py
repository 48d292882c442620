"""
Category routing: maps free text to one topical partition with a confidence.
"""

import threading
from typing import Callable, Dict, List, Optional

from ..models.categories import BASE_CATEGORIES, Category, CategorySet
from ..models.core import RoutingResult
from ..utils.config import RouterConfig
from ..utils.logging_config import get_logger
from ..utils.text_signals import bounded, word_variants, words
from ..utils.vectors import cosine_similarity

logger = get_logger(__name__)


class CategoryEmbeddingCache:
    """Reference embeddings for the fixed categories.

    Built once by warm_up() and read-only afterwards, so router instances on
    any thread can share it. reload() swaps in a complete new mapping.
    """

    def __init__(self, embeddings: Optional[Dict[str, List[float]]] = None):
        self._embeddings: Dict[str, List[float]] = dict(embeddings or {})
        self._reload_lock = threading.Lock()

    def warm_up(self, embed: Callable[[str], Optional[List[float]]], categories=BASE_CATEGORIES) -> int:
        """Embed every category description.

        Args:
            embed: Embedding callable; returning None skips that category
            categories: Categories to embed

        Returns:
            Number of categories with a reference embedding
        """
        embeddings = {}
        for category in categories:
            vector = embed(f'{category.name.replace("_", " ")}: {category.description}')
            if vector:
                embeddings[category.name] = vector
            else:
                logger.warning(f'No reference embedding for category {category.name}')
        self.reload(embeddings)
        logger.info(f'Warmed category embedding cache with {len(embeddings)} categories')
        return len(embeddings)

    def reload(self, embeddings: Dict[str, List[float]]) -> None:
        with self._reload_lock:
            self._embeddings = dict(embeddings)

    def get(self, name: str) -> Optional[List[float]]:
        return self._embeddings.get(name)

    def __len__(self) -> int:
        return len(self._embeddings)


class CategoryRouter:
    """Combines keyword-pattern scoring with semantic similarity to category references."""

    def __init__(self,
                 config: RouterConfig,
                 embedding_cache: Optional[CategoryEmbeddingCache] = None,
                 dynamic_categories: Optional[Callable[[str], List[Category]]] = None):
        """
        Args:
            config: Router thresholds and weights
            embedding_cache: Shared read-only reference embeddings
            dynamic_categories: Callable returning an owner's dynamic categories
        """
        self.config = config
        self.embedding_cache = embedding_cache or CategoryEmbeddingCache()
        self.dynamic_categories = dynamic_categories

    def _category_set(self, owner_id: str) -> CategorySet:
        if not self.dynamic_categories:
            return CategorySet()
        return CategorySet(dynamic=self.dynamic_categories(owner_id))

    def keyword_score(self, category: Category, text: str, text_words: List[str]) -> float:
        score = 0.0
        for pattern in category.patterns:
            if pattern.search(text):
                score += category.weight

        word_set = set(text_words)
        variant_set = set()
        for word in word_set:
            variant_set |= word_variants(word)
        for keyword in category.keywords:
            if ' ' in keyword or '-' in keyword:
                hit = keyword in text.lower()
            else:
                hit = keyword in word_set or keyword in variant_set
            if hit:
                score += self.config.keyword_hit_weight
        return score

    def semantic_score(self, category: Category, embedding: Optional[List[float]]) -> float:
        if not embedding:
            return 0.0
        reference = self.embedding_cache.get(category.name)
        if not reference:
            return 0.0
        return max(0.0, cosine_similarity(embedding, reference)) * self.config.semantic_weight

    def confidence(self, top: float, second: float) -> float:
        """Confidence from signal strength and the margin over the runner-up."""
        if top <= 0:
            return 0.0
        strength = min(1.0, top / self.config.saturation)
        margin = (top - second) / top
        return round(strength * (0.5 + 0.5 * margin), 4)

    def _default(self, reason: str) -> RoutingResult:
        return RoutingResult(primary_category=self.config.default_category, confidence=0.0, fallback_reason=reason)

    def route(self, text: str, owner_id: str, embedding: Optional[List[float]] = None) -> RoutingResult:
        """Route text to a primary category.

        Never raises: any analysis failure returns the default category with
        zero confidence so that retrieval takes the topic fallback path.

        Args:
            text: Content or query to classify
            owner_id: Owner whose dynamic categories also take part
            embedding: Optional embedding of the text for the semantic signal

        Returns:
            RoutingResult with primary category, confidence and secondaries
        """
        try:
            text = bounded(text)
            if not text.strip():
                return self._default('empty_text')

            text_words = words(text)
            scores: Dict[str, float] = {}
            for category in self._category_set(owner_id).all():
                scores[category.name] = self.keyword_score(category, text, text_words) + self.semantic_score(category, embedding)

            ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
            top_name, top_score = ranked[0]
            if top_score <= 0:
                return self._default('no_signal')

            second_score = ranked[1][1] if len(ranked) > 1 else 0.0
            secondaries = [name for name, score in ranked[1:] if score > 0 and score >= top_score * 0.5]
            result = RoutingResult(primary_category=top_name,
                                   confidence=self.confidence(top_score, second_score),
                                   secondary_categories=secondaries[:self.config.max_secondary],
                                   scores={name: round(score, 4) for name, score in ranked if score > 0})
            logger.debug(f'Routed text for owner {owner_id} to {result.primary_category} (confidence {result.confidence})')
            return result

        except Exception as e:
            logger.warning(f'Category routing failed for owner {owner_id}, using default category: {e}')
            return self._default('analysis_error')
