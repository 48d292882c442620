"""Shared fixtures and in-memory fakes for the store, embedding and LLM clients."""
import dataclasses
import hashlib
import math
import re
import threading
import time
from datetime import datetime

import pytest

from factmem.models.categories import BASE_CATEGORY_NAMES
from factmem.models.core import EMBEDDING_PENDING, CategoryBudget
from factmem.services.category_router import CategoryEmbeddingCache
from factmem.services.memory_management import MemoryManagementService
from factmem.utils.bedrock_embed import BedrockEmbedError
from factmem.utils.bedrock_llm import BedrockLLMError
from factmem.utils.config import load_config
from factmem.utils.opensearch_client import OpenSearchError
from factmem.utils.text_signals import words
from factmem.utils.vectors import cosine_distance

DIMENSION = 256


def unit_vector(*values):
    """A normalized DIMENSION-long vector starting with the given values."""
    vector = list(values) + [0.0] * (DIMENSION - len(values))
    norm = math.sqrt(sum(v * v for v in vector)) or 1.0
    return [v / norm for v in vector]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class InMemoryStore:
    """Dict-backed stand-in for OpenSearchClient with the same method surface.

    Method names listed in fail_on raise OpenSearchError; every call is
    recorded in calls.
    """

    def __init__(self):
        self.records = {}
        self.budgets = {}
        self.dynamic = {}
        self.fail_on = set()
        self.calls = []
        self._lock = threading.RLock()

    def _check(self, name):
        self.calls.append(name)
        if name in self.fail_on:
            raise OpenSearchError(f'{name} unavailable')

    def _current(self, owner_id, category=None):
        return [
            r for r in self.records.values()
            if r.owner_id == owner_id and r.is_current and (category is None or r.category == category)
        ]

    @staticmethod
    def _copy(record):
        return dataclasses.replace(record, metadata=dict(record.metadata))

    def create_indexes(self):
        self._check('create_indexes')
        return {}

    def insert_record(self, record):
        self._check('insert_record')
        with self._lock:
            self.records[record.id] = self._copy(record)
        return record.id

    def get_record(self, owner_id, record_id):
        self._check('get_record')
        record = self.records.get(record_id)
        if record is None or record.owner_id != owner_id:
            return None
        return self._copy(record)

    def nearest_records(self, owner_id, vector, category=None, k=5):
        self._check('nearest_records')
        neighbours = [(self._copy(r), cosine_distance(vector, r.embedding)) for r in self._current(owner_id, category) if r.embedding]
        neighbours.sort(key=lambda pair: pair[1])
        return neighbours[:k]

    def recent_records(self, owner_id, category, limit=10):
        self._check('recent_records')
        records = sorted(self._current(owner_id, category), key=lambda r: r.created_at, reverse=True)
        return [self._copy(r) for r in records[:limit]]

    def category_records(self, owner_id, category, limit=100):
        self._check('category_records')
        records = sorted(self._current(owner_id, category), key=lambda r: (r.relevance_score, r.created_at), reverse=True)
        return [self._copy(r) for r in records[:limit]]

    def explicit_records(self, owner_id, limit=20):
        self._check('explicit_records')
        records = sorted((r for r in self._current(owner_id) if r.explicit), key=lambda r: r.created_at, reverse=True)
        return [self._copy(r) for r in records[:limit]]

    def current_records(self, owner_id, limit=1000):
        self._check('current_records')
        records = sorted(self._current(owner_id), key=lambda r: r.created_at, reverse=True)
        return [self._copy(r) for r in records[:limit]]

    def search_text(self, owner_id, terms, limit=50):
        self._check('search_text')
        terms = {t.lower() for t in terms}
        return [self._copy(r) for r in self._current(owner_id) if terms & set(words(r.content))][:limit]

    def find_by_fingerprint(self, owner_id, fingerprint):
        self._check('find_by_fingerprint')
        records = sorted((r for r in self._current(owner_id) if r.fingerprint == fingerprint), key=lambda r: r.created_at, reverse=True)
        return [self._copy(r) for r in records]

    def find_by_content_hash(self, owner_id, category, content_hash):
        self._check('find_by_content_hash')
        return [self._copy(r) for r in self._current(owner_id, category) if r.content_hash == content_hash]

    def mark_superseded(self, owner_id, record_id, superseded_by):
        self._check('mark_superseded')
        with self._lock:
            record = self.records[record_id]
            record.is_current = False
            record.superseded_by = superseded_by
            record.superseded_at = datetime.now()
        return True

    def boost_record(self, owner_id, record_id, increment=0.05, explicit=False):
        self._check('boost_record')
        with self._lock:
            record = self.records[record_id]
            record.relevance_score = min(1.0, record.relevance_score + increment)
            record.usage_frequency += 1
            record.explicit = record.explicit or explicit
            record.last_accessed_at = datetime.now()
        return True

    def record_hits(self, owner_id, record_ids):
        self._check('record_hits')
        with self._lock:
            for record_id in record_ids:
                self.records[record_id].usage_frequency += 1
                self.records[record_id].last_accessed_at = datetime.now()
        return len(record_ids)

    def update_embedding(self, owner_id, record_id, embedding, status):
        self._check('update_embedding')
        with self._lock:
            record = self.records[record_id]
            record.embedding_status = status
            if embedding:
                record.embedding = embedding
        return True

    def pending_embeddings(self, limit=20):
        self._check('pending_embeddings')
        records = sorted((r for r in self.records.values() if r.embedding_status == EMBEDDING_PENDING), key=lambda r: r.created_at)
        return [self._copy(r) for r in records[:limit]]

    def get_category_budget(self, owner_id, category, max_tokens):
        self._check('get_category_budget')
        return CategoryBudget(owner_id, category, self.budgets.get((owner_id, category), 0), max_tokens)

    def adjust_category_budget(self, owner_id, category, delta, max_tokens):
        self._check('adjust_category_budget')
        with self._lock:
            self.budgets[(owner_id, category)] = self.budgets.get((owner_id, category), 0) + delta
        return CategoryBudget(owner_id, category, self.budgets[(owner_id, category)], max_tokens)

    def set_category_budget(self, owner_id, category, tokens_used, max_tokens):
        self._check('set_category_budget')
        self.budgets[(owner_id, category)] = tokens_used
        return CategoryBudget(owner_id, category, tokens_used, max_tokens)

    def sum_category_tokens(self, owner_id, category):
        self._check('sum_category_tokens')
        return sum(r.token_count for r in self._current(owner_id, category))

    def list_dynamic_categories(self, owner_id):
        self._check('list_dynamic_categories')
        return list(self.dynamic.get(owner_id, {}).values())

    def save_dynamic_category(self, owner_id, category):
        self._check('save_dynamic_category')
        self.dynamic.setdefault(owner_id, {})[category.name] = category

    def health_check(self):
        return 'health_check' not in self.fail_on

    # Test helpers

    def current(self, owner_id, **filters):
        return [r for r in self._current(owner_id) if all(getattr(r, k) == v for k, v in filters.items())]


class FakeEmbedder:
    """Deterministic hashed bag-of-words embeddings, with per-text overrides."""

    def __init__(self, dimension=DIMENSION):
        self.dimension = dimension
        self.vectors = {}
        self.failing = False
        self.delay = 0.0
        self.calls = 0

    def _embed(self, text):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.failing:
            raise BedrockEmbedError('embedding provider unavailable')
        if text in self.vectors:
            return list(self.vectors[text])
        vector = [0.0] * self.dimension
        for word in re.findall(r'[a-z0-9]+', text.lower()):
            vector[int(hashlib.md5(word.encode('utf-8')).hexdigest(), 16) % self.dimension] += 1.0
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]

    def embed_document(self, text):
        return self._embed(text)

    def embed_query(self, text):
        return self._embed(text)

    def health_check(self):
        return not self.failing


class FakeLLM:
    """Returns a canned JSON response and records the prompts it was given."""

    def __init__(self, response='[]'):
        self.response = response
        self.failing = False
        self.calls = []

    def generate_json(self, user_text, system_prompt, max_tokens=None):
        self.calls.append(user_text)
        if self.failing:
            raise BedrockLLMError('model unavailable')
        return self.response

    def health_check(self):
        return not self.failing


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def app_config():
    """Default configuration with fast retries for tests."""
    cfg = load_config()
    cfg.bedrock_embed.timeout_seconds = 2.0
    cfg.bedrock_embed.explicit_timeout_seconds = 2.0
    cfg.memory.backfill_retry_delay = 0.0
    cfg.memory.backfill_max_attempts = 2
    return cfg


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def keyword_only_cache():
    """Reference embeddings that carry no signal, so routing follows keywords alone."""
    return CategoryEmbeddingCache({name: [0.0] * DIMENSION for name in BASE_CATEGORY_NAMES})


@pytest.fixture
def service(store, embedder, llm, app_config, keyword_only_cache):
    svc = MemoryManagementService(store=store, embedder=embedder, llm=llm, app_config=app_config, embedding_cache=keyword_only_cache)
    yield svc
    svc.shutdown()
