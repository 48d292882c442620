"""Tests for category_router.py: keyword and semantic routing with confidence."""

import pytest

from factmem.models.categories import Category
from factmem.services.category_router import CategoryEmbeddingCache, CategoryRouter
from factmem.utils.config import load_config

from conftest import DIMENSION, unit_vector


@pytest.fixture
def router_config():
    return load_config().router


@pytest.fixture
def router(router_config, keyword_only_cache):
    return CategoryRouter(router_config, keyword_only_cache)


class TestKeywordRouting:

    def test_health_text(self, router):
        result = router.route('I have a doctor appointment about my allergy medication', 'u1')
        assert result.primary_category == 'health_wellness'
        assert result.confidence > 0.8
        assert result.fallback_reason is None

    def test_work_text(self, router):
        result = router.route('The team meeting is on Tuesday at 3pm', 'u1')
        assert result.primary_category == 'work_career'
        assert result.scores['work_career'] > 0

    def test_weak_signal_has_low_confidence(self, router, router_config):
        result = router.route('My daughter plays the violin at school', 'u1')
        assert result.primary_category == 'relationships_social'
        assert result.confidence < router_config.confidence_threshold

    def test_close_runner_up_lowers_confidence(self, router):
        clear = router.route('My doctor changed my medication', 'u1')
        mixed = router.route('My doctor and my boss both want a meeting about my medication', 'u1')
        assert mixed.confidence < clear.confidence
        assert mixed.secondary_categories


class TestDefaults:
    """The router never raises and falls back to the default category."""

    def test_empty_text(self, router, router_config):
        result = router.route('   ', 'u1')
        assert result.primary_category == router_config.default_category
        assert result.confidence == 0.0
        assert result.fallback_reason == 'empty_text'

    def test_no_signal(self, router, router_config):
        result = router.route('xyzzy plugh', 'u1')
        assert result.primary_category == router_config.default_category
        assert result.fallback_reason == 'no_signal'

    def test_analysis_error(self, router_config, keyword_only_cache):
        def broken(owner_id):
            raise RuntimeError('category lookup failed')

        router = CategoryRouter(router_config, keyword_only_cache, dynamic_categories=broken)
        result = router.route('The team meeting is on Tuesday', 'u1')
        assert result.primary_category == router_config.default_category
        assert result.confidence == 0.0
        assert result.fallback_reason == 'analysis_error'


class TestSemanticAndDynamic:

    def test_semantic_signal_alone_routes(self, router_config):
        reference = unit_vector(1.0)
        cache = CategoryEmbeddingCache({'work_career': reference})
        router = CategoryRouter(router_config, cache)
        result = router.route('xyzzy plugh', 'u1', embedding=reference)
        assert result.primary_category == 'work_career'
        assert result.confidence == pytest.approx(0.5)

    def test_dynamic_category_takes_part(self, router_config, keyword_only_cache):
        woodworking = Category(name='woodworking',
                               description='woodworking',
                               keywords=frozenset({'lathe', 'chisel'}),
                               subcategory='Custom',
                               dynamic=True)
        router = CategoryRouter(router_config, keyword_only_cache, dynamic_categories=lambda owner_id: [woodworking])
        result = router.route('I bought a new lathe and a chisel', 'u1')
        assert result.primary_category == 'woodworking'


class TestEmbeddingCache:

    def test_warm_up_skips_failed_categories(self):
        cache = CategoryEmbeddingCache()
        embedded = cache.warm_up(lambda text: unit_vector(1.0) if text.startswith('work career') else None)
        assert embedded == 1
        assert len(cache) == 1
        assert cache.get('work_career') is not None
        assert cache.get('health_wellness') is None

    def test_reload_replaces_mapping(self):
        cache = CategoryEmbeddingCache({'work_career': [1.0] * DIMENSION})
        cache.reload({'health_wellness': [1.0] * DIMENSION})
        assert cache.get('work_career') is None
        assert len(cache) == 1
