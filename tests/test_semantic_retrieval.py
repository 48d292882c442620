"""Tests for semantic_retrieval.py: scoring, boosts, fallback and diversified selection."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from factmem.models.core import MemoryRecord, RetrievalCandidate, RoutingResult
from factmem.services.semantic_retrieval import SemanticRetrievalEngine, composite_score, usage_score
from factmem.utils.config import load_config
from factmem.utils.timestamp_utils import Deadline


def make_record(record_id, content, category='personal_life_interests', days_ago=0, **kwargs):
    created = datetime.now() - timedelta(days=days_ago)
    return MemoryRecord(id=record_id,
                        owner_id='u1',
                        category=category,
                        content=content,
                        token_count=len(content) // 4 + 1,
                        created_at=created,
                        last_accessed_at=created,
                        **kwargs)


def routed_to(category, confidence):
    router = MagicMock()
    router.route.return_value = RoutingResult(primary_category=category, confidence=confidence)
    return router


@pytest.fixture
def app_cfg():
    return load_config()


@pytest.fixture
def make_engine(store, app_cfg):
    """Engine without an embedding service, so semantic scores come from text similarity."""

    def factory(category='personal_life_interests', confidence=0.95):
        return SemanticRetrievalEngine(store, routed_to(category, confidence), None, app_cfg.retrieval, app_cfg.router)

    return factory


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class TestScoring:

    def test_composite_weights(self):
        assert composite_score(1.0, 0.0, 0.0, 0.0, 0.0) == pytest.approx(0.4)
        assert composite_score(0.0, 1.0, 0.0, 0.0, 0.0) == pytest.approx(0.3)
        assert composite_score(1.0, 1.0, 1.0, 1.0, 1.0) == pytest.approx(1.0)

    def test_usage_saturates(self):
        assert usage_score(0) == 0.0
        assert usage_score(10) == 0.5
        assert usage_score(50) == 1.0

    def test_ordinal_match_and_mismatch_are_separated(self, make_engine):
        engine = make_engine()
        query = 'What is my second code?'
        now = datetime.now()
        right = engine.score(RetrievalCandidate(make_record('r2', 'My second code is DELTA'), 'primary'), query, None, now)
        wrong = engine.score(RetrievalCandidate(make_record('r1', 'My first code is CHARLIE'), 'primary'), query, None, now)
        base_gap = right.score - wrong.score

        engine.apply_boosts(right, query, True)
        engine.apply_boosts(wrong, query, True)
        assert right.boosts == {'ordinal_match': pytest.approx(0.40)}
        assert wrong.boosts == {'ordinal_mismatch': pytest.approx(-0.20)}
        assert right.score - wrong.score == pytest.approx(base_gap + 0.60)
        assert not wrong.boosted

    def test_explicit_boost_reaches_floor(self, make_engine):
        engine = make_engine()
        query = 'what is my locker combination'
        candidate = RetrievalCandidate(make_record('r1', 'My locker combination is 12-34-56', explicit=True), 'explicit')
        engine.score(candidate, query, None, datetime.now())
        engine.apply_boosts(candidate, query, True)
        assert candidate.score >= 0.99
        assert 'explicit' in candidate.boosts

    def test_explicit_record_unrelated_to_query_is_not_boosted(self, make_engine):
        engine = make_engine()
        query = 'what is my locker combination'
        candidate = RetrievalCandidate(make_record('r1', 'My passport expires in March', explicit=True), 'explicit')
        engine.score(candidate, query, None, datetime.now())
        engine.apply_boosts(candidate, query, True)
        assert 'explicit' not in candidate.boosts
        assert not engine.is_relevant(candidate, True)

    def test_entity_floor(self, make_engine):
        engine = make_engine()
        query = 'What does Alex do?'
        candidate = RetrievalCandidate(make_record('r1', 'Alex is my marketer'), 'fallback')
        engine.score(candidate, query, None, datetime.now())
        engine.apply_boosts(candidate, query, True)
        assert candidate.score >= 0.85
        assert candidate.boosted


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

class TestSelection:

    def _candidate(self, record_id, score, days_ago):
        candidate = RetrievalCandidate(make_record(record_id, f'fact {record_id}', days_ago=days_ago), 'primary')
        candidate.score = score
        return candidate

    def test_recent_and_older_quotas(self, make_engine):
        engine = make_engine()
        recent = [self._candidate(f'new{i}', 0.90 - 0.01 * i, days_ago=1) for i in range(20)]
        older = [self._candidate(f'old{i}', 0.855 - 0.01 * i, days_ago=60) for i in range(20)]

        selected = engine.select(recent + older, datetime.now())

        assert len(selected) == 15
        assert sum(1 for c in selected if c.record.id.startswith('new')) == 11
        assert sum(1 for c in selected if c.record.id.startswith('old')) == 4
        assert [c.score for c in selected] == sorted((c.score for c in selected), reverse=True)

    def test_boosted_candidates_survive_the_cut(self, make_engine):
        engine = make_engine()
        candidates = [self._candidate(f'r{i}', 0.9, days_ago=1) for i in range(30)]
        low = self._candidate('entity', 0.1, days_ago=200)
        low.boosts['entity'] = 0.0
        selected = engine.select(candidates + [low], datetime.now())
        assert len(selected) == 15
        assert 'entity' in [c.record.id for c in selected]

    def test_top_half_is_kept_above_the_cap(self, make_engine):
        engine = make_engine()
        candidates = [self._candidate(f'r{i}', 0.9 - 0.01 * i, days_ago=1) for i in range(20)]
        selected = engine.select(candidates, datetime.now())
        assert [c.record.id for c in selected] == [f'r{i}' for i in range(10)]

    def test_small_pools_are_returned_whole(self, make_engine):
        engine = make_engine()
        candidates = [self._candidate(f'r{i}', 0.5, days_ago=i * 20) for i in range(6)]
        assert len(engine.select(candidates, datetime.now())) == 6


# ---------------------------------------------------------------------------
# retrieve()
# ---------------------------------------------------------------------------

class TestRetrieve:

    def test_fallback_finds_fact_in_another_category(self, make_engine, store):
        store.insert_record(make_record('r1', 'My daughter plays the violin at school', category='relationships_social'))
        engine = make_engine('daily_routines_habits', 0.75)

        result = engine.retrieve('How is the violin practice going?', 'u1')

        assert [c.record.id for c in result.candidates] == ['r1']
        assert result.candidates[0].source == 'fallback'
        assert result.fallback_used
        assert result.telemetry['fallback_used'] is True

    def test_confident_routing_with_enough_results_skips_fallback(self, make_engine, store):
        for i in range(3):
            store.insert_record(make_record(f'w{i}', f'Project Apollo milestone {i} is done', category='work_career'))
        store.insert_record(make_record('other', 'Apollo is the name of my cat', category='relationships_social'))
        engine = make_engine('work_career', 0.95)

        result = engine.retrieve('Project Apollo milestone', 'u1')

        assert 'search_text' not in store.calls
        assert not result.fallback_used
        assert {c.record.id for c in result.candidates} == {'w0', 'w1', 'w2'}

    def test_explicit_records_join_the_pool(self, make_engine, store):
        store.insert_record(make_record('r1', 'My locker combination is 12-34-56', category='tools_tech_workflow', explicit=True))
        engine = make_engine('work_career', 0.95)
        result = engine.retrieve('what is my locker combination', 'u1')
        assert result.candidates[0].record.id == 'r1'
        assert result.candidates[0].score >= 0.99

    def test_superseded_records_are_never_returned(self, make_engine, store):
        store.insert_record(make_record('old', 'My email is old@example.com', is_current=False))
        store.insert_record(make_record('new', 'My email is new@example.com'))
        engine = make_engine('personal_life_interests', 0.95)
        result = engine.retrieve('what is my email', 'u1')
        assert [c.record.id for c in result.candidates] == ['new']

    def test_result_is_capped(self, make_engine, store):
        for i in range(40):
            store.insert_record(make_record(f'r{i}', f'Weekly report number {i} covers the budget', category='work_career'))
        engine = make_engine('work_career', 0.95)
        result = engine.retrieve('weekly report budget', 'u1')
        assert len(result.candidates) == 15
        assert result.telemetry['returned'] == 15

    def test_usage_is_recorded_for_returned_records(self, make_engine, store):
        store.insert_record(make_record('r1', 'My daughter plays the violin at school'))
        engine = make_engine()
        engine.retrieve('violin', 'u1')
        assert store.records['r1'].usage_frequency == 1

    def test_hit_recording_failure_keeps_results(self, make_engine, store):
        store.insert_record(make_record('r1', 'My daughter plays the violin at school'))
        store.fail_on.add('record_hits')
        result = make_engine().retrieve('violin', 'u1')
        assert [c.record.id for c in result.candidates] == ['r1']
        assert result.telemetry['returned'] == 1

    def test_expired_deadline_skips_fallback(self, make_engine, store):
        store.insert_record(make_record('r1', 'My daughter plays the violin at school', category='relationships_social'))
        engine = make_engine('daily_routines_habits', 0.3)
        result = engine.retrieve('How is the violin practice going?', 'u1', deadline=Deadline(0))
        assert 'search_text' not in store.calls
        assert result.candidates == []

    def test_store_failures_degrade_to_empty(self, make_engine, store):
        store.insert_record(make_record('r1', 'My daughter plays the violin at school'))
        store.fail_on.update({'category_records', 'explicit_records', 'search_text', 'nearest_records'})
        engine = make_engine('personal_life_interests', 0.3)
        result = engine.retrieve('violin', 'u1')
        assert result.candidates == []
