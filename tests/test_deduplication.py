"""Tests for deduplication.py and the store_fact write path it drives."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from factmem.models.core import MemoryRecord, StorageAction
from factmem.services.deduplication import DeduplicationEngine
from factmem.utils.text_signals import content_hash

from conftest import unit_vector


def make_record(record_id, content, category='work_career', embedding=None, minutes_ago=0, **kwargs):
    created = datetime.now() - timedelta(minutes=minutes_ago)
    return MemoryRecord(id=record_id,
                        owner_id='u1',
                        category=category,
                        content=content,
                        token_count=len(content) // 4 + 1,
                        created_at=created,
                        last_accessed_at=created,
                        embedding=embedding,
                        content_hash=content_hash(content),
                        **kwargs)


@pytest.fixture
def engine(store, app_config):
    return DeduplicationEngine(store, app_config.memory)


# ---------------------------------------------------------------------------
# Engine decisions
# ---------------------------------------------------------------------------

class TestDecisions:

    def test_new_fact_is_created(self, engine):
        decision = engine.evaluate('I love hiking in the mountains', 'u1', 'personal_life_interests', unit_vector(1.0))
        assert decision.action == StorageAction.CREATE
        assert decision.reason == 'new_fact'

    def test_exact_duplicate_boosts_without_embedding(self, engine, store):
        store.insert_record(make_record('r1', 'I love hiking in the mountains', category='personal_life_interests'))
        decision = engine.evaluate('i love hiking in the mountains.', 'u1', 'personal_life_interests', None)
        assert decision.action == StorageAction.BOOST_EXISTING
        assert decision.target_id == 'r1'

    def test_missing_embedding_creates(self, engine):
        decision = engine.evaluate('I love hiking in the mountains', 'u1', 'personal_life_interests', None)
        assert decision.action == StorageAction.CREATE
        assert decision.reason == 'embedding_unavailable'

    def test_near_duplicate_boosts(self, engine, store):
        store.insert_record(make_record('r1', 'The project kickoff is with the design group', embedding=unit_vector(1.0, 0.1)))
        decision = engine.evaluate('The project kickoff is with our design group', 'u1', 'work_career', unit_vector(1.0, 0.12))
        assert decision.action == StorageAction.BOOST_EXISTING
        assert decision.reason == 'near_duplicate'
        assert decision.distance < 0.15

    def test_near_duplicate_with_different_ordinal_is_kept_separate(self, engine, store):
        store.insert_record(make_record('r1', 'My first code is CHARLIE', embedding=unit_vector(1.0)))
        decision = engine.evaluate('My second code is DELTA', 'u1', 'work_career', unit_vector(1.0))
        assert decision.action == StorageAction.CREATE

    def test_near_duplicate_with_different_number_is_kept_separate(self, engine, store):
        store.insert_record(make_record('r1', 'I own 3 bikes', embedding=unit_vector(1.0)))
        decision = engine.evaluate('I own 4 bikes', 'u1', 'work_career', unit_vector(1.0))
        assert decision.action == StorageAction.CREATE

    def test_other_category_is_not_a_duplicate(self, engine, store):
        store.insert_record(make_record('r1', 'Project kickoff is with the design group', embedding=unit_vector(1.0)))
        decision = engine.evaluate('Project kickoff is with the design group team', 'u1', 'personal_life_interests', unit_vector(1.0))
        assert decision.action == StorageAction.CREATE


class TestSupersession:

    def test_temporal_update_supersedes(self, engine, store):
        store.insert_record(make_record('r1', 'The team meeting is on Tuesday at 3pm', embedding=unit_vector(1.0, 0.0), minutes_ago=5))
        decision = engine.evaluate('The team meeting moved to Tuesday at 4pm', 'u1', 'work_career', unit_vector(0.9, 0.3))
        assert decision.action == StorageAction.SUPERSEDE_AND_CREATE
        assert decision.superseded_ids == ['r1']
        assert decision.reason == 'temporal_update'
        assert decision.similarity > 0.75

    def test_dissimilar_temporal_fact_does_not_supersede(self, engine, store):
        store.insert_record(make_record('r1', 'The team meeting is on Tuesday at 3pm', embedding=unit_vector(1.0, 0.0)))
        decision = engine.evaluate('Quarterly review is on Friday', 'u1', 'work_career', unit_vector(0.0, 1.0))
        assert decision.action == StorageAction.CREATE

    def test_fact_without_temporal_marker_does_not_supersede(self, engine, store):
        store.insert_record(make_record('r1', 'The team meeting is on Tuesday at 3pm', embedding=unit_vector(1.0, 0.0)))
        decision = engine.evaluate('The team meeting room is the blue one', 'u1', 'work_career', unit_vector(0.9, 0.3))
        assert decision.action == StorageAction.CREATE

    def test_fingerprint_supersedes_every_current_record(self, engine, store):
        store.insert_record(make_record('r1', 'My email is a@example.com', fingerprint='user_email', minutes_ago=10))
        store.insert_record(make_record('r2', 'My email is b@example.com', fingerprint='user_email', minutes_ago=5))
        decision = engine.evaluate('My email is c@example.com', 'u1', 'tools_tech_workflow', None)
        assert decision.action == StorageAction.SUPERSEDE_AND_CREATE
        assert set(decision.superseded_ids) == {'r1', 'r2'}

    def test_fingerprint_with_same_value_boosts(self, engine, store):
        store.insert_record(make_record('r1', 'My email is a@example.com', fingerprint='user_email'))
        decision = engine.evaluate('my email is a@example.com', 'u1', 'tools_tech_workflow', None)
        assert decision.action == StorageAction.BOOST_EXISTING
        assert decision.target_id == 'r1'


# ---------------------------------------------------------------------------
# store_fact end to end
# ---------------------------------------------------------------------------

class TestStoreFact:

    def test_same_fact_twice_is_idempotent(self, service, store):
        first = service.store_fact('u1', 'I love hiking in the mountains every summer')
        second = service.store_fact('u1', 'I love hiking in the mountains every summer')
        assert first.action == StorageAction.CREATE
        assert second.action == StorageAction.BOOST_EXISTING
        assert second.record_id == first.record_id
        assert len(store.current('u1')) == 1
        assert store.records[first.record_id].usage_frequency == 1

    def test_fingerprint_lineage_keeps_one_current_record(self, service, store):
        addresses = ['alice@example.com', 'alice.new@example.com', 'a.smith@example.org', 'alice@work.example.com']
        results = [service.store_fact('u1', f'My email is {address}') for address in addresses]

        assert results[0].action == StorageAction.CREATE
        assert all(r.action == StorageAction.SUPERSEDE_AND_CREATE for r in results[1:])
        current = store.current('u1', fingerprint='user_email')
        assert len(current) == 1
        assert current[0].content == 'My email is alice@work.example.com'
        retired = store.records[results[0].record_id]
        assert not retired.is_current
        assert retired.superseded_by == results[1].record_id

    def test_temporal_update_through_store_fact(self, service, store, embedder):
        embedder.vectors['The team meeting is on Tuesday at 3pm'] = unit_vector(1.0, 0.0)
        embedder.vectors['The team meeting moved to Tuesday at 4pm'] = unit_vector(0.9, 0.3)
        first = service.store_fact('u1', 'The team meeting is on Tuesday at 3pm')
        second = service.store_fact('u1', 'The team meeting moved to Tuesday at 4pm')

        assert second.action == StorageAction.SUPERSEDE_AND_CREATE
        assert second.superseded_ids == [first.record_id]
        assert [r.content for r in store.current('u1')] == ['The team meeting moved to Tuesday at 4pm']

    def test_ordinal_facts_with_identical_embeddings_stay_separate(self, service, store, embedder):
        embedder.vectors['My first code is CHARLIE'] = unit_vector(1.0)
        embedder.vectors['My second code is DELTA'] = unit_vector(1.0)
        service.store_fact('u1', 'My first code is CHARLIE')
        second = service.store_fact('u1', 'My second code is DELTA')
        assert second.action == StorageAction.CREATE
        assert len(store.current('u1')) == 2

    def test_concurrent_identical_writes_create_one_record(self, service, store):
        with ThreadPoolExecutor(max_workers=5) as pool:
            results = list(pool.map(lambda _: service.store_fact('u1', 'I love hiking in the mountains every summer'), range(5)))
        assert len(store.current('u1')) == 1
        assert sum(1 for r in results if r.action == StorageAction.CREATE) == 1

    def test_failed_supersede_is_healed_by_cleanup(self, service, store):
        service.store_fact('u1', 'My email is alice@example.com')
        store.fail_on.add('mark_superseded')
        result = service.store_fact('u1', 'My email is alice.new@example.com')
        assert result.superseded_ids == []
        assert len(store.current('u1', fingerprint='user_email')) == 2

        store.fail_on.clear()
        assert service.cleanup_duplicate_current_facts('u1') == 1
        current = store.current('u1', fingerprint='user_email')
        assert [r.content for r in current] == ['My email is alice.new@example.com']
