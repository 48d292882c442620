"""Tests for opensearch_client.py against a mocked low-level OpenSearch client."""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError
from opensearchpy.exceptions import NotFoundError, TransportError

from factmem.models.core import EMBEDDING_PENDING, MemoryRecord
from factmem.utils.config import load_config
from factmem.utils.opensearch_client import KNN_OVERFETCH, OpenSearchClient, OpenSearchError

from conftest import unit_vector


def make_record(record_id, owner_id='u1', embedding=None, **kwargs):
    now = datetime(2024, 5, 1, 12, 0, 0)
    return MemoryRecord(id=record_id,
                        owner_id=owner_id,
                        category='work_career',
                        content=f'fact {record_id}',
                        token_count=3,
                        created_at=now,
                        last_accessed_at=now,
                        embedding=embedding,
                        **kwargs)


def hits(*records):
    return {'hits': {'hits': [{'_source': r.to_document()} for r in records]}}


@pytest.fixture
def raw_client():
    return MagicMock()


@pytest.fixture
def client(raw_client):
    with patch.object(OpenSearchClient, '_connect', return_value=raw_client):
        yield OpenSearchClient(load_config().opensearch)


class TestRecords:

    def test_insert_omits_missing_embedding(self, client, raw_client):
        raw_client.index.return_value = {'result': 'created'}
        client.insert_record(make_record('r1', embedding_status=EMBEDDING_PENDING))

        body = raw_client.index.call_args.kwargs['body']
        assert 'embedding' not in body
        assert body['embedding_status'] == EMBEDDING_PENDING
        assert raw_client.index.call_args.kwargs['index'] == client.records_index

    def test_nearest_records_filters_by_owner_and_sorts_locally(self, client, raw_client):
        query = unit_vector(1.0)
        far = make_record('far', embedding=unit_vector(0.0, 1.0))
        near = make_record('near', embedding=unit_vector(1.0, 0.1))
        raw_client.search.return_value = hits(far, near)

        neighbours = client.nearest_records('u1', query, category='work_career', k=1)

        assert [record.id for record, _ in neighbours] == ['near']
        assert neighbours[0][1] < 0.01
        body = raw_client.search.call_args.kwargs['body']
        assert body['size'] == KNN_OVERFETCH
        assert {'term': {'owner_id': 'u1'}} in body['query']['bool']['filter']
        assert {'term': {'category': 'work_career'}} in body['query']['bool']['filter']
        assert {'term': {'is_current': True}} in body['query']['bool']['filter']

    def test_get_record_of_other_owner_is_hidden(self, client, raw_client):
        raw_client.get.return_value = {'_source': make_record('r1', owner_id='u2').to_document()}
        assert client.get_record('u1', 'r1') is None

    def test_get_missing_record(self, client, raw_client):
        raw_client.get.side_effect = NotFoundError(404, 'not_found', {})
        assert client.get_record('u1', 'missing') is None

    def test_search_text_without_terms_skips_query(self, client, raw_client):
        assert client.search_text('u1', []) == []
        raw_client.search.assert_not_called()

    def test_record_round_trip_through_documents(self, client, raw_client):
        record = make_record('r1', embedding=unit_vector(1.0), fingerprint='user_email', explicit=True)
        raw_client.search.return_value = hits(record)
        assert client.current_records('u1') == [record]


class TestBudgets:

    def test_adjust_reads_updated_total(self, client, raw_client):
        raw_client.update.return_value = {'result': 'updated', 'get': {'_source': {'tokens_used': 42}}}
        budget = client.adjust_category_budget('u1', 'work_career', 7, 40)

        assert budget.tokens_used == 42
        assert budget.exceeded
        body = raw_client.update.call_args.kwargs['body']
        assert body['upsert']['tokens_used'] == 7
        assert raw_client.update.call_args.kwargs['id'] == 'u1:work_career'

    def test_missing_budget_is_zero(self, client, raw_client):
        raw_client.get.side_effect = NotFoundError(404, 'not_found', {})
        assert client.get_category_budget('u1', 'work_career', 100).tokens_used == 0

    def test_sum_of_empty_category(self, client, raw_client):
        raw_client.search.return_value = {'aggregations': {'tokens': {'value': None}}}
        assert client.sum_category_tokens('u1', 'work_career') == 0


class TestErrors:

    def test_transport_error_is_translated(self, client, raw_client):
        raw_client.search.side_effect = TransportError(500, 'search_phase_execution_exception', {})
        with pytest.raises(OpenSearchError, match='category_records'):
            client.category_records('u1', 'work_career')

    def test_connection_error_reconnects_and_retries(self, client, raw_client):
        raw_client.index.side_effect = [OpenSearchConnectionError('N/A', 'connection reset', None), {'result': 'created'}]
        assert client.insert_record(make_record('r1')) == 'r1'
        assert raw_client.index.call_count == 2
        raw_client.close.assert_called_once()

    def test_health_check_failure(self, client, raw_client):
        raw_client.indices.exists.side_effect = TransportError(503, 'unavailable', {})
        assert client.health_check() is False

    def test_index_creation(self, client, raw_client):
        raw_client.indices.exists.return_value = False
        raw_client.indices.create.return_value = {'acknowledged': True}
        assert set(client.create_indexes().values()) == {'created'}
        records_body = raw_client.indices.create.call_args_list[0].kwargs['body']
        assert records_body['mappings']['properties']['embedding']['dimension'] == client.config.dimension
