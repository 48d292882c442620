"""
OpenSearch-backed memory store with k-NN search, category budgets and dynamic categories.
"""

import threading
import time
from datetime import datetime
from functools import wraps
from typing import Any, Dict, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection, helpers
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.categories import Category
from ..models.core import EMBEDDING_PENDING, CategoryBudget, MemoryRecord
from .config import OpenSearchConfig
from .logging_config import get_logger
from .vectors import cosine_distance

logger = get_logger(__name__)

KNN_VECTOR_METHOD = {'name': 'hnsw', 'space_type': 'cosinesimil', 'engine': 'nmslib'}

# k-NN runs before the owner/category filter, so over-fetch before filtering
KNN_OVERFETCH = 10


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def store_operation(func):
    """Check the connection before a store call, translate errors and retry once after reconnecting."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        self.ensure_connection()
        try:
            return func(self, *args, **kwargs)
        except OpenSearchConnectionError as e:
            logger.warning(f'Connection error in {func.__name__}: {e}. Reconnecting...')
            self.reconnect()
            try:
                return func(self, *args, **kwargs)
            except OpenSearchException as retry_e:
                logger.error(f'Error in {func.__name__}: {retry_e}')
                raise OpenSearchError(f'Failed to {func.__name__}: {retry_e}')
        except OpenSearchException as e:
            logger.error(f'Error in {func.__name__}: {e}')
            raise OpenSearchError(f'Failed to {func.__name__}: {e}')

    return wrapper


class OpenSearchClient:
    """OpenSearch memory store with AWS authentication and connection recovery."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config
        self.records_index = f'{config.index_name}_records'
        self.budget_index = f'{config.index_name}_budgets'
        self.category_index = f'{config.index_name}_categories'

        self._lock = threading.Lock()
        self._last_health_check = time.monotonic()
        self.client = self._connect()

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def _connect(self) -> OpenSearch:
        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=self.config.region, service=self.config.service, refreshable_credentials=credentials)

        endpoint = self.config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        return OpenSearch(hosts=[{
            'host': endpoint,
            'port': self.config.port
        }],
                          http_auth=auth,
                          use_ssl=True,
                          verify_certs=True,
                          connection_class=RequestsHttpConnection,
                          timeout=10,
                          max_retries=2,
                          retry_on_timeout=True)

    def reconnect(self) -> None:
        """Replace the connection pool. Other threads keep the old client until the swap."""
        with self._lock:
            old_client = self.client
            self.client = self._connect()
            self._last_health_check = time.monotonic()
        try:
            old_client.close()
        except Exception as e:
            logger.debug(f'Error closing stale OpenSearch client: {e}')
        logger.info('Recreated OpenSearch connection pool')

    def ensure_connection(self) -> None:
        """Run the periodic health check and rebuild the pool if it fails."""
        if time.monotonic() - self._last_health_check < self.config.health_check_interval_seconds:
            return
        self._last_health_check = time.monotonic()
        if not self.health_check():
            logger.warning('OpenSearch health check failed, recreating connection pool')
            self.reconnect()

    # Index management

    def _records_mapping(self) -> Dict[str, Any]:
        return {
            'mappings': {
                'properties': {
                    'id': {'type': 'keyword'},
                    'owner_id': {'type': 'keyword'},
                    'category': {'type': 'keyword'},
                    'subcategory': {'type': 'keyword'},
                    'content': {'type': 'text'},
                    'token_count': {'type': 'integer'},
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': KNN_VECTOR_METHOD
                    },
                    'embedding_status': {'type': 'keyword'},
                    'relevance_score': {'type': 'float'},
                    'importance': {'type': 'float'},
                    'usage_frequency': {'type': 'integer'},
                    'is_current': {'type': 'boolean'},
                    'explicit': {'type': 'boolean'},
                    'fingerprint': {'type': 'keyword'},
                    'content_hash': {'type': 'keyword'},
                    'superseded_by': {'type': 'keyword'},
                    'superseded_at': {'type': 'date'},
                    'created_at': {'type': 'date'},
                    'last_accessed_at': {'type': 'date'},
                    'metadata': {'type': 'object', 'enabled': False}
                }
            },
            'settings': {
                'index': {
                    'knn': True,
                    'knn.algo_param.ef_search': 100
                }
            }
        }

    def _budget_mapping(self) -> Dict[str, Any]:
        return {
            'mappings': {
                'properties': {
                    'owner_id': {'type': 'keyword'},
                    'category': {'type': 'keyword'},
                    'tokens_used': {'type': 'long'},
                    'max_tokens': {'type': 'long'}
                }
            }
        }

    def _category_mapping(self) -> Dict[str, Any]:
        return {
            'mappings': {
                'properties': {
                    'owner_id': {'type': 'keyword'},
                    'name': {'type': 'keyword'},
                    'description': {'type': 'text'},
                    'keywords': {'type': 'keyword'},
                    'subcategory': {'type': 'keyword'}
                }
            }
        }

    def create_index_if_not_exists(self, index_name: str, index_body: Dict[str, Any]) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_name: Name of the index
            index_body: Mappings and settings

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=index_body)
            if response.get('acknowledged', False):
                logger.info(f'Created index {index_name}')
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def create_indexes(self) -> Dict[str, str]:
        return {
            self.records_index: self.create_index_if_not_exists(self.records_index, self._records_mapping()),
            self.budget_index: self.create_index_if_not_exists(self.budget_index, self._budget_mapping()),
            self.category_index: self.create_index_if_not_exists(self.category_index, self._category_mapping()),
        }

    # Record helpers

    def _search_records(self, filters: List[Dict[str, Any]], size: int, sort: Optional[List[Dict[str, Any]]] = None,
                        must: Optional[List[Dict[str, Any]]] = None) -> List[MemoryRecord]:
        body: Dict[str, Any] = {'size': size, 'query': {'bool': {'filter': filters}}}
        if must:
            body['query']['bool']['must'] = must
        if sort:
            body['sort'] = sort
        response = self.client.search(index=self.records_index, body=body)
        return [MemoryRecord.from_document(hit['_source']) for hit in response['hits']['hits']]

    @staticmethod
    def _owner_filters(owner_id: str, category: Optional[str] = None, current_only: bool = True) -> List[Dict[str, Any]]:
        filters: List[Dict[str, Any]] = [{'term': {'owner_id': owner_id}}]
        if category:
            filters.append({'term': {'category': category}})
        if current_only:
            filters.append({'term': {'is_current': True}})
        return filters

    # Record operations

    @store_operation
    def insert_record(self, record: MemoryRecord) -> str:
        """
        Index a new memory record.

        Args:
            record: Record to store

        Returns:
            The record id
        """
        response = self.client.index(index=self.records_index, id=record.id, body=record.to_document(), refresh=True)
        if response.get('result') not in ('created', 'updated'):
            logger.warning(f'Unexpected result indexing record {record.id}: {response}')
        logger.debug(f'Indexed record {record.id} in category {record.category}')
        return record.id

    @store_operation
    def get_record(self, owner_id: str, record_id: str) -> Optional[MemoryRecord]:
        try:
            response = self.client.get(index=self.records_index, id=record_id)
        except NotFoundError:
            return None
        record = MemoryRecord.from_document(response['_source'])
        if record.owner_id != owner_id:
            return None
        return record

    @store_operation
    def nearest_records(self,
                        owner_id: str,
                        vector: List[float],
                        category: Optional[str] = None,
                        k: int = 5) -> List[Tuple[MemoryRecord, float]]:
        """
        Find the nearest current records by cosine distance.

        Args:
            owner_id: Owner scope
            vector: Query embedding
            category: Restrict to one category (all categories if None)
            k: Number of neighbours to return

        Returns:
            List of (record, distance) tuples, closest first
        """
        search_body = {
            'size': k * KNN_OVERFETCH,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': vector,
                                'k': k * KNN_OVERFETCH
                            }
                        }
                    }],
                    'filter': self._owner_filters(owner_id, category)
                }
            }
        }
        response = self.client.search(index=self.records_index, body=search_body)

        neighbours = []
        for hit in response['hits']['hits']:
            record = MemoryRecord.from_document(hit['_source'])
            if record.embedding:
                neighbours.append((record, cosine_distance(vector, record.embedding)))
        neighbours.sort(key=lambda pair: pair[1])
        return neighbours[:k]

    @store_operation
    def recent_records(self, owner_id: str, category: str, limit: int = 10) -> List[MemoryRecord]:
        return self._search_records(self._owner_filters(owner_id, category), limit, sort=[{'created_at': {'order': 'desc'}}])

    @store_operation
    def category_records(self, owner_id: str, category: str, limit: int = 100) -> List[MemoryRecord]:
        return self._search_records(self._owner_filters(owner_id, category),
                                    limit,
                                    sort=[{'relevance_score': {'order': 'desc'}}, {'created_at': {'order': 'desc'}}])

    @store_operation
    def explicit_records(self, owner_id: str, limit: int = 20) -> List[MemoryRecord]:
        filters = self._owner_filters(owner_id) + [{'term': {'explicit': True}}]
        return self._search_records(filters, limit, sort=[{'created_at': {'order': 'desc'}}])

    @store_operation
    def current_records(self, owner_id: str, limit: int = 1000) -> List[MemoryRecord]:
        return self._search_records(self._owner_filters(owner_id), limit, sort=[{'created_at': {'order': 'desc'}}])

    @store_operation
    def search_text(self, owner_id: str, terms: List[str], limit: int = 50) -> List[MemoryRecord]:
        """Match any of the terms against record content across all categories."""
        if not terms:
            return []
        must = [{'bool': {'should': [{'match': {'content': term}} for term in terms], 'minimum_should_match': 1}}]
        return self._search_records(self._owner_filters(owner_id), limit, must=must)

    @store_operation
    def find_by_fingerprint(self, owner_id: str, fingerprint: str) -> List[MemoryRecord]:
        filters = self._owner_filters(owner_id) + [{'term': {'fingerprint': fingerprint}}]
        return self._search_records(filters, 50, sort=[{'created_at': {'order': 'desc'}}])

    @store_operation
    def find_by_content_hash(self, owner_id: str, category: str, content_hash: str) -> List[MemoryRecord]:
        filters = self._owner_filters(owner_id, category) + [{'term': {'content_hash': content_hash}}]
        return self._search_records(filters, 10, sort=[{'created_at': {'order': 'desc'}}])

    @store_operation
    def mark_superseded(self, owner_id: str, record_id: str, superseded_by: str) -> bool:
        """Retire a record. The record is kept for audit."""
        response = self.client.update(index=self.records_index,
                                      id=record_id,
                                      body={
                                          'doc': {
                                              'is_current': False,
                                              'superseded_by': superseded_by,
                                              'superseded_at': datetime.now().isoformat()
                                          }
                                      },
                                      refresh=True)
        logger.debug(f'Marked record {record_id} superseded by {superseded_by} for owner {owner_id}')
        return response.get('result') in ('updated', 'noop')

    @store_operation
    def boost_record(self, owner_id: str, record_id: str, increment: float = 0.05, explicit: bool = False) -> bool:
        """Count a duplicate write against an existing record."""
        script = {
            'lang': 'painless',
            'source': ('ctx._source.usage_frequency += 1; '
                       'ctx._source.relevance_score = Math.min(1.0, ctx._source.relevance_score + params.increment); '
                       'ctx._source.last_accessed_at = params.now; '
                       'if (params.explicit) { ctx._source.explicit = true; }'),
            'params': {
                'increment': increment,
                'now': datetime.now().isoformat(),
                'explicit': explicit
            }
        }
        response = self.client.update(index=self.records_index, id=record_id, body={'script': script}, refresh=True)
        logger.debug(f'Boosted record {record_id} for owner {owner_id}')
        return response.get('result') == 'updated'

    @store_operation
    def record_hits(self, owner_id: str, record_ids: List[str]) -> int:
        """Increment usage for records returned by a retrieval."""
        if not record_ids:
            return 0
        now = datetime.now().isoformat()
        actions = [{
            '_op_type': 'update',
            '_index': self.records_index,
            '_id': record_id,
            'script': {
                'lang': 'painless',
                'source': 'ctx._source.usage_frequency += 1; ctx._source.last_accessed_at = params.now;',
                'params': {
                    'now': now
                }
            }
        } for record_id in record_ids]
        success, _ = helpers.bulk(self.client, actions, raise_on_error=False)
        logger.debug(f'Recorded {success} retrieval hits for owner {owner_id}')
        return success

    @store_operation
    def update_embedding(self, owner_id: str, record_id: str, embedding: Optional[List[float]], status: str) -> bool:
        doc: Dict[str, Any] = {'embedding_status': status}
        if embedding:
            doc['embedding'] = embedding
        response = self.client.update(index=self.records_index, id=record_id, body={'doc': doc}, refresh=True)
        logger.debug(f'Set embedding status {status} on record {record_id} for owner {owner_id}')
        return response.get('result') in ('updated', 'noop')

    @store_operation
    def pending_embeddings(self, limit: int = 20) -> List[MemoryRecord]:
        return self._search_records([{'term': {'embedding_status': EMBEDDING_PENDING}}],
                                    limit,
                                    sort=[{'created_at': {'order': 'asc'}}])

    # Category budgets

    def _budget_id(self, owner_id: str, category: str) -> str:
        return f'{owner_id}:{category}'

    @store_operation
    def get_category_budget(self, owner_id: str, category: str, max_tokens: int) -> CategoryBudget:
        try:
            response = self.client.get(index=self.budget_index, id=self._budget_id(owner_id, category))
            tokens_used = int(response['_source'].get('tokens_used', 0))
        except NotFoundError:
            tokens_used = 0
        return CategoryBudget(owner_id=owner_id, category=category, tokens_used=tokens_used, max_tokens=max_tokens)

    @store_operation
    def adjust_category_budget(self, owner_id: str, category: str, delta: int, max_tokens: int) -> CategoryBudget:
        body = {
            'script': {
                'lang': 'painless',
                'source': 'ctx._source.tokens_used += params.delta; ctx._source.max_tokens = params.max_tokens;',
                'params': {
                    'delta': delta,
                    'max_tokens': max_tokens
                }
            },
            'upsert': {
                'owner_id': owner_id,
                'category': category,
                'tokens_used': delta,
                'max_tokens': max_tokens
            }
        }
        response = self.client.update(index=self.budget_index,
                                      id=self._budget_id(owner_id, category),
                                      body=body,
                                      refresh=True,
                                      _source=True)
        tokens_used = int(response.get('get', {}).get('_source', {}).get('tokens_used', delta))
        return CategoryBudget(owner_id=owner_id, category=category, tokens_used=tokens_used, max_tokens=max_tokens)

    @store_operation
    def set_category_budget(self, owner_id: str, category: str, tokens_used: int, max_tokens: int) -> CategoryBudget:
        self.client.index(index=self.budget_index,
                          id=self._budget_id(owner_id, category),
                          body={
                              'owner_id': owner_id,
                              'category': category,
                              'tokens_used': tokens_used,
                              'max_tokens': max_tokens
                          },
                          refresh=True)
        return CategoryBudget(owner_id=owner_id, category=category, tokens_used=tokens_used, max_tokens=max_tokens)

    @store_operation
    def sum_category_tokens(self, owner_id: str, category: str) -> int:
        body = {
            'size': 0,
            'query': {
                'bool': {
                    'filter': self._owner_filters(owner_id, category)
                }
            },
            'aggs': {
                'tokens': {
                    'sum': {
                        'field': 'token_count'
                    }
                }
            }
        }
        response = self.client.search(index=self.records_index, body=body)
        return int(response['aggregations']['tokens']['value'] or 0)

    # Dynamic categories

    @store_operation
    def list_dynamic_categories(self, owner_id: str) -> List[Category]:
        body = {'size': 50, 'query': {'term': {'owner_id': owner_id}}}
        response = self.client.search(index=self.category_index, body=body)
        return [Category.from_document(hit['_source']) for hit in response['hits']['hits']]

    @store_operation
    def save_dynamic_category(self, owner_id: str, category: Category) -> None:
        self.client.index(index=self.category_index,
                          id=f'{owner_id}:{category.name}',
                          body=category.to_document(owner_id),
                          refresh=True)
        logger.info(f'Saved dynamic category {category.name} for owner {owner_id}')

    def cleanup(self) -> bool:
        """
        Delete all memory indices.

        Returns:
            True if cleanup was successful
        """
        try:
            for index_name in (self.records_index, self.budget_index, self.category_index):
                if self.client.indices.exists(index=index_name):
                    self.client.indices.delete(index=index_name)
                    logger.info(f'Deleted index: {index_name}')
                else:
                    logger.info(f'Index {index_name} does not exist')
            return True

        except OpenSearchException as e:
            logger.error(f'Error during OpenSearch cleanup: {e}')
            raise OpenSearchError(f'Failed to cleanup OpenSearch: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.records_index)
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
