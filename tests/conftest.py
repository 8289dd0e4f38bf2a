"""
Shared fixtures: fakes for the extraction backend and the external project system, a manual
clock and in-memory stores.
"""

import copy
from typing import Any, Dict, List, Optional

import pytest

from context_router.models.core import EntityRecord, Extraction
from context_router.services.entity_extraction import EntityExtractor
from context_router.services.graph_builder import RelationshipGraphBuilder
from context_router.utils.config import ConversationConfig, RouterConfig
from context_router.utils.project_system_client import ProjectSystemError
from context_router.utils.stores import MemoryStore
from context_router.utils.timestamp_utils import ManualClock

DOMAIN = 'construction'
START = 1_700_000_000.0


class FakeExtractor(EntityExtractor):
    """Returns canned extractions keyed by query text."""

    def __init__(self, responses: Optional[Dict[str, Extraction]] = None):
        self.responses = responses or {}
        self.calls: List[str] = []

    def extract(self, query: str, domain: str) -> Extraction:
        self.calls.append(query)
        return copy.deepcopy(self.responses.get(query, Extraction()))


class FakeProjectSystemClient:
    """In-memory stand-in for the external project system that records every call."""

    def __init__(self,
                 projects: Optional[List[Dict[str, Any]]] = None,
                 details: Optional[Dict[str, Dict[str, Any]]] = None,
                 search_results: Optional[Dict[str, List[Dict[str, Any]]]] = None,
                 resources: Optional[Dict[str, Any]] = None,
                 root: Optional[Dict[str, Any]] = None,
                 sections: Optional[Dict[str, Dict[str, Any]]] = None):
        self.projects = projects or []
        self.details = details or {}
        self.search_results = search_results or {}
        self.resources = resources or {}
        self.root = root or {}
        self.sections = sections or {}
        self.failing: set = set()
        self.unavailable = False
        self.calls: List[tuple] = []

    def _call(self, name: str, arg: Any = None) -> None:
        self.calls.append((name, arg))
        if self.unavailable or arg in self.failing:
            raise ProjectSystemError(f'{name} failed for {arg}')

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def list_projects(self) -> List[Dict[str, Any]]:
        self._call('list_projects')
        return copy.deepcopy(self.projects)

    def get_project(self, project_id: str) -> Dict[str, Any]:
        self._call('get_project', project_id)
        if project_id in self.details:
            return copy.deepcopy(self.details[project_id])
        return next((dict(p) for p in self.projects if p.get('id') == project_id), {})

    def search_projects(self, term: str) -> List[Dict[str, Any]]:
        self._call('search_projects', term)
        return copy.deepcopy(self.search_results.get(term, []))

    def hash_status(self, query: Optional[str] = None) -> Dict[str, Any]:
        self._call('hash_status', query)
        if query is None:
            return copy.deepcopy(self.root)
        return copy.deepcopy(self.sections.get(query, {}))

    def get_resource(self, path: str) -> Any:
        self._call('get_resource', path)
        return copy.deepcopy(self.resources.get(path, {}))

    def health_check(self) -> bool:
        return not self.unavailable


def make_record(record_id: str,
                entities: Dict[str, List[Dict[str, Any]]],
                relationships: Optional[List[Dict[str, Any]]] = None,
                domain: str = DOMAIN,
                confidence: float = 0.9) -> EntityRecord:
    return EntityRecord(id=record_id,
                        conversation_id='conv-1',
                        domain=domain,
                        timestamp='2024-01-01T00:00:00+00:00',
                        entities=entities,
                        relationships=relationships or [],
                        metadata={'confidence': confidence})


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def entity_store():
    return MemoryStore()


@pytest.fixture
def add_records(entity_store):
    def _add(*records: EntityRecord) -> None:
        for record in records:
            entity_store.set(record.id, record.to_dict())
    return _add


@pytest.fixture
def graph_builder(entity_store, clock):
    return RelationshipGraphBuilder(entity_store, clock=clock, cache_ttl_seconds=300)


@pytest.fixture
def router_config():
    return RouterConfig(similarity_threshold=0.6,
                        learning_threshold=0.7,
                        routing_timeout_seconds=5.0,
                        query_cache_ttl_seconds=600)


@pytest.fixture
def conversation_config():
    return ConversationConfig(session_timeout_minutes=30, memory_cap=10, history_cap=50, pending_max_age_days=30)


@pytest.fixture
def deck_projects():
    return [
        {'id': 'p1', 'name': 'John Green Deck Project', 'clientName': 'John Green'},
        {'id': 'p2', 'name': 'John Green Deck Extension', 'clientName': 'John Green'},
        {'id': 'p3', 'name': 'Maple Street Kitchen', 'clientName': 'Sarah Lee'},
    ]


@pytest.fixture
def deck_client(deck_projects):
    details = {
        'p1': {'id': 'p1', 'name': 'John Green Deck Project', 'clientName': 'John Green', 'status': 'active',
               'location': '12 Oak Lane', 'timeline': 'June - July', 'materials': ['screws', 'lumber']},
        'p2': {'id': 'p2', 'name': 'John Green Deck Extension', 'clientName': 'John Green', 'status': 'planned',
               'location': '12 Oak Lane'},
        'p3': {'id': 'p3', 'name': 'Maple Street Kitchen', 'clientName': 'Sarah Lee', 'status': 'active',
               'location': '8 Maple Street', 'materials': ['paint']},
    }
    return FakeProjectSystemClient(projects=deck_projects, details=details)
