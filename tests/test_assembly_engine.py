import threading
from dataclasses import replace
from unittest.mock import Mock

import pytest

from context_router.models.core import Extraction
from context_router.services.assembly_engine import ContextAssemblyEngine, ContextAssemblyError, RelationshipInferenceStrategy
from context_router.services.conversation_store import ConversationStateStore
from context_router.services.pending_requests import PendingRequestManager
from context_router.services.query_parser import QueryParser
from context_router.services.query_processor import QueryProcessor
from context_router.services.reference_resolver import ReferenceResolver
from context_router.services.smart_router import SmartRouter
from context_router.utils.config import GraphConfig, load_config
from context_router.utils.stores import MemoryStore

from .conftest import DOMAIN, FakeExtractor, make_record

DECK_QUERY = "I bought screws for John's deck"

EXTRACTIONS = {
    "add a charge for screws at John's deck": Extraction(
        entities={'items': [{'name': 'screws', 'confidence': 0.9}], 'people': [{'name': "John's", 'confidence': 0.8}]},
        intent_indicators=['add charge'], confidence=0.8),
    'it was $30': Extraction(entities={'amounts': [{'value': 30, 'currency': 'USD', 'confidence': 0.9}]}, confidence=0.8),
    'add a $50 charge here': Extraction(
        entities={'amounts': [{'value': 50, 'confidence': 0.9}], 'items': [{'name': 'screws', 'confidence': 0.9}]},
        confidence=0.9),
    'add a $20 charge at Oak Lane': Extraction(
        entities={'amounts': [{'value': 20, 'confidence': 0.9}], 'locations': [{'name': 'Oak Lane', 'confidence': 0.8}]},
        confidence=0.9),
    DECK_QUERY: Extraction(entities={'items': [{'name': 'screws', 'confidence': 0.9}],
                                     'people': [{'name': "John's", 'confidence': 0.8}]}, confidence=0.8),
}


@pytest.fixture
def app_config(router_config, conversation_config):
    return replace(load_config(),
                   router=router_config,
                   conversation=conversation_config,
                   graph=GraphConfig(domain=DOMAIN, cache_ttl_seconds=300))


@pytest.fixture
def make_engine(graph_builder, clock, app_config, conversation_config, router_config, add_records):
    add_records(make_record('r1', {'people': [{'name': 'John', 'confidence': 0.9}]}))

    def _make(client=None, router=None, processor=None):
        if processor is None:
            parser = QueryParser(FakeExtractor(EXTRACTIONS), domain=DOMAIN, clock=clock)
            processor = QueryProcessor(parser, ReferenceResolver(graph_builder, domain=DOMAIN))
        if router is None:
            router = SmartRouter(graph_builder, MemoryStore(), client=client, clock=clock,
                                 router_config=router_config, domain=DOMAIN)
        return ContextAssemblyEngine(processor=processor,
                                     conversation_store=ConversationStateStore(MemoryStore(), clock=clock,
                                                                               conversation_config=conversation_config),
                                     pending_requests=PendingRequestManager(MemoryStore(), MemoryStore(), clock=clock),
                                     router=router,
                                     clock=clock,
                                     app_config=app_config)
    return _make


def test_missing_amount_is_completed_by_follow_up(make_engine):
    engine = make_engine()

    first = engine.process_query("add a charge for screws at John's deck", 'u1', 's1')
    assert first.query_result.missing_info.type == 'amount'
    assert first.pending_request is not None
    assert engine.conversation_store.get('s1').pending_request_ids == [first.pending_request.id]

    second = engine.process_query('it was $30', 'u1', 's1')

    assert second.completed_request.id == first.pending_request.id
    assert second.completed_request.completion['provided_info']['amount']['value'] == 30
    assert second.pending_request is None
    assert second.response['primary_response'].startswith('Completed your earlier request')
    assert engine.conversation_store.get('s1').pending_request_ids == []


def test_invalid_input_raises_value_error(make_engine):
    engine = make_engine()

    with pytest.raises(ValueError):
        engine.process_query('   ', 'u1')
    with pytest.raises(ValueError):
        engine.process_query('add a $50 charge here', '')


def test_intelligence_level_and_confidence(make_engine):
    engine = make_engine()

    result = engine.process_query('add a $50 charge here', 'u1', 's1', current_location='Site A', current_project='Deck')

    intelligence = result.intelligence
    assert result.query_result.actions[0]['location'] == 'Site A'
    assert [(e['type'], e['source'], e['target']) for e in intelligence.edges] == [('costs', 'amount:$50', 'item:screws')]
    assert intelligence.financial_context['total_value'] == 50
    assert [i['type'] for i in intelligence.insights] == ['financial', 'relational']
    assert intelligence.intelligence_level == 'advanced'
    assert intelligence.confidence == pytest.approx(0.86)
    assert 'I can help track this $50 expense in your project budget.' in result.response['recommendations']


def test_location_discrepancy_is_inferred(make_engine):
    engine = make_engine()

    result = engine.process_query('add a $20 charge at Oak Lane', 'u1', 's1', current_location='Site A')

    inferences = result.intelligence.spatial_context['spatial_inferences']
    assert [(i['type'], i['confidence']) for i in inferences] == [('location_discrepancy', 0.6)]


def test_session_context_carries_between_queries(make_engine):
    engine = make_engine()
    engine.process_query('add a $20 charge at Oak Lane', 'u1', 's1', current_location='Site A')

    result = engine.process_query('add a $50 charge here', 'u1', 's1')

    assert result.intelligence.spatial_context['current_location'] == 'Site A'
    sources = {e['key']: e['source'] for e in result.intelligence.context_entities}
    assert sources['location:oak lane'] == 'context'
    assert sources['amount:$50'] == 'query'
    assert engine.session_stats('s1')['query_count'] == 2


def test_expired_session_starts_over(make_engine, clock):
    engine = make_engine()
    engine.process_query('add a $20 charge at Oak Lane', 'u1', 's1', current_location='Site A')

    clock.advance(31 * 60)
    result = engine.process_query('add a $50 charge here', 'u1', 's1')

    assert result.intelligence.spatial_context['current_location'] is None
    assert engine.session_stats('s1')['query_count'] == 1


def test_routing_connects_local_and_external(make_engine, deck_client):
    engine = make_engine(client=deck_client)

    result = engine.process_query(DECK_QUERY, 'u1', 's1')

    assert result.routing.connections.entity_connections
    assert set(result.intelligence.project_context['external_projects']) == {'John Green Deck Project',
                                                                             'John Green Deck Extension'}
    assert result.metadata['routing_timed_out'] is False


def test_routing_timeout_degrades_to_local_only(make_engine, app_config):
    release = threading.Event()
    router = Mock()
    router.route.side_effect = lambda query: release.wait(5)
    engine = make_engine(router=router)
    engine.config = replace(app_config, router=replace(app_config.router, routing_timeout_seconds=0.05))

    try:
        result = engine.process_query('add a $50 charge here', 'u1', 's1')
    finally:
        release.set()
        engine.shutdown()

    assert result.routing.metadata == {'routing_timed_out': True, 'local_only': True}
    assert result.metadata['routing_timed_out'] is True
    assert result.query_result.intent.type == 'add_charge'


def test_unexpected_failure_is_wrapped(make_engine):
    processor = Mock()
    processor.process.side_effect = RuntimeError('boom')
    engine = make_engine(processor=processor)

    with pytest.raises(ContextAssemblyError):
        engine.process_query('add a $50 charge here', 'u1', 's1')


def test_cleanup_expired_sessions(make_engine, clock):
    engine = make_engine()
    engine.process_query('add a $50 charge here', 'u1', 's1')
    clock.advance(31 * 60)

    assert engine.cleanup_expired_sessions() == 1
    assert engine.session_stats('s1') is None


def test_relationship_inference_strategy_is_directional_by_rule():
    inference = RelationshipInferenceStrategy()
    person = {'key': 'person:john', 'type': 'person'}
    project = {'key': 'project:deck', 'type': 'project'}

    assert inference.infer(project, person) == {'source': 'person:john', 'target': 'project:deck', 'type': 'works_on',
                                                'confidence': 0.7, 'context': 'inferred'}
    assert inference.infer(person, {'key': 'date:today', 'type': 'date'}) is None
