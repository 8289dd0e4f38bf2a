import pytest

from context_router.services.hash_sync import HashStatusSync
from context_router.services.smart_router import SmartRouter, normalize_query
from context_router.utils.project_system_client import ProjectSystemError
from context_router.utils.stores import MemoryStore

from .conftest import DOMAIN, FakeProjectSystemClient, make_record

DECK_QUERY = "I bought screws for John's deck"


@pytest.fixture
def query_cache():
    return MemoryStore()


@pytest.fixture
def make_router(graph_builder, query_cache, clock, router_config):
    def _make(client=None, hash_sync=None):
        return SmartRouter(graph_builder, query_cache, client=client, hash_sync=hash_sync, clock=clock,
                           router_config=router_config, domain=DOMAIN)
    return _make


@pytest.fixture
def john(add_records):
    add_records(make_record('r1', {'people': [{'name': 'John', 'confidence': 0.9}]}))


def test_deck_query_connects_local_person_to_external_projects(make_router, deck_client, john):
    result = make_router(deck_client).route(DECK_QUERY)

    matched = {p['name']: p['match_confidence'] for p in result.external.projects}
    assert set(matched) == {'John Green Deck Project', 'John Green Deck Extension'}
    assert all(score >= 0.6 for score in matched.values())
    assert result.external.method == 'mention_match'
    assert result.overall_confidence > 0
    assert any(c['entity'] == 'John' and c['project'] in matched for c in result.connections.entity_connections)


def test_local_stage_records_knowledge_gaps(make_router, deck_client, john):
    local = make_router(deck_client).check_local_knowledge(DECK_QUERY)

    assert [e['name'] for e in local.entities] == ['John']
    assert {gap['name'] for gap in local.knowledge_gaps} == {'screws', 'deck'}
    assert local.confidence == pytest.approx(0.9)


def test_drill_down_fetches_one_level_per_project(make_router, deck_client, john):
    result = make_router(deck_client).route(DECK_QUERY)

    assert result.drill_down.fetches == 2
    assert deck_client.count('get_resource') == 0
    levels = {r['project']['id']: (r['level'], r['relevant_to_query']) for r in result.drill_down.results}
    assert levels == {'p1': ('detail', True), 'p2': ('detail', False)}
    assert {c['location'] for c in result.connections.spatial_connections} == {'12 Oak Lane'}
    assert [c['timeline'] for c in result.connections.temporal_connections] == ['June - July']


def test_drill_down_escalates_to_content_when_detail_is_bare(make_router, john):
    client = FakeProjectSystemClient(projects=[{'id': 'p1', 'name': 'John Green Deck Project', 'clientName': 'John Green'}],
                                     details={'p1': {'id': 'p1', 'name': 'John Green Deck Project'}},
                                     resources={'data/p1/content': {'content': 'Cedar boards, stainless screws'}})

    result = make_router(client).route(DECK_QUERY)

    drill = result.drill_down.results[0]
    assert drill['level'] == 'content'
    assert drill['details'] == {'content': 'Cedar boards, stainless screws'}
    assert result.drill_down.fetches == 2


def test_overall_confidence_rewards_contributing_stages(make_router, deck_client, john):
    result = make_router(deck_client).route(DECK_QUERY)

    # local 0.9, external 0.9, drill 0.8, connections 0.75 -> mean 0.8375 + 0.3, capped
    assert result.overall_confidence == 1.0


def test_nothing_found_scores_zero(make_router):
    client = FakeProjectSystemClient()

    result = make_router(client).route('what is happening')

    assert result.overall_confidence == 0.0
    assert result.learned is False


def test_confident_result_is_learned_and_cached(make_router, deck_client, graph_builder, query_cache, john):
    router = make_router(deck_client)
    first = router.route(DECK_QUERY)

    assert first.learned is True
    graph = graph_builder.get_graph(DOMAIN)
    edges = {(e.source, e.type, e.target) for e in graph.edges}
    assert ('person:john green', 'owns', 'project:john green deck project') in edges
    assert ('project:john green deck project', 'located_at', 'location:12 oak lane') in edges
    assert query_cache.get(normalize_query(DECK_QUERY))['confidence'] == first.overall_confidence

    calls = len(deck_client.calls)
    second = router.route("I bought  screws for JOHN'S deck")
    assert second.from_cache is True
    assert len(deck_client.calls) == calls


def test_learning_skips_relations_already_known(make_router, deck_client, entity_store, john):
    router = make_router(deck_client)
    router.route(DECK_QUERY)
    learned = [key for key in entity_store.keys() if key.startswith('learned-')]
    assert len(learned) == 1

    router.query_cache.sweep(lambda _key, _value: True)
    router.graph_builder.invalidate()
    router.route(DECK_QUERY)

    assert len([key for key in entity_store.keys() if key.startswith('learned-')]) == 1


def test_query_cache_expires(make_router, deck_client, clock, router_config, john):
    router = make_router(deck_client)
    router.route(DECK_QUERY)

    clock.advance(router_config.query_cache_ttl_seconds)
    result = router.route(DECK_QUERY)

    assert result.from_cache is False


def test_mention_matches_inside_longer_project_names(make_router):
    client = FakeProjectSystemClient(projects=[{'id': 'p4', 'name': 'Johnsons Kitchen', 'clientName': 'Mary Johnsons'}])

    result = make_router(client).route('What is the status of Johnson work')

    assert [p['id'] for p in result.external.projects] == ['p4']
    assert result.external.projects[0]['match_confidence'] == pytest.approx(0.8)
    assert result.external.method == 'mention_match'


def test_content_search_fallback_on_knowledge_gap(make_router):
    client = FakeProjectSystemClient(projects=[{'id': 'p3', 'name': 'Maple Street Kitchen', 'clientName': 'Sarah Lee'}],
                                     details={'p3': {'id': 'p3', 'status': 'active', 'location': '8 Maple Street'}},
                                     search_results={'blue paint stored': [{'id': 'p3', 'name': 'Maple Street Kitchen'}]})

    result = make_router(client).route('where is the blue paint stored')

    assert result.external.method == 'content_search'
    assert result.external.projects[0]['match_confidence'] == pytest.approx(0.6)
    assert client.count('search_projects') == 1


def test_external_failure_degrades_to_local_only(make_router, add_records):
    add_records(make_record('r1', {
        'people': [{'name': 'John', 'relationships': [{'type': 'owns', 'target': 'Porch', 'target_type': 'project'}]}],
        'projects': [{'name': 'Porch'}],
    }))
    client = FakeProjectSystemClient()
    client.unavailable = True

    result = make_router(client).route(DECK_QUERY)

    assert result.metadata['external_unavailable'] is True
    assert result.external.projects == []
    assert result.drill_down.results[0]['type'] == 'entity_drill'
    assert result.local.relationships[0]['target'] == 'Porch'


def test_local_only_mode_without_client(make_router, john):
    result = make_router().route(DECK_QUERY)

    assert result.metadata['local_only'] is True
    assert result.external.projects == []
    assert result.local.entities[0]['name'] == 'John'


def test_listing_goes_through_hash_sync(make_router, deck_projects, clock, john):
    client = FakeProjectSystemClient(
        root={'hash': 'r1', 'data': {'hash': 'd1'}},
        sections={'data': {p['id']: {'hash': f"h-{p['id']}"} for p in deck_projects}},
        details={p['id']: dict(p, status='active') for p in deck_projects},
    )
    hash_sync = HashStatusSync(client, MemoryStore(), clock=clock)

    result = make_router(client, hash_sync).route(DECK_QUERY)

    assert client.count('list_projects') == 0
    assert {p['id'] for p in result.external.projects} == {'p1', 'p2'}
    # Drill detail comes from the hash cache, not a second fetch
    assert client.count('get_project') == len(deck_projects)


def test_sync_records_project_owners(make_router, deck_projects, clock, graph_builder):
    client = FakeProjectSystemClient(
        root={'hash': 'r1', 'data': {'hash': 'd1'}},
        sections={'data': {'p1': {'hash': 'h1'}}},
        details={'p1': {'id': 'p1', 'name': 'John Green Deck Project', 'clientName': 'John Green',
                        'location': '12 Oak Lane'}},
    )
    router = make_router(client, HashStatusSync(client, MemoryStore(), clock=clock))

    status = router.check_sync_status()
    result = router.sync()

    assert status['needs_sync'] is True
    assert result['learned_records'] == 1
    edges = {(e.source, e.type, e.target) for e in graph_builder.get_graph(DOMAIN).edges}
    assert ('person:john green', 'owns', 'project:john green deck project') in edges
    assert router.check_sync_status()['needs_sync'] is False


def test_sync_without_external_system_raises(make_router):
    with pytest.raises(ProjectSystemError):
        make_router().sync()
