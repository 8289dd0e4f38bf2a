import pytest

from context_router.models.conversation import COMPLETED, PENDING
from context_router.models.core import Intent, MissingInfo, QueryResult, ResolvedContext
from context_router.services.pending_requests import PendingRequestManager, is_ready_for_downstream, project_context
from context_router.utils.stores import JsonFileStore, MemoryStore

AMOUNT_MISSING = MissingInfo(type='amount', required_entity='amount', question='How much was it?')
PROJECT_MISSING = MissingInfo(type='project_context', required_entity='project', question='Which project?')


def query_result(query, entities=None, intent='add_charge'):
    return QueryResult(original_query=query,
                       intent=Intent(type=intent, confidence=0.9),
                       resolved_context=ResolvedContext(entities=entities or {}))


@pytest.fixture
def manager(clock):
    return PendingRequestManager(MemoryStore(), MemoryStore(), clock=clock)


@pytest.fixture
def conversation(manager):
    return manager.get_conversation('u1', 's1')


@pytest.fixture
def screws_request(manager, conversation):
    original = query_result('add a charge for screws at the Oak Lane site',
                            {'items': [{'name': 'screws'}], 'locations': [{'name': 'Oak Lane site'}]})
    return manager.create(conversation.id, original, AMOUNT_MISSING)


def test_get_conversation_defaults_to_user_conversation(manager):
    conversation = manager.get_conversation('u1')

    assert conversation.id == 'u1-default'
    assert manager.get_conversation('u1').created_at == conversation.created_at
    with pytest.raises(ValueError):
        manager.get_conversation('')


def test_create_registers_request_on_conversation(manager, screws_request):
    assert screws_request.id.startswith('req-')
    assert screws_request.status == PENDING
    assert screws_request.attempts == 1
    assert screws_request.question_asked == 'How much was it?'
    assert screws_request.project_context['project_name'] == 'Oak Lane site'
    assert manager.get_conversation('u1', 's1').pending_request_ids == [screws_request.id]
    assert manager.get(screws_request.id).original_query == 'add a charge for screws at the Oak Lane site'


def test_create_for_unknown_conversation_raises(manager):
    with pytest.raises(ValueError):
        manager.create('nope', query_result('x'), AMOUNT_MISSING)


def test_unrelated_query_leaves_request_pending(manager, conversation, screws_request):
    completed = manager.on_new_query(conversation.id, 'how is the weather', query_result('how is the weather'))

    assert completed is None
    request = manager.get(screws_request.id)
    assert request.status == PENDING
    assert request.attempts == 2
    assert manager.get_conversation('u1', 's1').pending_request_ids == [screws_request.id]


def test_amount_follow_up_completes_request(manager, conversation, screws_request, clock):
    amount = {'value': 42.5, 'currency': 'USD', 'confidence': 0.9}
    clock.advance(120)

    completed = manager.on_new_query(conversation.id, 'it was $42.50', query_result('it was $42.50', {'amounts': [amount]}))

    assert completed.id == screws_request.id
    assert completed.status == COMPLETED
    assert completed.completion['provided_info']['amount'] == amount
    assert completed.completion['combined_data']['amounts'] == [amount]
    assert completed.completion['ready_for_downstream'] is True
    assert completed.completed_at == clock.now()
    assert manager.get_conversation('u1', 's1').pending_request_ids == []
    assert manager.get(screws_request.id).status == COMPLETED


def test_at_most_one_request_completed_per_query(manager, conversation, screws_request):
    second = manager.create(conversation.id, query_result('add a charge for nails'), AMOUNT_MISSING)

    completed = manager.on_new_query(conversation.id, '$10', query_result('$10', {'amounts': [{'value': 10}]}))

    assert completed.id == screws_request.id
    assert manager.get(second.id).status == PENDING
    assert manager.get_conversation('u1', 's1').pending_request_ids == [second.id]


def test_project_follow_up_completes_project_context(manager, conversation):
    request = manager.create(conversation.id,
                             query_result('need more nails', {'items': [{'name': 'nails'}]}, intent='material_request'),
                             PROJECT_MISSING)

    completed = manager.on_new_query(conversation.id, 'for the Deck', query_result('for the Deck', {'projects': [{'name': 'Deck'}]}))

    assert completed.id == request.id
    assert completed.completion['provided_info'] == {'project': {'name': 'Deck'}}
    assert completed.completion['ready_for_downstream'] is False


def test_cleanup_is_idempotent_and_keeps_pending(manager, conversation, screws_request, clock):
    other = manager.get_conversation('u2', 's2')
    done = manager.create(other.id, query_result('charge it'), AMOUNT_MISSING)
    manager.on_new_query(other.id, '$5', query_result('$5', {'amounts': [{'value': 5}]}))
    clock.advance(31 * 24 * 3600)

    removed = manager.cleanup(30 * 24 * 3600)

    assert removed == 2  # Conversation s2 and its completed request
    assert manager.cleanup(30 * 24 * 3600) == 0
    assert manager.get(done.id) is None
    assert manager.get(screws_request.id).status == PENDING
    assert manager.conversations.get('s1') is not None


def test_list_and_summary(manager, conversation, screws_request, clock):
    other = manager.get_conversation('u2', 's2')
    clock.advance(2 * 3600)
    later = manager.create(other.id, query_result('charge John', {'people': [{'name': 'John'}]}), AMOUNT_MISSING)

    assert [r.id for r in manager.list_requests()] == [later.id, screws_request.id]
    assert [r.id for r in manager.list_requests(descending=False)] == [screws_request.id, later.id]
    assert [r.id for r in manager.list_requests(user_id='u2')] == [later.id]
    assert [r.id for r in manager.pending_for_project('oak lane')] == [screws_request.id]

    summary = manager.summary()
    assert summary['pending'] == 2
    assert summary['by_project'] == {'Oak Lane site': [screws_request.id], "John's project": [later.id]}
    assert summary['by_age']['recent'] == [later.id]
    assert summary['by_age']['today'] == [screws_request.id]
    assert summary['oldest_pending']['id'] == screws_request.id


def test_requests_survive_restart(tmp_path, clock):
    conversations = str(tmp_path / 'conversations.json')
    requests = str(tmp_path / 'pending-requests.json')
    manager = PendingRequestManager(JsonFileStore(conversations), JsonFileStore(requests), clock=clock)
    conversation = manager.get_conversation('u1', 's1')
    request = manager.create(conversation.id, query_result('charge it'), AMOUNT_MISSING)

    reloaded = PendingRequestManager(JsonFileStore(conversations), JsonFileStore(requests), clock=clock)

    assert reloaded.get(request.id).missing_info == AMOUNT_MISSING.to_dict()
    assert reloaded.get_conversation('u1', 's1').pending_request_ids == [request.id]


def test_ready_for_downstream_and_project_context():
    assert is_ready_for_downstream({'amounts': [{}], 'items': [{}], 'locations': [{}]})
    assert not is_ready_for_downstream({'amounts': [{}], 'items': [{}]})
    assert project_context({'people': [{'name': 'Dave'}]})['project_name'] == "Dave's project"
    assert project_context({})['project_name'] is None
