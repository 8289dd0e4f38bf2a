from unittest.mock import Mock, patch

import pytest
import requests
from botocore.exceptions import ClientError

from context_router.utils.bedrock_llm import BedrockLLM, BedrockLLMError
from context_router.utils.config import BedrockLLMConfig, ProjectSystemConfig
from context_router.utils.health_check import get_health_status
from context_router.utils.project_system_client import ProjectSystemClient, ProjectSystemError

from .conftest import FakeProjectSystemClient


@pytest.fixture
def ps_config():
    return ProjectSystemConfig(base_url='https://projects.example.com/api/', api_key='secret', timeout=2.0,
                               retry_attempts=2)


@pytest.fixture
def llm_config():
    return BedrockLLMConfig(region='us-east-1', model_id='test-model', max_tokens=100, temperature=0.1,
                            retry_attempts=2, retry_delay=0.0, connect_timeout=1, read_timeout=1)


def response(payload, status=200):
    resp = Mock()
    resp.json.return_value = payload
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f'{status} error')
    return resp


@pytest.fixture
def session():
    session = Mock()
    session.headers = {}
    return session


def test_client_requires_base_url():
    with pytest.raises(ProjectSystemError):
        ProjectSystemClient(ProjectSystemConfig(base_url='', api_key='', timeout=1.0, retry_attempts=1))


def test_client_sends_auth_and_timeout(ps_config, session):
    session.get.return_value = response({'projects': [{'id': 'p1'}, 'junk']})
    client = ProjectSystemClient(ps_config, session=session)

    assert client.list_projects() == [{'id': 'p1'}]
    assert session.headers['Authorization'] == 'Bearer secret'
    session.get.assert_called_once_with('https://projects.example.com/api/projects', params=None, timeout=2.0)


def test_search_and_hash_status_params(ps_config, session):
    session.get.side_effect = [response([{'id': 'p2'}]), response({'p1': {'hash': 'h1'}})]
    client = ProjectSystemClient(ps_config, session=session)

    assert client.search_projects('blue paint') == [{'id': 'p2'}]
    assert client.hash_status('data') == {'p1': {'hash': 'h1'}}
    assert session.get.call_args_list[0][1]['params'] == {'q': 'blue paint'}
    assert session.get.call_args_list[1][1]['params'] == {'drill_down': 'data'}


@patch('context_router.utils.project_system_client.time.sleep')
def test_connection_errors_are_retried(mock_sleep, ps_config, session):
    session.get.side_effect = [requests.ConnectionError('refused'), response({'id': 'p1', 'name': 'Deck'})]
    client = ProjectSystemClient(ps_config, session=session)

    assert client.get_project('p1') == {'id': 'p1', 'name': 'Deck'}
    assert session.get.call_count == 2
    mock_sleep.assert_called_once()


@patch('context_router.utils.project_system_client.time.sleep')
def test_failures_raise_project_system_error(mock_sleep, ps_config, session):
    client = ProjectSystemClient(ps_config, session=session)

    session.get.side_effect = requests.Timeout('slow')
    with pytest.raises(ProjectSystemError):
        client.list_projects()

    session.get.side_effect = None
    session.get.return_value = response({}, status=503)
    with pytest.raises(ProjectSystemError):
        client.get_project('p1')

    bad_json = response(None)
    bad_json.json.side_effect = ValueError('not json')
    session.get.return_value = bad_json
    with pytest.raises(ProjectSystemError):
        client.get_resource('data/p1/content')

    assert client.health_check() is False


def stream(*chunks):
    events = [{'contentBlockDelta': {'delta': {'text': chunk}}} for chunk in chunks]
    events.append({'metadata': {'usage': {'inputTokens': 5, 'outputTokens': 2}, 'metrics': {'latencyMs': 10}}})
    return {'stream': events}


def test_llm_streams_text_and_usage(llm_config):
    runtime = Mock()
    runtime.converse_stream.return_value = stream('{"ok": ', 'true}')
    llm = BedrockLLM(llm_config, client=runtime)

    text, usage = llm.generate_response([{'role': 'user', 'content': [{'text': 'hi'}]}], 'system')

    assert text == '{"ok": true}'
    assert usage == {'inputTokens': 5, 'outputTokens': 2, 'latencyMs': 10}
    kwargs = runtime.converse_stream.call_args[1]
    assert kwargs['modelId'] == 'test-model'
    assert kwargs['inferenceConfig'] == {'maxTokens': 100, 'temperature': 0.1}


@patch('context_router.utils.bedrock_llm.time.sleep')
def test_llm_retries_then_raises(mock_sleep, llm_config):
    runtime = Mock()
    error = ClientError({'Error': {'Code': 'ThrottlingException', 'Message': 'slow down'}}, 'ConverseStream')
    runtime.converse_stream.side_effect = [error, stream('OK')]
    llm = BedrockLLM(llm_config, client=runtime)

    assert llm.complete('hi', 'system') == 'OK'

    runtime.converse_stream.side_effect = error
    with pytest.raises(BedrockLLMError):
        llm.complete('hi', 'system')
    assert llm.health_check() is False


def test_health_status_reports_each_component():
    llm = Mock()
    llm.health_check.return_value = True
    project_system = FakeProjectSystemClient()
    project_system.unavailable = True

    status = get_health_status(llm=llm, project_system=project_system)

    assert status['bedrock_llm']['healthy'] is True
    assert status['project_system']['healthy'] is False
