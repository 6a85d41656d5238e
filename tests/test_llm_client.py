import os
from unittest.mock import MagicMock, patch

import pytest

from safetykg.errors import LLMUnavailableError
from safetykg.utils.config import LLMConfig
from safetykg.utils.llm_client import ChatClient, create_openai_client


@pytest.fixture
def mock_openai():
    with patch("safetykg.utils.llm_client.OpenAI") as mock:
        yield mock


def test_create_client_defaults(mock_openai):
    with patch.dict(os.environ, {}, clear=True):
        create_openai_client()
        mock_openai.assert_called_once()
        call_kwargs = mock_openai.call_args.kwargs
        assert call_kwargs.get("api_key") is None
        assert call_kwargs.get("base_url") is None
        assert call_kwargs.get("max_retries") == 2


def test_create_client_explicit_args(mock_openai):
    create_openai_client(
        api_key="sk-explicit", base_url="https://explicit.com", timeout=30.0, max_retries=5
    )

    call_kwargs = mock_openai.call_args.kwargs
    assert call_kwargs["api_key"] == "sk-explicit"
    assert call_kwargs["base_url"] == "https://explicit.com"
    assert call_kwargs["timeout"] == 30.0
    assert call_kwargs["max_retries"] == 5


def test_create_client_env_vars(mock_openai):
    env = {"OPENAI_API_KEY": "sk-env", "OPENAI_BASE_URL": "https://env.com"}
    with patch.dict(os.environ, env):
        create_openai_client()

        call_kwargs = mock_openai.call_args.kwargs
        assert call_kwargs["api_key"] == "sk-env"
        assert call_kwargs["base_url"] == "https://env.com"


def test_create_client_args_override_env(mock_openai):
    env = {"OPENAI_API_KEY": "sk-env", "OPENAI_BASE_URL": "https://env.com"}
    with patch.dict(os.environ, env):
        create_openai_client(api_key="sk-override", base_url="https://override.com")

        call_kwargs = mock_openai.call_args.kwargs
        assert call_kwargs["api_key"] == "sk-override"
        assert call_kwargs["base_url"] == "https://override.com"


def _response(content):
    response = MagicMock()
    choice = MagicMock()
    choice.message.content = content
    response.choices = [choice]
    return response


def test_chat_client_without_key_is_unavailable():
    with patch.dict(os.environ, {}, clear=True):
        client = ChatClient(LLMConfig(api_key=None))

        assert client.is_configured() is False
        with pytest.raises(LLMUnavailableError):
            client.complete([{"role": "user", "content": "hi"}])


def test_chat_client_creates_sdk_client_without_retries(mock_openai):
    mock_openai.return_value.chat.completions.create.return_value = _response('{"entities": []}')
    client = ChatClient(LLMConfig(api_key="sk-test", base_url="https://llm.example/v1"))

    content = client.complete([{"role": "user", "content": "hi"}])

    assert content == '{"entities": []}'
    assert mock_openai.call_args.kwargs["max_retries"] == 0
    assert mock_openai.call_args.kwargs["timeout"] == 300
    create_kwargs = mock_openai.return_value.chat.completions.create.call_args.kwargs
    assert create_kwargs["model"] == "glm-4.7"
    assert create_kwargs["max_tokens"] == 30000
    assert create_kwargs["temperature"] == 0.3


def test_chat_client_joins_list_content():
    sdk = MagicMock()
    sdk.chat.completions.create.return_value = _response([{"text": "a"}, {"text": "b"}])
    client = ChatClient(LLMConfig(api_key="sk-test"), client=sdk)

    assert client.complete([{"role": "user", "content": "hi"}]) == "a\nb"


def test_chat_client_empty_choices_returns_empty_string():
    sdk = MagicMock()
    sdk.chat.completions.create.return_value = MagicMock(choices=[])
    client = ChatClient(LLMConfig(api_key="sk-test"), client=sdk)

    assert client.complete([{"role": "user", "content": "hi"}]) == ""


def test_anthropic_provider_splits_system_prompt():
    sdk = MagicMock()
    block = MagicMock()
    block.type = "text"
    block.text = "answer"
    sdk.messages.create.return_value = MagicMock(content=[block])
    client = ChatClient(LLMConfig(provider="anthropic", api_key="sk-ant"), client=sdk)

    content = client.complete(
        [{"role": "system", "content": "rules"}, {"role": "user", "content": "question"}]
    )

    assert content == "answer"
    kwargs = sdk.messages.create.call_args.kwargs
    assert kwargs["system"] == "rules"
    assert kwargs["messages"] == [{"role": "user", "content": "question"}]
