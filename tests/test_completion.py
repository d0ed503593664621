from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import OpenAIError

from agent_sandbox.completion import CompletionProvider, OpenRouterProvider, coerce_output, extract_json
from agent_sandbox.errors import CompletionError
from agent_sandbox.models import ModelConfig

from conftest import ScriptedProvider

# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "text, expected",
    [
        ('{"a": 1}', {"a": 1}),
        ('```json\n{"a": [1, 2]}\n```', {"a": [1, 2]}),
        ('Sure! Here it is: {"a": "x}y"} hope that helps', {"a": "x}y"}),
        ("[1, 2, 3]", [1, 2, 3]),
        ('{"text": "line one\nline two"}', {"text": "line one\nline two"}),
    ],
)
def test_extract_json(text, expected):
    assert extract_json(text) == expected


@pytest.mark.parametrize("text", ["no json at all", "{broken: json}"])
def test_extract_json_failure(text):
    with pytest.raises(ValueError):
        extract_json(text)


def test_coerce_output():
    assert coerce_output('{"result": 4}') == {"result": 4}
    assert coerce_output("plain text") == "plain text"
    assert coerce_output("{not json") == "{not json"
    assert coerce_output({"already": "parsed"}) == {"already": "parsed"}


# ---------------------------------------------------------------------------
# OpenRouterProvider
# ---------------------------------------------------------------------------


def _response(content):
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    response = MagicMock()
    response.choices = [choice]
    return response


def test_scripted_provider_satisfies_protocol():
    assert isinstance(ScriptedProvider(), CompletionProvider)
    assert isinstance(OpenRouterProvider(api_key="k"), CompletionProvider)


@pytest.mark.asyncio
async def test_missing_api_key_is_a_completion_error(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    provider = OpenRouterProvider()
    with pytest.raises(CompletionError, match="OPENROUTER_API_KEY"):
        await provider.complete("hi", ModelConfig(model="m"))


@pytest.mark.asyncio
async def test_schema_requests_json_mode():
    provider = OpenRouterProvider(api_key="k")
    create = AsyncMock(return_value=_response('  {"ok": true}  '))
    client = MagicMock()
    client.chat.completions.create = create
    provider._client = client

    text = await provider.complete("plan it", ModelConfig(model="m", temperature=0.2), {"type": "object"})

    assert text == '{"ok": true}'
    kwargs = create.call_args.kwargs
    assert kwargs["model"] == "m"
    assert kwargs["temperature"] == 0.2
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["messages"][0]["role"] == "system"
    assert kwargs["messages"][-1] == {"role": "user", "content": "plan it"}


@pytest.mark.asyncio
async def test_openai_errors_are_wrapped():
    provider = OpenRouterProvider(api_key="k")
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=OpenAIError("502 bad gateway"))
    provider._client = client

    with pytest.raises(CompletionError, match="502"):
        await provider.complete("x", ModelConfig(model="m"))


@pytest.mark.asyncio
async def test_empty_completion_is_an_error():
    provider = OpenRouterProvider(api_key="k")
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_response(None))
    provider._client = client

    with pytest.raises(CompletionError, match="empty"):
        await provider.complete("x", ModelConfig(model="m"))
