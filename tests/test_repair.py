import pytest

from agent_sandbox.errors import CompletionError, RunCancelled
from agent_sandbox.models import AgentConfig, RetryConfig
from agent_sandbox.repair import RepairEngine
from agent_sandbox.validation import SchemaValidator

from conftest import ScriptedProvider

SCHEMA = {
    "type": "object",
    "properties": {"explanation": {"type": "string"}},
    "required": ["explanation"],
}


def _engine(replies, model_config, retry=None):
    provider = ScriptedProvider(replies)
    return RepairEngine(provider, SchemaValidator(), model_config, retry), provider


@pytest.mark.asyncio
async def test_valid_data_is_a_no_op(model_config):
    engine, provider = _engine([], model_config)
    result = await engine.repair({"explanation": "fine"}, SCHEMA)
    assert result.success
    assert result.attempts == 0
    assert result.repaired == {"explanation": "fine"}
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_repair_succeeds_on_first_attempt(model_config):
    engine, provider = _engine(['{"explanation": "2+2 is 4"}'], model_config)
    original = SchemaValidator().validate({}, SCHEMA)

    result = await engine.repair({}, SCHEMA, original.errors)

    assert result.success
    assert result.attempts == 1
    assert result.repaired == {"explanation": "2+2 is 4"}
    assert [issue.path for issue in result.original_errors] == ["explanation"]
    assert "explanation" in provider.prompts[0]
    assert provider.schemas[0] == SCHEMA


@pytest.mark.asyncio
async def test_provider_failures_count_as_attempts(model_config):
    engine, provider = _engine(
        [CompletionError("overloaded"), "no json here", '```json\n{"explanation": "ok"}\n```'],
        model_config,
        RetryConfig(max_attempts=3),
    )
    result = await engine.repair({}, SCHEMA)
    assert result.success
    assert result.attempts == 3
    assert provider.calls == 3


@pytest.mark.asyncio
async def test_exhaustion_returns_last_candidate_and_remaining_errors(model_config):
    engine, provider = _engine([], model_config, RetryConfig(max_attempts=2))
    provider.default = '{"explanation": 42}'

    result = await engine.repair({}, SCHEMA)

    assert not result.success
    assert result.attempts == 2
    assert result.repaired == {"explanation": 42}
    assert [issue.path for issue in result.remaining_errors] == ["explanation"]


@pytest.mark.asyncio
async def test_disabled_retry_allows_one_repair_attempt(model_config):
    engine, provider = _engine([], model_config, RetryConfig(enabled=False, max_attempts=5))
    provider.default = "{}"
    assert engine.max_attempts == 1
    result = await engine.repair({}, SCHEMA)
    assert not result.success
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_repair_records_trace_nodes(model_config, make_context):
    context = make_context()
    engine, _ = _engine(["{}", '{"explanation": "ok"}'], model_config)

    result = await engine.repair({}, SCHEMA, context=context, parent=context.plan_node_id)

    graph = context.recorder.get_trace(context.run_id)
    repairs = graph.of_type("repair")
    assert [node.data.success for node in repairs] == [False, True]
    assert result.trace_node == repairs[-1].id
    assert graph.incoming(repairs[0].id)[0].type == "error"
    assert graph.incoming(repairs[1].id)[0].type == "retry"


@pytest.mark.asyncio
async def test_cancelled_context_stops_before_calling_provider(model_config, make_context):
    context = make_context(AgentConfig())
    context.cancel()
    engine, provider = _engine(['{"explanation": "ok"}'], model_config)
    with pytest.raises(RunCancelled):
        await engine.repair({}, SCHEMA, context=context)
    assert provider.calls == 0
