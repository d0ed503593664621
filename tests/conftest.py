import json

import pytest

from agent_sandbox.context import RunContext
from agent_sandbox.models import AgentConfig, ModelConfig, RetryConfig
from agent_sandbox.tools import ToolDefinition, default_registry
from agent_sandbox.trace import PlanNodeData, TraceRecorder


class ScriptedProvider:
    """
    Completion provider double. Replies are consumed in order; an Exception
    instance in the script is raised instead of returned.
    """

    def __init__(self, replies=None, default=None):
        self.replies = list(replies or [])
        self.default = default
        self.prompts = []
        self.schemas = []

    async def complete(self, prompt, model_config, schema=None):
        self.prompts.append(prompt)
        self.schemas.append(schema)
        if self.replies:
            reply = self.replies.pop(0)
        elif self.default is not None:
            reply = self.default
        else:
            raise AssertionError(f"Unexpected completion call #{len(self.prompts)}")
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def calls(self):
        return len(self.prompts)


def plan_json(*steps, confidence=0.9):
    return json.dumps({"steps": list(steps), "confidence": confidence})


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def model_config():
    return ModelConfig(model="test/model")


@pytest.fixture
def fast_retry():
    return RetryConfig(max_attempts=3, strategy="fixed", initial_delay=0.0, max_delay=0.0)


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def make_tool():
    def _make(name, executor, schema=None, **kwargs):
        return ToolDefinition(
            name=name,
            description=f"test tool {name}",
            input_schema=schema or {"type": "object"},
            executor=executor,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_context():
    """Started trace + RunContext with its root plan node already recorded."""

    def _make(config=None, recorder=None, run_id="run-1", task="test task"):
        config = config or AgentConfig()
        recorder = recorder or TraceRecorder()
        recorder.start_run(run_id, config)
        context = RunContext(run_id, config, recorder, task)
        context.plan_node_id = context.trace(PlanNodeData(task=task)).id
        return context

    return _make
