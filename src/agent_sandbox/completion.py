# completion.py
# Completion provider boundary.
#
# The core only ever sees `CompletionProvider.complete(prompt, config, schema)`.
# OpenRouterProvider is the production implementation; tests pass doubles.

import json
import logging
import os
import re
from typing import Any, Protocol, runtime_checkable

from dotenv import load_dotenv
from openai import AsyncOpenAI, OpenAIError

from agent_sandbox.errors import CompletionError
from agent_sandbox.models import ModelConfig

load_dotenv()

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

JSON_SYSTEM_PROMPT = (
    "You are a precise component inside an automated agent harness. "
    "Respond with a single valid JSON value and nothing else."
)


@runtime_checkable
class CompletionProvider(Protocol):
    async def complete(
        self,
        prompt: str,
        model_config: ModelConfig,
        schema: dict[str, Any] | None = None,
    ) -> str: ...


class OpenRouterProvider:
    """
    Completion provider backed by any OpenRouter-hosted model.

    Example:
        provider = OpenRouterProvider()
        text = await provider.complete("Say hi", ModelConfig(model="anthropic/claude-3.5-haiku"))
    """

    def __init__(self, api_key: str | None = None, base_url: str = OPENROUTER_BASE_URL) -> None:
        self._api_key = api_key or os.getenv("OPENROUTER_API_KEY")
        self._base_url = base_url
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                raise CompletionError("OPENROUTER_API_KEY is not set.")
            self._client = AsyncOpenAI(base_url=self._base_url, api_key=self._api_key)
        return self._client

    async def complete(
        self,
        prompt: str,
        model_config: ModelConfig,
        schema: dict[str, Any] | None = None,
    ) -> str:
        messages = []
        if schema is not None:
            messages.append(
                {
                    "role": "system",
                    "content": f"{JSON_SYSTEM_PROMPT}\nThe value must match this JSON schema:\n"
                    f"{json.dumps(schema, indent=2)}",
                }
            )
        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {}
        if schema is not None:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self._get_client().chat.completions.create(
                model=model_config.model,
                messages=messages,
                temperature=model_config.temperature,
                **kwargs,
            )
        except OpenAIError as exc:
            raise CompletionError(f"Completion request to '{model_config.model}' failed: {exc}") from exc

        if not response.choices or response.choices[0].message.content is None:
            raise CompletionError(f"Model '{model_config.model}' returned an empty completion.")
        return response.choices[0].message.content.strip()


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


def _strip_code_fence(text: str) -> str:
    match = re.search(r"```(?:json)?\s*(.*?)\s*```", text, re.DOTALL)
    return match.group(1) if match else text


def _balanced_candidate(text: str) -> str | None:
    """First balanced {...} or [...] substring, scanning brackets outside strings."""
    for start, char in enumerate(text):
        if char not in "{[":
            continue
        closer = "}" if char == "{" else "]"
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            current = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif current == "\\":
                    escaped = True
                elif current == '"':
                    in_string = False
                continue
            if current == '"':
                in_string = True
            elif current == char:
                depth += 1
            elif current == closer:
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        return None
    return None


def extract_json(text: str) -> Any:
    """
    Parse the JSON value a model embedded in `text`.

    Accepts bare JSON, fenced ```json blocks, and JSON surrounded by prose.
    Raises ValueError when nothing parseable is found.
    """
    if not isinstance(text, str):
        raise ValueError(f"Expected model text, got {type(text).__name__}.")

    body = _strip_code_fence(text.strip())
    try:
        # strict=False allows literal newlines inside strings
        return json.loads(body, strict=False)
    except json.JSONDecodeError:
        pass

    candidate = _balanced_candidate(body)
    if candidate is None:
        raise ValueError(f"No JSON value found in model output: {text[:200]!r}")
    try:
        return json.loads(candidate, strict=False)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Model output JSON is malformed: {exc}") from exc


def coerce_output(value: Any) -> Any:
    """Parse JSON-looking strings, pass everything else through untouched."""
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith(("{", "[", "```")):
            try:
                return extract_json(stripped)
            except ValueError:
                return value
    return value
