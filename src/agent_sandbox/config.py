# config.py
# Builds AgentConfig from a mapping, a JSON file or the environment.
#
# Environment variables (a local .env is honoured):
#   SANDBOX_MODEL, SANDBOX_TEMPERATURE, SANDBOX_MAX_STEPS, SANDBOX_TIMEOUT,
#   SANDBOX_MAX_ATTEMPTS, SANDBOX_BACKOFF (fixed | linear | exponential)

import json
import os
from pathlib import Path
from typing import Any, Mapping

from dotenv import load_dotenv
from pydantic import ValidationError

from agent_sandbox.errors import ConfigError
from agent_sandbox.models import AgentConfig

load_dotenv()

ENV_PREFIX = "SANDBOX_"


def _env(name: str) -> str | None:
    value = os.getenv(ENV_PREFIX + name)
    return value if value not in (None, "") else None


def config_from_env() -> AgentConfig:
    fields: dict[str, Any] = {}
    for key, name in (("model", "MODEL"), ("temperature", "TEMPERATURE"),
                      ("max_steps", "MAX_STEPS"), ("timeout", "TIMEOUT")):
        value = _env(name)
        if value is not None:
            fields[key] = value

    retry: dict[str, Any] = {}
    attempts = _env("MAX_ATTEMPTS")
    if attempts is not None:
        retry["max_attempts"] = attempts
    backoff = _env("BACKOFF")
    if backoff is not None:
        retry["strategy"] = backoff.lower()
    if retry:
        fields["retry"] = retry

    return load_config(fields)


def load_config(source: Mapping[str, Any] | str | Path | None = None) -> AgentConfig:
    """
    Accepts a mapping, a path to a JSON file, or None for the environment.
    Unknown fields and out-of-range values raise ConfigError.
    """
    if source is None:
        return config_from_env()

    if isinstance(source, (str, Path)):
        path = Path(source)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must hold a JSON object.")
    else:
        data = dict(source)

    try:
        return AgentConfig.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or '$'}: {error['msg']}" for error in exc.errors()
        )
        raise ConfigError(f"Invalid agent configuration: {problems}") from exc
