# validation.py
# Unified schema validation.
#
# Two schema representations converge on one ValidationResult:
#   - declarative dict schemas (a JSON-Schema subset), converted to pydantic
#     types on first use and cached
#   - pydantic model classes (or any type pydantic can build an adapter for)

import json
import logging
import re
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    create_model,
)
from pydantic.errors import PydanticSchemaGenerationError

from agent_sandbox.errors import SchemaDefinitionError
from agent_sandbox.models import ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)

Schema = dict[str, Any] | type
PenaltyFn = Callable[[int], float]

_SCALARS: dict[str, Any] = {
    "string": StrictStr,
    "integer": StrictInt,
    "number": StrictFloat,
    "boolean": StrictBool,
    "null": type(None),
    "any": Any,
}

_CONSTRAINTS = {
    "minLength": "min_length",
    "maxLength": "max_length",
    "minItems": "min_length",
    "maxItems": "max_length",
    "minimum": "ge",
    "maximum": "le",
    "exclusiveMinimum": "gt",
    "exclusiveMaximum": "lt",
    "pattern": "pattern",
}


def default_penalty(error_count: int) -> float:
    """100 when valid, minus 20 per error, floored at 0."""
    return float(max(0, 100 - 20 * error_count))


# ---------------------------------------------------------------------------
# Declarative schema -> pydantic type
# ---------------------------------------------------------------------------


def _model_name(hint: str) -> str:
    cleaned = re.sub(r"\W+", "_", hint).strip("_") or "Schema"
    return cleaned[0].upper() + cleaned[1:]


def _to_annotation(schema: Any, name: str) -> Any:
    if not isinstance(schema, dict):
        raise SchemaDefinitionError(f"Schema node '{name}' must be an object, got {type(schema).__name__}.")

    if "enum" in schema:
        values = schema["enum"]
        if not isinstance(values, list) or not values:
            raise SchemaDefinitionError(f"Schema node '{name}' has an empty or malformed enum.")
        return Literal[tuple(values)]

    declared = schema.get("type")
    if declared is None:
        declared = "object" if "properties" in schema else "any"

    if isinstance(declared, list):
        if not declared:
            raise SchemaDefinitionError(f"Schema node '{name}' declares an empty type list.")
        members = tuple(_to_annotation({**schema, "type": t}, name) for t in declared)
        return members[0] if len(members) == 1 else Union[members]

    if declared == "object":
        annotation = _object_annotation(schema, name)
    elif declared == "array":
        items = schema.get("items", {})
        annotation = list[_to_annotation(items, f"{name}_item")]
    elif declared in _SCALARS:
        annotation = _SCALARS[declared]
    else:
        raise SchemaDefinitionError(f"Schema node '{name}' has unsupported type '{declared}'.")

    constraints = {
        target: schema[source] for source, target in _CONSTRAINTS.items() if source in schema
    }
    if constraints:
        return Annotated[annotation, Field(**constraints)]
    return annotation


def _object_annotation(schema: dict[str, Any], name: str) -> Any:
    properties = schema.get("properties")
    if properties is None:
        return dict[str, Any]
    if not isinstance(properties, dict):
        raise SchemaDefinitionError(f"Schema node '{name}' has non-object 'properties'.")

    required = set(schema.get("required", []))
    unknown_required = required - set(properties)
    if unknown_required:
        raise SchemaDefinitionError(
            f"Schema node '{name}' requires undeclared properties: {sorted(unknown_required)}."
        )

    fields: dict[str, Any] = {}
    for field_name, field_schema in properties.items():
        annotation = _to_annotation(field_schema, f"{name}_{field_name}")
        if field_name in required:
            fields[field_name] = (annotation, ...)
        else:
            fields[field_name] = (Optional[annotation], None)

    extra = "forbid" if schema.get("additionalProperties") is False else "allow"
    try:
        return create_model(_model_name(name), __config__=ConfigDict(extra=extra), **fields)
    except (TypeError, ValueError) as exc:
        raise SchemaDefinitionError(f"Schema node '{name}' could not be compiled: {exc}") from exc


def _expected_at(schema: Any, loc: tuple) -> str | None:
    """Walk a declarative schema along a pydantic error location."""
    node = schema
    for part in loc:
        if not isinstance(node, dict):
            return None
        if isinstance(part, int):
            node = node.get("items")
        else:
            node = (node.get("properties") or {}).get(part)
    if not isinstance(node, dict):
        return None
    if "enum" in node:
        return "one of " + ", ".join(json.dumps(v) for v in node["enum"])
    declared = node.get("type")
    if isinstance(declared, list):
        return " | ".join(str(t) for t in declared)
    return declared


def _is_union(node: Any) -> bool:
    return (
        isinstance(node, dict)
        and "enum" not in node
        and isinstance(node.get("type"), list)
        and len(node["type"]) > 1
    )


def _schema_loc(schema: Any, loc: tuple) -> tuple:
    """Drop the member tags pydantic inserts below a `type: [...]` union."""
    parts: list = []
    node = schema
    remaining = list(loc)
    while remaining:
        part = remaining.pop(0)
        if _is_union(node):
            following = remaining[0] if remaining else None
            if isinstance(following, int):
                node = {**node, "type": "array"}
            elif isinstance(following, str):
                node = {**node, "type": "object"}
            else:
                node = None
            continue
        parts.append(part)
        if not isinstance(node, dict):
            node = None
        elif isinstance(part, int):
            node = node.get("items")
        else:
            node = (node.get("properties") or {}).get(part)
    return tuple(parts)


def _format_path(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "$"


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class SchemaValidator:
    """
    Validates values against declarative or pydantic schemas.

    The compliance score comes from `penalty(error_count)`; the default is
    `default_penalty`. Any override must be deterministic: scores feed run
    metrics.
    """

    def __init__(self, penalty: PenaltyFn | None = None) -> None:
        self._penalty = penalty or default_penalty
        self._adapters: dict[str, TypeAdapter] = {}

    def validate(self, data: Any, schema: Schema, penalty: PenaltyFn | None = None) -> ValidationResult:
        score_fn = penalty or self._penalty

        if isinstance(schema, type) and issubclass(schema, BaseModel) and isinstance(data, schema):
            return ValidationResult(valid=True, errors=[], score=score_fn(0))

        adapter = self._adapter_for(schema)
        try:
            adapter.validate_python(data)
        except ValidationError as exc:
            issues = self._issues(exc, schema)
            score = max(0.0, min(100.0, float(score_fn(len(issues)))))
            return ValidationResult(valid=False, errors=issues, score=score)

        return ValidationResult(valid=True, errors=[], score=max(0.0, min(100.0, float(score_fn(0)))))

    def compile(self, schema: Schema) -> None:
        """Fail fast on a schema that cannot be interpreted."""
        self._adapter_for(schema)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _adapter_for(self, schema: Schema) -> TypeAdapter:
        if isinstance(schema, dict):
            key = "dict:" + json.dumps(schema, sort_keys=True, default=str)
            adapter = self._adapters.get(key)
            if adapter is None:
                annotation = _to_annotation(schema, schema.get("title", "Output"))
                adapter = TypeAdapter(annotation)
                self._adapters[key] = adapter
            return adapter

        key = f"type:{id(schema)}"
        adapter = self._adapters.get(key)
        if adapter is None:
            try:
                adapter = TypeAdapter(schema)
            except (PydanticSchemaGenerationError, TypeError) as exc:
                raise SchemaDefinitionError(f"Unsupported schema object: {schema!r}") from exc
            self._adapters[key] = adapter
        return adapter

    def _issues(self, exc: ValidationError, schema: Schema) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        seen: set[str] = set()
        for error in exc.errors():
            loc = tuple(error.get("loc", ()))
            if isinstance(schema, dict):
                loc = _schema_loc(schema, loc)
            path = _format_path(loc)
            # One issue per location; unions report every failed member.
            if path in seen:
                continue
            seen.add(path)
            expected = _expected_at(schema, loc) if isinstance(schema, dict) else None
            issues.append(
                ValidationIssue(
                    path=path,
                    message=error.get("msg", "invalid value"),
                    expected=expected or error.get("type"),
                )
            )
        return issues


def schema_as_json(schema: Schema) -> dict[str, Any]:
    """JSON-serialisable view of a schema, for prompts and trace payloads."""
    if isinstance(schema, dict):
        return schema
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return schema.model_json_schema()
    try:
        return TypeAdapter(schema).json_schema()
    except (PydanticSchemaGenerationError, TypeError) as exc:
        raise SchemaDefinitionError(f"Unsupported schema object: {schema!r}") from exc
