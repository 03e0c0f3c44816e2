"""Translate skill input schemas into provider function-call parameter schemas.

The provider understands a small JSON-schema subset: objects with a
``required`` list, arrays, string enumerations and the four primitives. A
skill's pydantic model produces full JSON Schema (``$defs``/``$ref``,
``anyOf`` for optionals, titles); :func:`to_provider_schema` reduces it to
that subset with a total mapping table and a safe fallback.

Mapping:
    enum / const        -> {"type": "string", "enum": [...]}
    array               -> {"type": "array", "items": <translated>}
    object / properties -> {"type": "object", "properties": {...}, "required": [...]}
    string, number, integer, boolean -> unchanged
    anything else       -> {"type": "string"}

A schema that cannot be translated degrades to an empty object schema
("accepts anything") instead of failing registry construction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

if TYPE_CHECKING:
    from .base import Skill

logger = logging.getLogger(__name__)

_PRIMITIVES = frozenset({"string", "number", "integer", "boolean"})

# Constraint keywords carried through unchanged.
_PASSTHROUGH_KEYS = (
    "description",
    "format",
    "pattern",
    "minimum",
    "maximum",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "minLength",
    "maxLength",
    "minItems",
    "maxItems",
)

_MAX_DEPTH = 32


class SchemaTranslationError(ValueError):
    """Raised internally when a schema node cannot be translated."""


def empty_object_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass(frozen=True)
class FunctionDeclaration:
    """Read-only projection of a skill handed to the provider.

    Attributes:
        name: Skill name
        description: Skill description, unchanged
        parameters: Translated parameter schema (always an object schema)
    """
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=empty_object_schema)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


def to_provider_schema(schema: type[BaseModel] | dict[str, Any] | Any) -> dict[str, Any]:
    """Convert a skill input schema to the provider's parameter schema.

    Args:
        schema: A pydantic model class or a JSON-schema dict

    Returns:
        An object schema. Falls back to ``{"type": "object", "properties": {}}``
        when the input is unrecognised or malformed.
    """
    try:
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            json_schema = schema.model_json_schema()
        elif isinstance(schema, dict):
            json_schema = schema
        else:
            raise SchemaTranslationError(f"unsupported schema type {type(schema).__name__}")

        defs = json_schema.get("$defs") or json_schema.get("definitions") or {}
        translated = _translate(json_schema, defs, depth=0)
        if translated.get("type") != "object":
            raise SchemaTranslationError(
                f"top-level schema must be an object, got {translated.get('type')!r}"
            )
        return translated
    except Exception as exc:
        logger.warning("Falling back to empty object schema: %s", exc)
        return empty_object_schema()


def function_declaration_for(skill: Skill[Any, Any]) -> FunctionDeclaration:
    """Build the function declaration the provider sees for *skill*."""
    return FunctionDeclaration(
        name=skill.name,
        description=skill.description,
        parameters=to_provider_schema(skill.input_schema),
    )


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


def _carry(node: dict[str, Any], out: dict[str, Any]) -> dict[str, Any]:
    for key in _PASSTHROUGH_KEYS:
        if key in node and key not in out:
            out[key] = node[key]
    return out


def _resolve_ref(ref: str, defs: dict[str, Any]) -> dict[str, Any]:
    for prefix in ("#/$defs/", "#/definitions/"):
        if ref.startswith(prefix):
            target = defs.get(ref[len(prefix):])
            if isinstance(target, dict):
                return target
    raise SchemaTranslationError(f"unresolvable reference {ref!r}")


def _enum_type(values: list[Any]) -> str:
    if all(isinstance(v, str) for v in values):
        return "string"
    if all(isinstance(v, bool) for v in values):
        return "boolean"
    if all(isinstance(v, int) and not isinstance(v, bool) for v in values):
        return "integer"
    if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
        return "number"
    return "string"


def _translate(node: Any, defs: dict[str, Any], depth: int) -> dict[str, Any]:
    if depth > _MAX_DEPTH:
        raise SchemaTranslationError("schema nesting too deep (recursive model?)")
    if not isinstance(node, dict):
        raise SchemaTranslationError(f"schema node must be a dict, got {type(node).__name__}")

    if "$ref" in node:
        target = _resolve_ref(node["$ref"], defs)
        return _carry(node, _translate(target, defs, depth + 1))

    for combinator in ("anyOf", "oneOf"):
        if combinator in node:
            variants = [v for v in node[combinator] if not _is_null(v)]
            if not variants:
                return _carry(node, {"type": "string"})
            if len(variants) > 1:
                logger.debug("Union with %d variants reduced to its first", len(variants))
            return _carry(node, _translate(variants[0], defs, depth + 1))

    if "allOf" in node and len(node["allOf"]) == 1:
        return _carry(node, _translate(node["allOf"][0], defs, depth + 1))

    if "enum" in node:
        values = list(node["enum"])
        return _carry(node, {"type": _enum_type(values), "enum": values})
    if "const" in node:
        return _carry(node, {"type": _enum_type([node["const"]]), "enum": [node["const"]]})

    node_type = node.get("type")
    if isinstance(node_type, list):
        non_null = [t for t in node_type if t != "null"]
        node_type = non_null[0] if non_null else "string"

    if node_type == "array":
        items = node.get("items")
        translated_items = (
            _translate(items, defs, depth + 1) if isinstance(items, dict) and items
            else {"type": "string"}
        )
        return _carry(node, {"type": "array", "items": translated_items})

    if node_type == "object" or "properties" in node:
        properties = {
            key: _translate(value, defs, depth + 1)
            for key, value in (node.get("properties") or {}).items()
        }
        required = [key for key in node.get("required", []) if key in properties]
        return _carry(
            node, {"type": "object", "properties": properties, "required": required}
        )

    if node_type in _PRIMITIVES:
        return _carry(node, {"type": node_type})

    return _carry(node, {"type": "string"})


def _is_null(node: Any) -> bool:
    return isinstance(node, dict) and node.get("type") == "null"
