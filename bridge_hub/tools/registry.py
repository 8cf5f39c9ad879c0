"""Tool registry for the bridge.

Tools are functions the model can invoke through function calling. Each tool:
1. Declares a parameter schema (explicit JSON schema, or loose descriptions
   from which a schema is inferred)
2. Has its parameters coerced and validated at dispatch
3. Executes the action
4. Returns a structured ``ToolResult``
"""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

import jsonschema

from bridge_core.errors import ToolNotFoundError, ToolValidationError
from bridge_core.json_repair import loads_lenient
from bridge_core.schema import ToolContext, ToolResult, strip_namespace

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any], ToolContext], Any]

# Names ending like these look plural but are scalars (messageTs, thread_ts, status, ...).
_SINGULAR_ENDINGS = ("ts", "Ts", "_ts", "ss", "us", "is")
_INTEGER_HINT_RE = re.compile(r"(limit|size|count|max|number|index)", re.IGNORECASE)
_BOOLEAN_HINT_RE = re.compile(r"\b(whether|true/false|boolean|if true)\b", re.IGNORECASE)
_OBJECT_HINT_RE = re.compile(r"\b(object|map|mapping|dictionary)\b", re.IGNORECASE)
_ARRAY_HINT_RE = re.compile(r"\b(list|array)\b", re.IGNORECASE)


def infer_property_schema(name: str, description: str) -> dict[str, Any]:
    """Guess a JSON-schema type from a parameter's name and description."""
    desc = description or ""
    if _BOOLEAN_HINT_RE.search(desc) or re.match(r"^(is|has|include|remove|should)[A-Z_]", name):
        kind = "boolean"
    elif _INTEGER_HINT_RE.search(name):
        kind = "integer"
    elif _ARRAY_HINT_RE.search(desc) or (name.endswith("s") and not name.endswith(_SINGULAR_ENDINGS)):
        kind = "array"
    elif _OBJECT_HINT_RE.search(desc):
        kind = "object"
    else:
        kind = "string"
    schema: dict[str, Any] = {"type": kind, "description": desc}
    if kind == "array":
        schema["items"] = {}
    return schema


def build_parameter_schema(parameters: dict[str, Any] | None, required: list[str] | None = None) -> dict[str, Any]:
    """Normalize a tool's parameter declaration into a JSON schema object."""
    if parameters and parameters.get("type") == "object" and isinstance(parameters.get("properties"), dict):
        schema = dict(parameters)
        if required is not None:
            schema["required"] = list(required)
        return schema

    properties: dict[str, Any] = {}
    for name, decl in (parameters or {}).items():
        if isinstance(decl, dict):
            properties[name] = decl
        else:
            properties[name] = infer_property_schema(name, str(decl))
    return {"type": "object", "properties": properties, "required": list(required or [])}


def _coerce_value(value: Any, schema: dict[str, Any]) -> Any:
    types = schema.get("type")
    types = [types] if isinstance(types, str) else list(types or [])
    if not isinstance(value, str) or "string" in types:
        return value
    stripped = value.strip()
    if ("array" in types or "object" in types) and stripped[:1] in ("[", "{"):
        try:
            parsed = loads_lenient(stripped)
        except ValueError:
            return value
        if ("array" in types and isinstance(parsed, list)) or ("object" in types and isinstance(parsed, dict)):
            return parsed
        return value
    if "integer" in types and re.fullmatch(r"-?\d+", stripped):
        return int(stripped)
    if "boolean" in types and stripped.lower() in ("true", "false"):
        return stripped.lower() == "true"
    return value


def coerce_parameters(params: dict[str, Any], schema: dict[str, Any]) -> dict[str, Any]:
    """Fix up string-encoded arrays, objects, integers and booleans."""
    props = schema.get("properties") or {}
    return {k: _coerce_value(v, props[k]) if k in props else v for k, v in params.items()}


@dataclass
class ToolSpec:
    """Specification for a registered tool."""

    name: str
    description: str
    handler: Handler
    parameters: dict[str, Any] = field(default_factory=dict)
    is_async: bool = False
    cache_results: bool = True

    @property
    def required(self) -> list[str]:
        return list(self.parameters.get("required") or [])


class ToolRegistry:
    """Registry of available tools."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        description: str,
        handler: Handler,
        parameter_schema: dict[str, Any] | None = None,
        is_async: bool = False,
        *,
        required: list[str] | None = None,
        cache_results: bool = True,
    ) -> ToolSpec:
        """Register a tool with the registry."""
        spec = ToolSpec(
            name=name,
            description=description,
            handler=handler,
            parameters=build_parameter_schema(parameter_schema, required),
            is_async=is_async or inspect.iscoroutinefunction(handler),
            cache_results=cache_results,
        )
        self._tools[name] = spec
        logger.debug("Registered tool: %s", name)
        return spec

    def get(self, name: str) -> ToolSpec | None:
        """Get a tool by name, ignoring namespace prefixes."""
        return self._tools.get(strip_namespace(name))

    def lookup(self, name: str) -> Handler:
        """Return the handler for ``name`` or raise ``ToolNotFoundError``."""
        spec = self.get(name)
        if spec is None:
            raise ToolNotFoundError(strip_namespace(name), self.list_tools())
        return spec.handler

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def schema_for_model(self) -> list[dict[str, Any]]:
        """``[{name, description, parameters}]`` with a required ``reasoning`` field."""
        out = []
        for spec in self._tools.values():
            params = dict(spec.parameters)
            properties = {
                "reasoning": {"type": "string", "description": "Brief explanation of why you are calling this tool"},
                **(params.get("properties") or {}),
            }
            required = ["reasoning", *[r for r in spec.required if r != "reasoning"]]
            params.update(properties=properties, required=required)
            out.append({"name": spec.name, "description": spec.description, "parameters": params})
        return out

    def openai_tools(self) -> list[dict[str, Any]]:
        """Function-calling ``tools`` array for chat-completions requests."""
        return [{"type": "function", "function": schema} for schema in self.schema_for_model()]

    def validate(self, name: str, params: dict[str, Any]) -> dict[str, Any]:
        """Coerce and validate ``params``; raises ``ToolValidationError``."""
        spec = self.get(name)
        if spec is None:
            raise ToolNotFoundError(strip_namespace(name), self.list_tools())
        coerced = coerce_parameters(params, spec.parameters)
        try:
            jsonschema.validate(instance=coerced, schema=spec.parameters)
        except jsonschema.ValidationError as e:
            path = ".".join(str(p) for p in e.absolute_path) or "(root)"
            raise ToolValidationError(f"{e.message} at {path}", {"tool": spec.name, "path": path}) from e
        return coerced

    async def execute(self, name: str, params: dict[str, Any], ctx: ToolContext) -> ToolResult:
        """Execute a tool by name. Failures come back as ``ToolResult(ok=False)``."""
        spec = self.get(name)
        if spec is None:
            return ToolResult(ok=False, error=f"unknown_tool: {ToolNotFoundError(strip_namespace(name), self.list_tools())}")

        try:
            payload = self.validate(spec.name, params)
        except ToolValidationError as e:
            return ToolResult(ok=False, error=f"invalid_parameters: {e}")

        try:
            result = spec.handler(payload, ctx)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.exception("Tool %s failed", spec.name)
            return ToolResult(ok=False, error=f"execution_error: {str(e)}")

        if not isinstance(result, ToolResult):
            result = ToolResult(ok=True, data=result if isinstance(result, dict) else {"result": result})
        return result


# Global registry instance
_registry: ToolRegistry | None = None


def get_registry() -> ToolRegistry:
    """Get the global tool registry, initializing if needed."""
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
        _register_default_tools(_registry)
    return _registry


def _register_default_tools(registry: ToolRegistry) -> None:
    """Register the default set of tools."""
    from . import (
        add_reaction,
        create_button_message,
        create_emoji_vote,
        finish_request,
        get_thread_history,
        get_user_avatar,
        post_message,
        remove_reaction,
        update_message,
    )

    post_message.register(registry)
    finish_request.register(registry)
    get_thread_history.register(registry)
    create_button_message.register(registry)
    update_message.register(registry)
    add_reaction.register(registry)
    remove_reaction.register(registry)
    get_user_avatar.register(registry)
    create_emoji_vote.register(registry)
