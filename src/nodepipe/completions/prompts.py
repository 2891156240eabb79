"""Prompt construction for scenario/variant cells.

A variant's ``prompt_template`` is JSON describing the provider request. Every
string inside it is a Jinja2 template rendered with the scenario's variables,
so values are substituted without ever breaking the JSON structure.
"""

from __future__ import annotations

import json
from typing import Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from nodepipe.core.errors import ValidationError

_env = SandboxedEnvironment(
    undefined=StrictUndefined,  # Raise on undefined variables
    autoescape=False,  # No HTML escaping for prompts
)


def render_string(template: str, variables: dict[str, Any]) -> str:
    """Render one Jinja2 string. Raises ValidationError on any template error."""
    try:
        return _env.from_string(template).render(**variables)
    except TemplateError as exc:
        raise ValidationError(f"Template rendering failed: {exc}") from exc


def _render(value: Any, variables: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return render_string(value, variables)
    if isinstance(value, list):
        return [_render(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: _render(item, variables) for key, item in value.items()}
    return value


def construct_prompt(prompt_template: str, variables: dict[str, Any]) -> dict[str, Any]:
    """Build the provider request for one cell.

    Raises:
        ValidationError: The template is not JSON, references an undefined
            variable, or does not produce a ``model`` and a ``messages`` list.
    """
    try:
        template = json.loads(prompt_template)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Prompt template is not valid JSON: {exc}") from exc
    if not isinstance(template, dict):
        raise ValidationError("Prompt template must be a JSON object")

    model_input = _render(template, variables)
    if not model_input.get("model"):
        raise ValidationError("Prompt must set a model")
    if not isinstance(model_input.get("messages"), list) or not model_input["messages"]:
        raise ValidationError("Prompt must include at least one message")
    return model_input
