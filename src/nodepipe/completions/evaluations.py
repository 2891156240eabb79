"""String-match evaluations run against every successful model output."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from nodepipe.completions.prompts import render_string
from nodepipe.core.errors import ValidationError
from nodepipe.core.models import EvaluationMatchType
from nodepipe.db.models import Evaluation, ModelOutput, OutputEvaluation, TestScenario

logger = logging.getLogger(__name__)


def output_text(output: Any) -> str:
    """Flatten a response message to the text evaluations match against."""
    if isinstance(output, str):
        return output
    if isinstance(output, dict):
        parts = []
        if isinstance(output.get("content"), str):
            parts.append(output["content"])
        for call in output.get("tool_calls") or []:
            function = call.get("function") or {}
            parts.append(str(function.get("arguments", "")))
        if parts:
            return "\n".join(parts)
    return json.dumps(output)


def evaluate(evaluation: Evaluation, scenario: TestScenario, output: Any) -> tuple[float, str | None]:
    """Score one output: 1.0 when the match condition holds, else 0.0."""
    try:
        needle = render_string(evaluation.match_string, scenario.variable_values)
    except ValidationError as exc:
        return 0.0, str(exc)
    found = needle in output_text(output)
    if evaluation.match_type == EvaluationMatchType.CONTAINS:
        return (1.0 if found else 0.0), None
    return (0.0 if found else 1.0), None


def run_evals_for_output(
    session: Session,
    experiment_id: str,
    scenario: TestScenario,
    model_output: ModelOutput,
) -> list[OutputEvaluation]:
    """Record every evaluation of the experiment against ``model_output``."""
    evaluations = session.scalars(
        select(Evaluation).where(Evaluation.experiment_id == experiment_id)
    ).all()
    results = []
    for evaluation in evaluations:
        result, details = evaluate(evaluation, scenario, model_output.output)
        row = OutputEvaluation(
            model_output_id=model_output.id,
            evaluation_id=evaluation.id,
            result=result,
            details=details,
        )
        session.add(row)
        results.append(row)
    logger.debug("Ran %d evaluations for output %s", len(results), model_output.id)
    return results
