"""Experiments: prompt variants x test scenarios, their cells and evaluations."""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from nodepipe.core.errors import NotFoundError, ValidationError
from nodepipe.core.models import EvaluationMatchType
from nodepipe.db.models import (
    Evaluation,
    Experiment,
    PromptVariant,
    ScenarioVariantCell,
    TestScenario,
)


def create_experiment(session: Session, project_id: str, label: str = "") -> Experiment:
    experiment = Experiment(project_id=project_id, label=label)
    session.add(experiment)
    session.flush()
    return experiment


def _require_experiment(session: Session, experiment_id: str) -> Experiment:
    experiment = session.get(Experiment, experiment_id)
    if experiment is None:
        raise NotFoundError(f"Experiment {experiment_id} not found")
    return experiment


def add_variant(
    session: Session,
    experiment_id: str,
    prompt_template: str | dict[str, Any],
    model_provider: str | None = None,
    label: str = "",
) -> PromptVariant:
    """Add a prompt variant and a PENDING cell for every existing scenario.

    Args:
        model_provider: Provider name; unset uses the worker's default provider.
        prompt_template: JSON object (or its text) whose strings may hold
            Jinja2 placeholders for scenario variables.
    """
    _require_experiment(session, experiment_id)
    if not isinstance(prompt_template, str):
        prompt_template = json.dumps(prompt_template)
    try:
        parsed = json.loads(prompt_template)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Prompt template is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("Prompt template must be a JSON object")

    count = len(
        session.scalars(select(PromptVariant.id).where(PromptVariant.experiment_id == experiment_id)).all()
    )
    variant = PromptVariant(
        experiment_id=experiment_id,
        label=label or f"Prompt Variant {count + 1}",
        model_provider=model_provider,
        prompt_template=prompt_template,
        sort_index=count,
    )
    session.add(variant)
    session.flush()

    scenarios = session.scalars(
        select(TestScenario).where(TestScenario.experiment_id == experiment_id)
    ).all()
    for scenario in scenarios:
        session.add(ScenarioVariantCell(prompt_variant_id=variant.id, test_scenario_id=scenario.id))
    session.flush()
    return variant


def add_scenario(
    session: Session,
    experiment_id: str,
    variable_values: dict[str, Any],
) -> TestScenario:
    """Add a test scenario and a PENDING cell for every visible variant."""
    _require_experiment(session, experiment_id)
    count = len(
        session.scalars(select(TestScenario.id).where(TestScenario.experiment_id == experiment_id)).all()
    )
    scenario = TestScenario(experiment_id=experiment_id, sort_index=count)
    scenario.variable_values = variable_values
    session.add(scenario)
    session.flush()

    variants = session.scalars(
        select(PromptVariant).where(
            PromptVariant.experiment_id == experiment_id, PromptVariant.visible.is_(True)
        )
    ).all()
    for variant in variants:
        session.add(ScenarioVariantCell(prompt_variant_id=variant.id, test_scenario_id=scenario.id))
    session.flush()
    return scenario


def add_evaluation(
    session: Session,
    experiment_id: str,
    label: str,
    match_string: str,
    match_type: EvaluationMatchType = EvaluationMatchType.CONTAINS,
) -> Evaluation:
    _require_experiment(session, experiment_id)
    evaluation = Evaluation(
        experiment_id=experiment_id,
        label=label,
        match_string=match_string,
        match_type=EvaluationMatchType(match_type),
    )
    session.add(evaluation)
    session.flush()
    return evaluation


def get_cell(session: Session, variant_id: str, scenario_id: str) -> ScenarioVariantCell:
    cell = session.scalar(
        select(ScenarioVariantCell).where(
            ScenarioVariantCell.prompt_variant_id == variant_id,
            ScenarioVariantCell.test_scenario_id == scenario_id,
        )
    )
    if cell is None:
        raise NotFoundError(f"No cell for variant {variant_id} and scenario {scenario_id}")
    return cell


def list_cells(session: Session, experiment_id: str) -> list[ScenarioVariantCell]:
    """Cells of an experiment ordered by variant then scenario."""
    stmt = (
        select(ScenarioVariantCell)
        .join(PromptVariant, PromptVariant.id == ScenarioVariantCell.prompt_variant_id)
        .join(TestScenario, TestScenario.id == ScenarioVariantCell.test_scenario_id)
        .where(PromptVariant.experiment_id == experiment_id)
        .order_by(PromptVariant.sort_index, TestScenario.sort_index)
    )
    return list(session.scalars(stmt).all())
