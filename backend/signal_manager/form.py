"""
signal_manager/form.py
----------------------
The signal form's side of the rule cycle.

On every field change the form:
  1. coerces stored values into form values (BOOLEAN "true" → True),
  2. runs the program rules,
  3. pushes the result's assignments back into its values,
  4. renders only the fields that are not hidden, section by section.

evaluate_form() performs one full turn of that cycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from signal_manager.models import (
    DataElement,
    ProgramStage,
    RuleConfiguration,
    RuleEvaluationResult,
)
from signal_manager.rule_engine import execute_program_rules

logger = logging.getLogger(__name__)


@dataclass
class VisibleSection:
    name: str
    sort_order: int
    data_elements: list[str] = field(default_factory=list)


@dataclass
class FormState:
    """Values, rule result and rendered layout after one evaluation."""
    values: dict[str, Any]
    result: RuleEvaluationResult
    sections: list[VisibleSection] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "values": dict(self.values),
            "result": self.result.as_dict(),
            "sections": [
                {
                    "name": section.name,
                    "sortOrder": section.sort_order,
                    "dataElements": list(section.data_elements),
                }
                for section in self.sections
            ],
        }


def coerce_data_values(
    data_values: Mapping[str, Any],
    data_elements: Mapping[str, DataElement],
) -> dict[str, Any]:
    """
    Convert stored event values into form values.

    The platform stores every value as a string. BOOLEAN data elements are
    turned into real booleans ("true" → True, anything else → False); other
    value types, and keys that are not data elements (e.g. "orgUnit"), are
    passed through untouched.
    """
    values: dict[str, Any] = {}
    for key, value in data_values.items():
        element = data_elements.get(key)
        if element is not None and element.value_type == "BOOLEAN" and isinstance(value, str):
            values[key] = value == "true"
        else:
            values[key] = value
    return values


def apply_rule_result(
    field_values: Mapping[str, Any],
    result: RuleEvaluationResult,
) -> dict[str, Any]:
    """Return a copy of `field_values` with the rule assignments pushed in."""
    values = dict(field_values)
    values.update(result.assignments)
    return values


def visible_fields(
    field_ids: Iterable[str],
    result: RuleEvaluationResult,
) -> list[str]:
    """Fields to render, in order. Hidden wins when a field is also shown."""
    return [field_id for field_id in field_ids if field_id not in result.hidden_fields]


def visible_sections(
    program_stage: ProgramStage,
    result: RuleEvaluationResult,
) -> list[VisibleSection]:
    """
    Stage sections ordered by sortOrder, each limited to its visible fields.

    Section entries that are not data elements of the stage are dropped
    before the hidden-field filter is applied.
    """
    known = program_stage.data_elements()
    sections = sorted(program_stage.program_stage_sections, key=lambda s: s.sort_order)
    return [
        VisibleSection(
            name=section.name,
            sort_order=section.sort_order,
            data_elements=visible_fields(
                (de for de in section.data_element_ids if de in known), result
            ),
        )
        for section in sections
    ]


def evaluate_form(
    configuration: RuleConfiguration,
    data_values: Mapping[str, Any],
    log: logging.Logger | None = None,
) -> FormState:
    """
    Run one rule cycle for a signal form.

    Args:
        configuration: Rules, variables and stage loaded for the program.
        data_values:   Stored values of the signal (field id → value).
        log:           Optional logger handed down to the rule engine.

    Returns:
        FormState: the values with assignments applied, the raw rule result,
        and the sections with hidden fields removed.
    """
    stage = configuration.program_stage
    values = coerce_data_values(data_values, stage.data_elements())
    result = execute_program_rules(
        configuration.program_rules,
        configuration.program_rule_variables,
        values,
        log=log,
    )
    (log or logger).debug(
        "Form evaluated: %d assignments, %d hidden, %d messages",
        len(result.assignments), len(result.hidden_fields), len(result.messages),
    )
    return FormState(
        values=apply_rule_result(values, result),
        result=result,
        sections=visible_sections(stage, result),
    )
