"""
signal_manager/rule_engine.py
-----------------------------
Program-rule engine for the signal form.

One call runs every program rule of the signal program against a snapshot
of the form's field values and returns the combined effect of the rules
whose condition holds.

Flow:
  data values ──► resolve_variables()     variable name → current value
              ──► evaluate_condition()    per rule, in order received
              ──► _apply_action()         per action of each true rule
              ──► RuleEvaluationResult    assignments / hidden / shown /
                                          messages / warnings

Rules run in the order they are supplied. Their `priority` is carried on
the model but is not used to reorder them.

Usage:
    from signal_manager.rule_engine import execute_program_rules

    result = execute_program_rules(
        program_rules=rules,
        program_rule_variables=variables,
        data_values={"de1": "High"},
    )
    # → RuleEvaluationResult(assignments={"fieldA": "Escalate"}, ...)
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from signal_manager.conditions import evaluate_condition
from signal_manager.models import (
    ActionType,
    ProgramRule,
    ProgramRuleAction,
    ProgramRuleVariable,
    RuleEvaluationResult,
)

logger = logging.getLogger(__name__)

# Action kinds that target a data element
_FIELD_ACTIONS = frozenset({
    ActionType.ASSIGN,
    ActionType.HIDEFIELD,
    ActionType.SHOWFIELD,
})


# ---------------------------------------------------------------------------
# Variable resolution
# ---------------------------------------------------------------------------

def resolve_variables(
    program_rule_variables: Iterable[ProgramRuleVariable],
    data_values: Mapping[str, Any],
) -> dict[str, Any]:
    """
    Map every rule variable's name to its data element's current value.

    A variable whose data element is missing from `data_values` (or that has
    no data element at all) resolves to None.
    """
    values: dict[str, Any] = {}
    for variable in program_rule_variables:
        field_id = variable.data_element_id
        value = data_values.get(field_id) if field_id is not None else None
        values[variable.name] = value
    return values


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def execute_program_rules(
    program_rules: Iterable[ProgramRule],
    program_rule_variables: Iterable[ProgramRuleVariable],
    data_values: Mapping[str, Any],
    log: logging.Logger | None = None,
) -> RuleEvaluationResult:
    """
    Evaluate all program rules against the current form values.

    Every rule's condition is evaluated with the resolved variables; the
    actions of each rule that holds are applied in listed order:

        Action        | Effect on the result
        --------------|-----------------------------------------------
        ASSIGN        | assignments[field] = value (last write wins)
        HIDEFIELD     | field added to hidden_fields, assignments[field] = ''
        SHOWFIELD     | field added to shown_fields
        DISPLAYTEXT   | value appended to messages
        ERROR         | "Error: <value>" appended to messages
        SHOWWARNING   | value appended to warnings

    Field actions without a data element and message actions without a value
    are skipped. Unknown action kinds are ignored.

    Args:
        program_rules:          Rules in evaluation order.
        program_rule_variables: Variables referenced as `#{name}` in conditions.
        data_values:            Field id → raw value. Read only.
        log:                    Logger for diagnostics; defaults to this
                                module's logger.

    Returns:
        RuleEvaluationResult: A fresh result owned by the caller. Hidden and
        shown sets are returned as-is, even when a field is in both.

    Examples:
        >>> execute_program_rules(rules, variables, {"de2": "15"}).hidden_fields
        {'fieldB'}
    """
    log = log or logger
    variables = resolve_variables(program_rule_variables, data_values)
    result = RuleEvaluationResult()

    for rule in program_rules:
        if not evaluate_condition(rule.condition, variables, log=log):
            continue
        log.debug("Rule %s triggered", rule.name or rule.id)
        for action in rule.program_rule_actions:
            _apply_action(result, action, log)

    return result


def _apply_action(
    result: RuleEvaluationResult,
    action: ProgramRuleAction,
    log: logging.Logger,
) -> None:
    """Fold a single action of a triggered rule into `result`."""
    try:
        kind = ActionType(action.action_type)
    except ValueError:
        log.debug("Ignoring unsupported action type %r", action.action_type)
        return

    field_id = action.field_id
    if kind in _FIELD_ACTIONS:
        if field_id is None:
            return
        if kind is ActionType.ASSIGN:
            result.assignments[field_id] = action.value if action.value is not None else ""
            log.debug("Assigned %s = %r", field_id, result.assignments[field_id])
        elif kind is ActionType.HIDEFIELD:
            # Hidden fields are never rendered, so clear any stale value too.
            result.hidden_fields.add(field_id)
            result.assignments[field_id] = ""
            log.debug("Hidden field %s and cleared its value", field_id)
        else:
            result.shown_fields.add(field_id)
        return

    if not action.value:
        return
    if kind is ActionType.DISPLAYTEXT:
        result.messages.append(action.value)
    elif kind is ActionType.ERROR:
        result.messages.append(f"Error: {action.value}")
    elif kind is ActionType.SHOWWARNING:
        result.warnings.append(action.value)
