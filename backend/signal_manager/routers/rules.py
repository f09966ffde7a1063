"""
signal_manager/routers/rules.py
-------------------------------
HTTP surface over the program-rule engine.

Endpoints:
  POST /rules/evaluate    run rules over a set of data values
  POST /rules/condition   evaluate a single condition (for rule authors)
  POST /rules/form        one full form cycle against the signal program
  POST /rules/refresh     drop the cached DHIS2 rule configuration

When a request does not carry its own rules/variables, the configuration of
the signal program is loaded from DHIS2 (see dhis2_client) and reused until
refreshed.

Flow (/rules/evaluate):
  body { programRules?, programRuleVariables?, dataValues }
      │
      ▼
  condition length check (max_condition_length)
      │
      ▼
  execute_program_rules()
      │
      ▼
  { assignments, hiddenFields, shownFields, messages, warnings }
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import httpx
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from signal_manager.conditions import (
    evaluate_condition,
    normalize_operators,
    substitute_variables,
)
from signal_manager.config import get_settings
from signal_manager.dhis2_client import (
    DHIS2NotConfigured,
    DHIS2ResponseError,
    clear_rule_configuration,
    load_rule_configuration,
)
from signal_manager.form import evaluate_form
from signal_manager.models import (
    FieldValue,
    ProgramRule,
    ProgramRuleVariable,
    RuleConfiguration,
)
from signal_manager.rule_engine import execute_program_rules

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rules", tags=["Program Rules"])


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EvaluateRequest(_Body):
    program_rules: list[ProgramRule] | None = Field(default=None, alias="programRules")
    program_rule_variables: list[ProgramRuleVariable] | None = Field(
        default=None, alias="programRuleVariables"
    )
    data_values: dict[str, FieldValue] = Field(default_factory=dict, alias="dataValues")


class ConditionRequest(_Body):
    condition: str
    variables: dict[str, FieldValue] = Field(default_factory=dict)


class FormRequest(_Body):
    data_values: dict[str, FieldValue] = Field(default_factory=dict, alias="dataValues")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/evaluate", summary="Run program rules over data values")
def evaluate_rules(body: EvaluateRequest) -> JSONResponse:
    """
    Evaluate program rules against one snapshot of form values.

    Rules and variables may be sent inline (e.g. while authoring them);
    whatever is omitted is taken from the signal program's configuration.
    """
    rules = body.program_rules
    variables = body.program_rule_variables

    if rules is None or variables is None:
        configuration = _configuration()
        if rules is None:
            rules = configuration.program_rules
        if variables is None:
            variables = configuration.program_rule_variables

    _check_condition_lengths(rule.condition for rule in rules)

    result = execute_program_rules(rules, variables, body.data_values)
    logger.info(
        "Rules evaluated: rules=%d  assignments=%d  hidden=%d  messages=%d",
        len(rules), len(result.assignments), len(result.hidden_fields),
        len(result.messages),
    )
    return JSONResponse(result.as_dict())


@router.post("/condition", summary="Evaluate a single rule condition")
def check_condition(body: ConditionRequest) -> JSONResponse:
    """
    Show how a condition is rewritten and what it evaluates to.

    Response:
        { "condition": "...", "normalized": "...", "result": true | false }
    """
    _check_condition_lengths([body.condition])

    normalized = normalize_operators(substitute_variables(body.condition, body.variables))
    return JSONResponse({
        "condition":  body.condition,
        "normalized": normalized,
        "result":     evaluate_condition(body.condition, body.variables),
    })


@router.post("/form", summary="Run one signal form cycle")
def evaluate_signal_form(body: FormRequest) -> JSONResponse:
    """
    Coerce the values, run the program's rules, apply assignments and
    return the visible sections of the signal form.
    """
    configuration = _configuration()
    _check_condition_lengths(rule.condition for rule in configuration.program_rules)

    state = evaluate_form(configuration, body.data_values)
    return JSONResponse(state.as_dict())


@router.post("/refresh", summary="Refetch the rule configuration")
def refresh_configuration() -> JSONResponse:
    """Forget the cached configuration; the next request reloads it from DHIS2."""
    clear_rule_configuration()
    return JSONResponse({"status": "cleared"})


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------

def _configuration() -> RuleConfiguration:
    """Load the signal program configuration, mapping failures to HTTP errors."""
    try:
        return load_rule_configuration()
    except DHIS2NotConfigured as exc:
        logger.error("DHIS2 is not configured: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc))
    except (httpx.HTTPError, DHIS2ResponseError) as exc:
        logger.error("Failed to load rule configuration from DHIS2: %s", exc)
        raise HTTPException(status_code=502, detail="Could not load program rules from DHIS2")


def _check_condition_lengths(conditions: Iterable[Any]) -> None:
    limit = get_settings().max_condition_length
    for condition in conditions:
        if len(condition) > limit:
            logger.warning("Rejected condition of length %d (limit %d)", len(condition), limit)
            raise HTTPException(
                status_code=422,
                detail=f"Rule condition exceeds {limit} characters",
            )
