"""
signal_manager/models.py
------------------------
Program-rule metadata as served by the DHIS2 Web API, plus the result
object produced by one rule-engine pass.

The metadata models mirror the JSON the platform returns from
`programRules.json`, `programRuleVariables.json` and
`programStages/<id>.json`: camelCase keys are accepted through aliases,
unknown keys are ignored, and instances are frozen once parsed.

    ProgramRuleVariable   name → data element binding used in conditions
    ProgramRule           condition + ordered ProgramRuleActions
    ProgramRuleAction     one effect (ASSIGN, HIDEFIELD, ...) of a rule
    ProgramStage          data elements + sections of the signal form
    RuleConfiguration     everything above, loaded and replaced as a unit
    RuleEvaluationResult  what a single evaluation pass produced
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field


# A raw form value as held by the form layer.
FieldValue = Union[str, bool, int, float, None]


class ValueType(str, Enum):
    """Value kind of a program rule variable."""
    TEXT    = "TEXT"
    NUMBER  = "NUMBER"
    BOOLEAN = "BOOLEAN"
    DATE    = "DATE"


class ActionType(str, Enum):
    """Program rule action kinds the engine knows how to apply."""
    ASSIGN      = "ASSIGN"
    HIDEFIELD   = "HIDEFIELD"
    SHOWFIELD   = "SHOWFIELD"
    DISPLAYTEXT = "DISPLAYTEXT"
    ERROR       = "ERROR"
    SHOWWARNING = "SHOWWARNING"


class _Metadata(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


# ---------------------------------------------------------------------------
# Program rules
# ---------------------------------------------------------------------------

class Reference(_Metadata):
    """`{"id": ..., "displayName": ...}` pointer to another metadata object."""
    id: str
    display_name: str | None = Field(default=None, alias="displayName")


class ProgramRuleVariable(_Metadata):
    name: str
    data_element: Reference | None = Field(default=None, alias="dataElement")
    value_type: ValueType = Field(default=ValueType.TEXT, alias="valueType")
    id: str | None = None
    display_name: str | None = Field(default=None, alias="displayName")
    source_type: str | None = Field(
        default=None, alias="programRuleVariableSourceType"
    )
    use_code_for_option_set: bool = Field(
        default=False, alias="useCodeForOptionSet"
    )

    @property
    def data_element_id(self) -> str | None:
        return self.data_element.id if self.data_element else None


class ProgramRuleAction(_Metadata):
    # Kept as a plain string: action kinds added on the platform later
    # must still parse (the engine ignores them).
    action_type: str = Field(alias="programRuleActionType")
    data_element: Reference | None = Field(default=None, alias="dataElement")
    value: str | None = None
    id: str | None = None

    @property
    def field_id(self) -> str | None:
        return self.data_element.id if self.data_element else None


class ProgramRule(_Metadata):
    condition: str = ""
    program_rule_actions: list[ProgramRuleAction] = Field(
        default_factory=list, alias="programRuleActions"
    )
    # Carried for completeness; evaluation order is order of receipt.
    priority: int | None = None
    id: str | None = None
    name: str | None = None
    display_name: str | None = Field(default=None, alias="displayName")
    description: str | None = None


# ---------------------------------------------------------------------------
# Program stage (form schema)
# ---------------------------------------------------------------------------

class Option(_Metadata):
    id: str | None = None
    code: str
    name: str


class OptionSet(_Metadata):
    options: list[Option] = Field(default_factory=list)


class DataElement(_Metadata):
    id: str
    name: str | None = None
    form_name: str | None = Field(default=None, alias="formName")
    code: str | None = None
    # Free string: stages use LONG_TEXT, INTEGER, AGE, ... beyond ValueType.
    value_type: str = Field(default="TEXT", alias="valueType")
    option_set_value: bool = Field(default=False, alias="optionSetValue")
    option_set: OptionSet | None = Field(default=None, alias="optionSet")


class ProgramStageDataElement(_Metadata):
    data_element: DataElement = Field(alias="dataElement")
    compulsory: bool = False
    display_in_reports: bool = Field(default=False, alias="displayInReports")


class ProgramStageSection(_Metadata):
    name: str
    description: str | None = None
    display_name: str | None = Field(default=None, alias="displayName")
    sort_order: int = Field(default=0, alias="sortOrder")
    data_elements: list[Reference] = Field(
        default_factory=list, alias="dataElements"
    )

    @property
    def data_element_ids(self) -> list[str]:
        return [de.id for de in self.data_elements]


class ProgramStage(_Metadata):
    program_stage_data_elements: list[ProgramStageDataElement] = Field(
        default_factory=list, alias="programStageDataElements"
    )
    program_stage_sections: list[ProgramStageSection] = Field(
        default_factory=list, alias="programStageSections"
    )

    def data_elements(self) -> dict[str, DataElement]:
        """Data elements of the stage keyed by id."""
        return {
            psde.data_element.id: psde.data_element
            for psde in self.program_stage_data_elements
        }


class RuleConfiguration(_Metadata):
    """Rules, variables and form schema fetched together for one program."""
    program_rules: list[ProgramRule] = Field(default_factory=list)
    program_rule_variables: list[ProgramRuleVariable] = Field(default_factory=list)
    program_stage: ProgramStage = Field(default_factory=ProgramStage)


# ---------------------------------------------------------------------------
# Evaluation result
# ---------------------------------------------------------------------------

@dataclass
class RuleEvaluationResult:
    """Effects accumulated from every rule whose condition held."""
    assignments: dict[str, Any] = field(default_factory=dict)
    hidden_fields: set[str] = field(default_factory=set)
    shown_fields: set[str] = field(default_factory=set)
    messages: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        """JSON-ready form, sets rendered as sorted lists."""
        return {
            "assignments": dict(self.assignments),
            "hiddenFields": sorted(self.hidden_fields),
            "shownFields": sorted(self.shown_fields),
            "messages": list(self.messages),
            "warnings": list(self.warnings),
        }
