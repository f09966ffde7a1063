"""
signal_manager/dhis2_client.py
------------------------------
Initializes and exposes a singleton DHIS2 Web API client, plus the
metadata fetches the rule engine depends on.

Public API:
    get_dhis2_client()                 → cached httpx.Client singleton
    fetch_program_rules()              → list[ProgramRule] for a program
    fetch_program_rule_variables()     → list[ProgramRuleVariable] for a program
    fetch_program_stage()              → ProgramStage (data elements + sections)
    load_rule_configuration()          → cached RuleConfiguration
    clear_rule_configuration()         → drop the cache; next load refetches

Errors:
    DHIS2NotConfigured   the base URL is missing from the settings
    DHIS2ResponseError   DHIS2 answered, but not with the expected metadata
    httpx.HTTPError      transport failures and non-2xx responses
"""

from __future__ import annotations

import json
import logging
import threading
from functools import lru_cache

import httpx
from pydantic import ValidationError

from signal_manager.config import get_settings
from signal_manager.models import (
    ProgramRule,
    ProgramRuleVariable,
    ProgramStage,
    RuleConfiguration,
)

logger = logging.getLogger(__name__)

_PROGRAM_STAGE_FIELDS = (
    "programStageDataElements[compulsory,displayInReports,"
    "dataElement[id,name,formName,code,valueType,optionSetValue,"
    "optionSet[options[id,name,code]]]],"
    "programStageSections[id,name,sortOrder,description,displayName,dataElements[id]]"
)


class DHIS2NotConfigured(ValueError):
    """Raised when the settings do not name a DHIS2 instance."""


class DHIS2ResponseError(Exception):
    """Raised when a DHIS2 response cannot be read as the expected metadata."""


@lru_cache()
def get_dhis2_client() -> httpx.Client:
    """
    Return a cached DHIS2 API client.

    The client is created once and reused for the lifetime of the process.
    Base URL and credentials are pulled from the app settings (loaded from .env).

    Returns:
        httpx.Client: A client rooted at `<DHIS2_BASE_URL>/api/`.

    Raises:
        DHIS2NotConfigured: If DHIS2_BASE_URL is not set.
    """
    settings = get_settings()

    if not settings.dhis2_base_url:
        raise DHIS2NotConfigured("DHIS2_BASE_URL must be set in your .env file.")

    auth = None
    if settings.dhis2_username:
        auth = (settings.dhis2_username, settings.dhis2_password)

    return httpx.Client(
        base_url=settings.dhis2_base_url.rstrip("/") + "/api/",
        auth=auth,
        timeout=settings.dhis2_timeout,
        headers={"Accept": "application/json"},
    )


# ---------------------------------------------------------------------------
# Metadata fetches
# ---------------------------------------------------------------------------

def _get_json(client: httpx.Client, resource: str, params: dict) -> dict:
    resp = client.get(resource, params=params)
    if not resp.is_success:
        logger.error("DHIS2 %s HTTP %s: %s", resource, resp.status_code, resp.text)
    resp.raise_for_status()
    try:
        data = resp.json()
    except json.JSONDecodeError as exc:
        logger.error("DHIS2 %s returned a non-JSON body: %.200s", resource, resp.text)
        raise DHIS2ResponseError(f"DHIS2 {resource} did not return JSON") from exc
    if not isinstance(data, dict):
        raise DHIS2ResponseError(f"DHIS2 {resource} did not return a JSON object")
    return data


def _validate(model, payload, resource: str):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        logger.error("DHIS2 %s returned invalid %s: %s", resource, model.__name__, exc)
        raise DHIS2ResponseError(
            f"DHIS2 {resource} returned an invalid {model.__name__}"
        ) from exc


def fetch_program_rules(client: httpx.Client, program_id: str) -> list[ProgramRule]:
    """Fetch every program rule (with its actions) of a program."""
    data = _get_json(client, "programRules.json", {
        "filter": f"program.id:eq:{program_id}",
        "fields": "*,programRuleActions[*]",
        "paging": "false",
    })
    rules = [
        _validate(ProgramRule, r, "programRules.json")
        for r in data.get("programRules", [])
    ]
    logger.info("Loaded %d program rules for program=%s", len(rules), program_id)
    return rules


def fetch_program_rule_variables(
    client: httpx.Client,
    program_id: str,
) -> list[ProgramRuleVariable]:
    """Fetch every program rule variable of a program."""
    data = _get_json(client, "programRuleVariables.json", {
        "filter": f"program.id:eq:{program_id}",
        "fields": "*",
        "paging": "false",
    })
    variables = [
        _validate(ProgramRuleVariable, v, "programRuleVariables.json")
        for v in data.get("programRuleVariables", [])
    ]
    logger.info(
        "Loaded %d program rule variables for program=%s",
        len(variables), program_id,
    )
    return variables


def fetch_program_stage(client: httpx.Client, program_stage_id: str) -> ProgramStage:
    """Fetch the data elements and sections of a program stage."""
    resource = f"programStages/{program_stage_id}.json"
    data = _get_json(client, resource, {"fields": _PROGRAM_STAGE_FIELDS})
    return _validate(ProgramStage, data, resource)


# ---------------------------------------------------------------------------
# Rule configuration
# ---------------------------------------------------------------------------

_configuration: RuleConfiguration | None = None
_configuration_lock = threading.Lock()


def load_rule_configuration(client: httpx.Client | None = None) -> RuleConfiguration:
    """
    Return the signal program's rule configuration, fetching it on first use.

    The rules, variables and program stage are fetched together and replaced
    as a whole; call clear_rule_configuration() to force a refetch. Concurrent
    first calls wait on one fetch instead of each issuing their own.

    Raises:
        DHIS2NotConfigured:    If the DHIS2 client is not configured.
        DHIS2ResponseError:    If a response is not the expected metadata.
        httpx.HTTPError:       If any of the metadata requests fail.
    """
    global _configuration
    with _configuration_lock:
        if _configuration is not None:
            return _configuration

        settings = get_settings()
        client = client or get_dhis2_client()

        configuration = RuleConfiguration(
            program_rules=fetch_program_rules(client, settings.program_id),
            program_rule_variables=fetch_program_rule_variables(client, settings.program_id),
            program_stage=fetch_program_stage(client, settings.program_stage_id),
        )
        _configuration = configuration
        return configuration


def clear_rule_configuration() -> None:
    """Forget the cached configuration."""
    global _configuration
    with _configuration_lock:
        _configuration = None
    logger.info("Rule configuration cache cleared")
