"""
tests/test_dhis2_client.py
--------------------------
Tests for the DHIS2 metadata client (signal_manager/dhis2_client.py).

All HTTP traffic goes through httpx.MockTransport — no DHIS2 instance needed.

Run with:
    pytest tests/test_dhis2_client.py -v
"""

import threading

import httpx
import pytest

from signal_manager import dhis2_client
from signal_manager.config import Settings
from signal_manager.dhis2_client import (
    DHIS2NotConfigured,
    DHIS2ResponseError,
    clear_rule_configuration,
    fetch_program_rule_variables,
    fetch_program_rules,
    fetch_program_stage,
    get_dhis2_client,
    load_rule_configuration,
)


# ===========================================================================
# Mock DHIS2
# ===========================================================================

RULES_PAYLOAD = {
    "programRules": [
        {
            "id": "r1",
            "name": "Escalate high risk",
            "displayName": "Escalate high risk",
            "description": "",
            "condition": "#{Risk}=='High'",
            "priority": 1,
            "translations": [],
            "attributeValues": [],
            "programRuleActions": [
                {
                    "id": "a1",
                    "programRuleActionType": "ASSIGN",
                    "dataElement": {"id": "fieldA", "displayName": "Action"},
                    "value": "Escalate",
                    "attributeValues": [],
                },
            ],
        },
    ],
}

VARIABLES_PAYLOAD = {
    "programRuleVariables": [
        {
            "id": "v1",
            "name": "Risk",
            "displayName": "Risk",
            "program": {"id": "iaN1DovM5em"},
            "dataElement": {"id": "de1"},
            "useCodeForOptionSet": False,
            "programRuleVariableSourceType": "DATAELEMENT_CURRENT_EVENT",
            "valueType": "TEXT",
            "attributeValues": [],
        },
    ],
}

STAGE_PAYLOAD = {
    "programStageDataElements": [
        {
            "compulsory": False,
            "displayInReports": True,
            "dataElement": {"id": "de1", "name": "Risk", "valueType": "TEXT"},
        },
    ],
    "programStageSections": [
        {"name": "Triage", "sortOrder": 0, "dataElements": [{"id": "de1"}]},
    ],
}


class MockDHIS2:
    """Serves the three metadata resources and records every request."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="server error")

        path = request.url.path
        if path.endswith("/programRules.json"):
            return httpx.Response(200, json=RULES_PAYLOAD)
        if path.endswith("/programRuleVariables.json"):
            return httpx.Response(200, json=VARIABLES_PAYLOAD)
        if "/programStages/" in path:
            return httpx.Response(200, json=STAGE_PAYLOAD)
        return httpx.Response(404)

    def client(self) -> httpx.Client:
        return httpx.Client(
            base_url="https://dhis2.test/api/",
            transport=httpx.MockTransport(self),
        )


@pytest.fixture(autouse=True)
def _fresh_configuration():
    clear_rule_configuration()
    yield
    clear_rule_configuration()


# ===========================================================================
# Fetches
# ===========================================================================

class TestFetches:

    def test_fetch_program_rules_parses_actions(self):
        server = MockDHIS2()
        rules = fetch_program_rules(server.client(), "iaN1DovM5em")

        assert len(rules) == 1
        assert rules[0].condition == "#{Risk}=='High'"
        assert rules[0].priority == 1
        assert rules[0].program_rule_actions[0].field_id == "fieldA"

        params = server.requests[0].url.params
        assert params["filter"] == "program.id:eq:iaN1DovM5em"
        assert params["fields"] == "*,programRuleActions[*]"
        assert params["paging"] == "false"

    def test_fetch_program_rule_variables(self):
        variables = fetch_program_rule_variables(MockDHIS2().client(), "iaN1DovM5em")
        assert [(v.name, v.data_element_id) for v in variables] == [("Risk", "de1")]

    def test_fetch_program_stage(self):
        server = MockDHIS2()
        stage = fetch_program_stage(server.client(), "Nnnqw1XKpZL")

        assert list(stage.data_elements()) == ["de1"]
        assert stage.program_stage_sections[0].data_element_ids == ["de1"]
        assert server.requests[0].url.path == "/api/programStages/Nnnqw1XKpZL.json"

    def test_http_error_is_raised(self):
        with pytest.raises(httpx.HTTPStatusError):
            fetch_program_rules(MockDHIS2(status_code=500).client(), "iaN1DovM5em")

    def test_non_json_body_is_a_response_error(self):
        client = httpx.Client(
            base_url="https://dhis2.test/api/",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, text="<html>login</html>")
            ),
        )
        with pytest.raises(DHIS2ResponseError):
            fetch_program_rules(client, "iaN1DovM5em")

    def test_invalid_metadata_is_a_response_error(self):
        payload = {"programRuleVariables": [
            {"name": "Notes", "dataElement": {"id": "de1"}, "valueType": "LONG_TEXT"},
        ]}
        client = httpx.Client(
            base_url="https://dhis2.test/api/",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)),
        )
        with pytest.raises(DHIS2ResponseError):
            fetch_program_rule_variables(client, "iaN1DovM5em")


# ===========================================================================
# Configuration cache
# ===========================================================================

class TestRuleConfiguration:

    def test_configuration_is_loaded_once(self):
        server = MockDHIS2()
        client = server.client()

        first = load_rule_configuration(client)
        second = load_rule_configuration(client)

        assert first is second
        assert len(server.requests) == 3
        assert first.program_rules[0].name == "Escalate high risk"

    def test_clear_forces_a_refetch(self):
        server = MockDHIS2()
        client = server.client()

        load_rule_configuration(client)
        clear_rule_configuration()
        load_rule_configuration(client)

        assert len(server.requests) == 6

    def test_concurrent_first_loads_fetch_once(self):
        server = MockDHIS2()
        client = server.client()
        results = []

        threads = [
            threading.Thread(target=lambda: results.append(load_rule_configuration(client)))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(server.requests) == 3
        assert len(results) == 8
        assert all(result is results[0] for result in results)


# ===========================================================================
# Client construction
# ===========================================================================

class TestGetClient:

    @pytest.fixture(autouse=True)
    def _no_cached_client(self):
        get_dhis2_client.cache_clear()
        yield
        get_dhis2_client.cache_clear()

    def test_missing_base_url_raises(self, monkeypatch):
        monkeypatch.setattr(dhis2_client, "get_settings", lambda: Settings(dhis2_base_url=""))
        with pytest.raises(DHIS2NotConfigured):
            get_dhis2_client()

    def test_client_is_rooted_at_api(self, monkeypatch):
        settings = Settings(
            dhis2_base_url="https://play.dhis2.org/",
            dhis2_username="admin",
            dhis2_password="district",
        )
        monkeypatch.setattr(dhis2_client, "get_settings", lambda: settings)

        client = get_dhis2_client()

        assert str(client.base_url) == "https://play.dhis2.org/api/"
        assert get_dhis2_client() is client
