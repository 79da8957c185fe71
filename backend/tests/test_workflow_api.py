"""Tests for the workflow persistence REST API."""

from __future__ import annotations

import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.automation.workflow.templates import PRICE_REPLY
from backend.automation.workflow.triggers import TriggerEvaluator

HEADERS = {"X-Organization-Id": "org-1"}


def test_workflow_roundtrip(client):
    create_response = client.post("/api/workflows", json={"name": "Pipeline"}, headers=HEADERS)
    assert create_response.status_code == 201
    created = create_response.get_json()
    assert created["name"] == "Pipeline"
    assert created["organization_id"] == "org-1"
    assert created["is_active"] is False
    assert created["trigger_type"] == "manual"
    assert created["graph"] == {"nodes": [], "edges": []}

    list_response = client.get("/api/workflows", headers=HEADERS)
    assert list_response.status_code == 200
    listed = list_response.get_json()
    assert [workflow["id"] for workflow in listed] == [created["id"]]
    assert "graph" not in listed[0]

    assert client.get("/api/workflows", headers={"X-Organization-Id": "org-2"}).get_json() == []

    detail_response = client.get(f"/api/workflows/{created['id']}")
    assert detail_response.status_code == 200
    assert detail_response.get_json()["name"] == "Pipeline"

    graph = PRICE_REPLY.definition()
    update_response = client.put(
        f"/api/workflows/{created['id']}",
        json={"graph": graph, "trigger_type": "keyword", "trigger_config": {"keywords": ["precio"]}},
    )
    assert update_response.status_code == 200
    updated = update_response.get_json()
    assert updated["graph"] == graph
    assert updated["trigger_config"] == {"keywords": ["precio"]}

    delete_response = client.delete(f"/api/workflows/{created['id']}")
    assert delete_response.status_code == 204
    assert client.get(f"/api/workflows/{created['id']}").status_code == 404


def test_create_requires_organization_and_name(client):
    assert client.post("/api/workflows", json={"name": "Nobody"}).status_code == 400
    assert client.post("/api/workflows", json={"name": " "}, headers=HEADERS).status_code == 400

    in_body = client.post("/api/workflows", json={"name": "Body", "organizationId": "org-3"})
    assert in_body.status_code == 201
    assert in_body.get_json()["organization_id"] == "org-3"


def test_workflow_name_must_be_unique(client):
    first = client.post("/api/workflows", json={"name": "Alpha"}, headers=HEADERS)
    assert first.status_code == 201

    conflict = client.post("/api/workflows", json={"name": "alpha"}, headers=HEADERS)
    assert conflict.status_code == 409

    other_org = client.post("/api/workflows", json={"name": "Alpha"}, headers={"X-Organization-Id": "org-2"})
    assert other_org.status_code == 201

    second = client.post("/api/workflows", json={"name": "Beta"}, headers=HEADERS)
    rename_conflict = client.put(f"/api/workflows/{second.get_json()['id']}", json={"name": "ALPHA"})
    assert rename_conflict.status_code == 409


def test_invalid_trigger_and_graph_are_rejected(client):
    bad_trigger = client.post(
        "/api/workflows",
        json={"name": "Bad", "trigger_type": "telepathy"},
        headers=HEADERS,
    )
    assert bad_trigger.status_code == 400
    assert "trigger_type" in " ".join(bad_trigger.get_json()["errors"])

    bad_match = client.post(
        "/api/workflows",
        json={"name": "Bad", "trigger_type": "keyword", "trigger_config": {"match_type": "fuzzy"}},
        headers=HEADERS,
    )
    assert bad_match.status_code == 400

    bad_regex = client.post(
        "/api/workflows",
        json={
            "name": "Bad",
            "trigger_type": "keyword",
            "trigger_config": {"keywords": ["(precio"], "match_type": "regex"},
        },
        headers=HEADERS,
    )
    assert bad_regex.status_code == 400
    assert "invalid regular expression" in " ".join(bad_regex.get_json()["errors"])

    bad_graph = client.post("/api/workflows", json={"name": "Bad", "graph": "{nope"}, headers=HEADERS)
    assert bad_graph.status_code == 400
    assert bad_graph.get_json()["errors"] == ["graph must be valid JSON"]


def test_activation_validates_the_graph(client):
    created = client.post("/api/workflows", json={"name": "Draft"}, headers=HEADERS).get_json()

    refused = client.post(f"/api/workflows/{created['id']}/activate")
    assert refused.status_code == 400
    assert refused.get_json()["errors"]

    client.put(f"/api/workflows/{created['id']}", json={"graph": PRICE_REPLY.definition()})
    activated = client.post(f"/api/workflows/{created['id']}/activate")
    assert activated.status_code == 200
    assert activated.get_json()["is_active"] is True

    broken = client.put(f"/api/workflows/{created['id']}", json={"graph": {"nodes": [], "edges": []}})
    assert broken.status_code == 400
    assert client.get(f"/api/workflows/{created['id']}").get_json()["graph"] == PRICE_REPLY.definition()

    deactivated = client.post(f"/api/workflows/{created['id']}/deactivate")
    assert deactivated.get_json()["is_active"] is False


def test_create_active_workflow_requires_valid_graph(client):
    refused = client.post("/api/workflows", json={"name": "Live", "is_active": True}, headers=HEADERS)
    assert refused.status_code == 400

    created = client.post(
        "/api/workflows",
        json={"name": "Live", "is_active": True, "graph_json": PRICE_REPLY.definition()},
        headers=HEADERS,
    )
    assert created.status_code == 201
    assert created.get_json()["is_active"] is True


def test_validate_endpoint(client):
    valid = client.post("/api/workflows/validate", json={"graph": PRICE_REPLY.definition()})
    assert valid.status_code == 200
    assert valid.get_json() == {"valid": True, "errors": []}

    invalid = client.post(
        "/api/workflows/validate",
        json={"graph": {"nodes": [{"id": "a", "type": "action"}], "edges": [{"from": "a", "to": "b"}]}},
    )
    body = invalid.get_json()
    assert body["valid"] is False
    assert body["errors"]

    missing = client.post("/api/workflows/validate", json={})
    assert missing.get_json() == {"valid": False, "errors": ["graph is required"]}


def test_workflow_with_executions_cannot_be_deleted(client, workflow_factory, message_event, fake_adapters):
    workflow = workflow_factory(PRICE_REPLY.definition(), trigger_config=PRICE_REPLY.trigger_config)
    assert TriggerEvaluator().evaluate(message_event("precio"))

    response = client.delete(f"/api/workflows/{workflow.id}")

    assert response.status_code == 409
    assert client.get(f"/api/workflows/{workflow.id}").status_code == 200
