# backend/tests/integration/test_api.py
from chatflow.config.settings import settings

API_PREFIX = f"/api/{settings.api_version}"

ASK_NAME = {
    "name": "Ask name",
    "nodes": [
        {"id": "start", "type": "trigger.command", "config": {"command": "name"}},
        {"id": "ask", "type": "message", "config": {"text": "What is your name?", "wait_for_input": True, "save_to": "name"}},
        {"id": "reply", "type": "message", "config": {"text": "Hi {name}"}},
        {"id": "end", "type": "flow.end"},
    ],
    "connections": [
        {"id": "c1", "source": "start", "target": "ask"},
        {"id": "c2", "source": "ask", "target": "reply"},
        {"id": "c3", "source": "reply", "target": "end"},
    ],
}

SUBJECT = {"chat_id": "1001", "first_name": "Alice"}


def _save_flow(test_client, flow_id="ask_name", body=ASK_NAME):
    response = test_client.put(f"{API_PREFIX}/flows/{flow_id}", json=body)
    assert response.status_code == 200
    return response.json()


def _start(test_client, flow_id="ask_name"):
    response = test_client.post(f"{API_PREFIX}/flows/{flow_id}/start", json={"subject": SUBJECT})
    assert response.status_code == 200
    return response.json()["data"]


def test_root_and_health(test_client):
    assert test_client.get("/").json()["status"] == "operational"
    assert test_client.get("/health").json()["status"] == "healthy"
    assert test_client.get("/health/ready").json() == {"status": "ready"}


def test_metrics_endpoint(test_client):
    response = test_client.get("/metrics")
    assert response.status_code == 200
    assert "workflow_executions_started" in response.text


def test_validate_reports_issues_without_saving(test_client):
    response = test_client.post(f"{API_PREFIX}/flows/validate", json={
        "nodes": [{"id": "m", "type": "message", "config": {}}, "garbage"],
        "connections": [{"id": "x", "source": "m", "target": "ghost"}],
    })

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["is_valid"] is False
    codes = {issue["code"] for issue in body["data"]["errors"]}
    assert {"NO_TRIGGER", "MISSING_FIELD", "INVALID_NODE", "INVALID_CONNECTION"} <= codes


def test_save_flow_returns_new_versions(test_client):
    first = _save_flow(test_client)
    second = _save_flow(test_client)

    assert first["success"] is True
    assert first["data"]["version"] == 1
    assert second["data"]["version"] == 2


def test_save_invalid_flow_is_rejected(test_client):
    body = {"name": "Broken", "nodes": [{"id": "m", "type": "message", "config": {"text": "hi"}}]}
    response = test_client.put(f"{API_PREFIX}/flows/broken", json=body)

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["data"]["errors"][0]["code"] == "NO_TRIGGER"


def test_save_flow_with_unknown_node_type_is_a_request_error(test_client):
    body = {"name": "Bad", "nodes": [{"id": "x", "type": "teleport"}]}
    assert test_client.put(f"{API_PREFIX}/flows/bad", json=body).status_code == 422


def test_start_resume_and_inspect(test_client, sent_texts):
    _save_flow(test_client)
    status = _start(test_client)
    assert status["status"] == "waiting"
    assert status["wait_type"] == "input"

    response = test_client.post(f"{API_PREFIX}/events/resume", json={"chat_id": "1001", "kind": "message", "payload": "Bob"})
    assert response.json()["data"] == {"resumed": True}
    assert sent_texts()[-1] == "Hi Bob"

    execution = test_client.get(f"{API_PREFIX}/executions/{status['id']}").json()
    assert execution["data"]["status"] == "completed"

    trace = test_client.get(f"{API_PREFIX}/executions/{status['id']}/trace").json()
    assert [step["node_id"] for step in trace["data"]["steps"]] == ["start", "ask", "reply", "end"]


def test_inbound_event_is_processed_inline_when_queue_is_disabled(test_client):
    _save_flow(test_client)
    event = {"chat_id": "1001", "kind": "message", "payload": "/name", "subject": SUBJECT, "event_id": "u-1"}

    first = test_client.post(f"{API_PREFIX}/events", json=event).json()
    again = test_client.post(f"{API_PREFIX}/events", json=event).json()

    assert first["data"]["outcome"] == "started"
    assert again["data"]["outcome"] == "duplicate"


def test_cancel_and_restart(test_client, sent_texts):
    _save_flow(test_client)
    status = _start(test_client)

    cancelled = test_client.post(f"{API_PREFIX}/executions/{status['id']}/cancel").json()
    assert cancelled["data"] == {"cancelled": True}
    again = test_client.post(f"{API_PREFIX}/executions/{status['id']}/cancel").json()
    assert again["data"] == {"cancelled": False}

    restarted = test_client.post(f"{API_PREFIX}/executions/{status['id']}/restart", json={"node_id": "ask"}).json()
    assert restarted["data"]["previous_context_id"] == status["id"]
    new_status = test_client.get(f"{API_PREFIX}/executions/{restarted['data']['context_id']}").json()["data"]
    assert new_status["status"] == "waiting"
    assert new_status["parent_context_id"] == status["id"]


def test_unknown_execution_is_404(test_client):
    response = test_client.get(f"{API_PREFIX}/executions/does-not-exist")
    assert response.status_code == 404
    assert response.json()["success"] is False
    assert response.json()["data"]["error"] == "ExecutionNotFound"


def test_second_start_for_same_subject_is_409(test_client):
    _save_flow(test_client)
    _start(test_client)

    response = test_client.post(f"{API_PREFIX}/flows/ask_name/start", json={"subject": SUBJECT})
    assert response.status_code == 409
    assert response.json()["data"]["error"] == "AlreadyRunning"


def test_unknown_flow_or_node_is_422(test_client):
    missing = test_client.post(f"{API_PREFIX}/flows/nope/start", json={"subject": SUBJECT})
    assert missing.status_code == 422

    _save_flow(test_client)
    bad_node = test_client.post(f"{API_PREFIX}/flows/ask_name/start", json={"subject": SUBJECT, "start_node_id": "ghost"})
    assert bad_node.status_code == 422
    assert bad_node.json()["data"]["node_id"] == "ghost"


def test_fallback_flow_must_exist(test_client):
    response = test_client.put(f"{API_PREFIX}/flows/fallback/current", json={"flow_id": "missing"})
    assert response.status_code == 422

    _save_flow(test_client)
    response = test_client.put(f"{API_PREFIX}/flows/fallback/current", json={"flow_id": "ask_name"})
    assert response.json()["data"] == {"project_id": "default", "flow_id": "ask_name"}


def test_resume_with_nothing_waiting(test_client):
    response = test_client.post(f"{API_PREFIX}/events/resume", json={"chat_id": "42", "kind": "callback", "payload": "x"})
    assert response.status_code == 200
    assert response.json()["data"] == {"resumed": False}
