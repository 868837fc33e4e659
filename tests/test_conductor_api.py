from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from srebench.conductor import conductor_api
from srebench.conductor.constants import State
from srebench.conductor.trace import TRANSITION, ExecutionTrace


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.run_id = "r1"
    engine.state = State.DEGRADED
    engine.report = None
    engine.trace = ExecutionTrace("r1", "broken-web")
    engine.trace.append(TRANSITION, "Provisioning", **{"from": None, "reason": "run started"})
    engine.trace.append(TRANSITION, "BaselineDeploying", **{"from": "Provisioning", "reason": "cluster ready"})
    engine.status.return_value = {"runId": "r1", "state": "Degraded", "remaining": 42.0}
    conductor_api.set_engine(engine)
    yield engine
    conductor_api.set_engine(None)


@pytest.fixture
def client():
    return TestClient(conductor_api.app)


def test_no_engine_is_a_400(client):
    conductor_api.set_engine(None)
    response = client.get("/status")
    assert response.status_code == 400
    assert response.json()["detail"] == "No scenario has been started"


def test_status(client, engine):
    response = client.get("/status")
    assert response.status_code == 200
    assert response.json() == {"runId": "r1", "state": "Degraded", "remaining": 42.0}


def test_trace_tail(client, engine):
    everything = client.get("/trace").json()
    assert everything["runId"] == "r1"
    assert [e["state"] for e in everything["entries"]] == ["Provisioning", "BaselineDeploying"]

    tail = client.get("/trace", params={"since": 1}).json()["entries"]
    assert [e["seq"] for e in tail] == [1]
    assert tail[0]["detail"]["from"] == "Provisioning"


def test_report_before_and_after_the_run(client, engine):
    assert client.get("/report").status_code == 409

    engine.report = MagicMock()
    engine.report.to_dict.return_value = {"outcome": "Recovered"}
    assert client.get("/report").json() == {"outcome": "Recovered"}


def test_remediation_is_forwarded(client, engine):
    engine.notify_remediation.return_value = True

    response = client.post("/remediation", json={"note": "rolled back", "agent": "agent-1"})

    assert response.status_code == 200
    assert response.json() == {"accepted": True, "state": "Degraded"}
    engine.notify_remediation.assert_called_once_with("rolled back", "agent-1")


def test_remediation_after_the_run_is_a_409(client, engine):
    engine.notify_remediation.return_value = False
    engine.state = State.TIMED_OUT
    response = client.post("/remediation", json={})
    assert response.status_code == 409
    assert "TimedOut" in response.json()["detail"]


def test_request_shutdown_flags_the_server():
    server = MagicMock()
    server.should_exit = False
    conductor_api._server = server
    try:
        conductor_api.request_shutdown()
        assert server.should_exit is True
    finally:
        conductor_api._server = None
        conductor_api._shutdown_event.clear()
