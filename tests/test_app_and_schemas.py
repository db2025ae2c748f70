import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from stepflow import app as app_module
from stepflow.api import schemas
from stepflow.config import reset_settings_cache


@pytest.fixture
def settings_env(monkeypatch):
    """Re-read settings after env overrides and restore the cache afterwards."""

    reset_settings_cache()
    yield monkeypatch
    reset_settings_cache()


def test_health_and_cors(settings_env):
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["version"] == app_module.__version__
    assert body["checks"]["scheduler"] == {"status": "stopped"}
    assert body["checks"]["model"] == {"status": "offline"}
    assert body["checks"]["email"] == {"status": "not_configured"}
    assert body["activeRuns"] == 0
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_request_id_is_echoed():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"X-Request-ID": "req-abc"})
    assert response.headers["X-Request-ID"] == "req-abc"

    generated = client.get("/healthz").headers["X-Request-ID"]
    assert len(generated) == 36


def test_allowed_origins_default(settings_env):
    settings_env.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reset_settings_cache()
    origins = app_module._allowed_origins()
    assert "http://localhost" in origins
    assert "http://127.0.0.1:5173" in origins


def test_allowed_origins_override(settings_env):
    settings_env.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://demo.local")
    reset_settings_cache()
    origins = app_module._allowed_origins()
    assert origins == ["https://example.com", "https://demo.local"]


def test_envelope_status_validation():
    with pytest.raises(ValidationError):
        schemas.Envelope(status="pending")


def test_run_request_aliases_and_limits():
    req = schemas.RunWorkflowRequest.model_validate(
        {"definition": {"nodes": []}, "tenantId": "acme", "timeoutMs": 1000}
    )
    assert req.tenant_id == "acme"
    assert req.timeout_ms == 1000
    assert req.input == ""

    with pytest.raises(ValidationError):
        schemas.RunWorkflowRequest(definition={}, timeout_ms=0)
    with pytest.raises(ValidationError):
        schemas.RunWorkflowRequest(definition={}, input="x" * (schemas.MAX_INPUT_LENGTH + 1))


def test_requests_reject_unknown_fields():
    with pytest.raises(ValidationError):
        schemas.AgentRequest.model_validate({"definition": {}, "colour": "blue"})


def test_agent_request_defaults_do_not_share_state():
    first = schemas.AgentRequest(definition={})
    first.notify_emails.append("ops@example.com")
    second = schemas.AgentRequest(definition={})
    assert second.notify_emails == []
    assert second.status == "active"
