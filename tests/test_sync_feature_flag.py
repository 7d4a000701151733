import json

import pytest
from flask import Flask

from sync_app.engine import SYNC_EXTENSION_KEY, init_sync_engine
from sync_app.engine.jobs import UnknownJobFamilyError


def build_app(enabled=False, families=(), **overrides):
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        SYNC_ENABLED=enabled,
        SYNC_JOB_FAMILIES=tuple(families),
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
    )
    app.config.update(overrides)

    init_sync_engine(app)
    return app


def test_sync_disabled_registers_stub_cli(monkeypatch):
    called = {"flag": False}

    def record_call(*args, **kwargs):
        called["flag"] = True
        return {}

    monkeypatch.setattr("sync_app.engine.container.build_job_services", record_call)

    app = build_app(enabled=False)

    assert called["flag"] is False, "job services should not be built when sync is disabled"
    assert "sync" not in app.blueprints

    runner = app.test_cli_runner()
    result = runner.invoke(args=["sync"])
    assert result.exit_code != 0
    assert "Sync commands are unavailable" in result.output

    state = app.extensions[SYNC_EXTENSION_KEY]
    assert state["enabled"] is False
    assert state["job_services"] == {}


def test_sync_enabled_registers_blueprint_and_cli():
    app = build_app(enabled=True, families=("export", "sync"))

    assert "sync" in app.blueprints
    assert "sync.sync_healthcheck" in app.view_functions

    client = app.test_client()
    response = client.get("/sync/health")
    assert response.status_code == 200
    payload = json.loads(response.data)
    assert payload["enabled"] is True
    assert payload["families"] == ["export", "sync"]
    assert payload["queues_ready"] == {"export": True, "sync": True}
    assert payload["running_syncs"] == []

    runner = app.test_cli_runner()
    result = runner.invoke(args=["sync"])
    assert result.exit_code == 0
    assert "- export" in result.output
    assert "- sync" in result.output

    state = app.extensions[SYNC_EXTENSION_KEY]
    assert state["enabled"] is True
    assert set(state["job_services"]) == {"export", "sync"}
    assert state["celery_app"] is not None


def test_sync_families_accept_comma_separated_string():
    app = build_app(enabled=True, families=(), SYNC_JOB_FAMILIES="thumbnail, export")

    assert set(app.extensions[SYNC_EXTENSION_KEY]["job_services"]) == {"thumbnail", "export"}


def test_sync_unknown_family_raises():
    with pytest.raises(UnknownJobFamilyError):
        build_app(enabled=True, families=("unknown",))


def test_queues_not_ready_without_worker_or_eager_mode():
    app = build_app(enabled=True, families=("export",), CELERY_CONFIG={}, SYNC_WORKER_ENABLED=False)

    service = app.extensions[SYNC_EXTENSION_KEY]["job_services"]["export"]
    assert service.celery_app is None
    assert service.is_ready() is False

    response = app.test_client().get("/sync/health")
    assert json.loads(response.data)["queues_ready"] == {"export": False}


def test_worker_health_reports_disabled_worker_flag():
    app = build_app(enabled=True, families=("export",))

    response = app.test_client().get("/sync/worker_health")

    assert response.status_code == 200
    payload = json.loads(response.data)
    assert payload["status"] == "disabled"
    assert payload["sync_enabled"] is True
    assert payload["worker_enabled"] is False


def test_worker_health_runs_heartbeat_when_worker_enabled():
    app = build_app(enabled=True, families=("export",), SYNC_WORKER_ENABLED=True)

    response = app.test_client().get("/sync/worker_health?timeout=2")

    assert response.status_code == 200
    payload = json.loads(response.data)
    assert payload["status"] == "ok"
    assert payload["heartbeat"]["status"] == "ok"
    assert payload["timeout_seconds"] == 2.0
