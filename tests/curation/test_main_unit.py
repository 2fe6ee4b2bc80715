"""Unit tests for service wiring and the ops endpoints."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from src.curation import main
from src.curation.config import CurationSettings
from src.curation.events.emitter import RecordingEventEmitter
from src.curation.gates.builtin import DUPLICATION_GATE, PREREQUISITE_GATE
from src.curation.gates.similarity import ApprovedItemIndex
from src.curation.state.memory import InMemoryItemRepository


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def in_memory_env(monkeypatch):
    monkeypatch.delenv("CURATION_DATABASE_URL", raising=False)
    monkeypatch.delenv("CURATION_TRANSFORMATION_URL", raising=False)
    monkeypatch.setenv("CURATION_EVENT_SINKS", '["logging"]')


class TestBuildServices:
    def test_without_database_uses_in_memory_repositories(self):
        services = main.build_services(CurationSettings(), event_emitter=RecordingEventEmitter())

        assert services.database is None
        assert isinstance(services.engine.repository, InMemoryItemRepository)
        duplication = services.gate_engine.registry.get(DUPLICATION_GATE)
        assert isinstance(duplication.index, ApprovedItemIndex)
        prerequisites = services.gate_engine.registry.get(PREREQUISITE_GATE)
        assert prerequisites.lookup.repository is services.engine.repository
        assert services.transformation_service is None
        assert services.feedback_loop.regenerator is None

    def test_transformation_url_enables_transformation(self):
        cfg = CurationSettings(transformation_url="http://transformer:8000", max_retries=2)

        services = main.build_services(cfg, event_emitter=RecordingEventEmitter())

        assert services.transformation_service is not None
        assert services.feedback_loop.regenerator is services.transformation_client
        assert services.feedback_loop.max_retries == 2

    def test_settings_reach_the_services(self):
        cfg = CurationSettings(max_gate_attempts=4, auto_approve=True, batch_size=7)

        services = main.build_services(cfg, event_emitter=RecordingEventEmitter())

        assert services.gate_engine.max_attempts == 4
        assert services.runner.auto_approve is True
        assert services.runner.batch_size == 7


class TestRedactSecret:
    def test_unset_value(self):
        assert main._redact_secret(None) == "<unset>"

    def test_short_value_is_fully_hidden(self):
        assert main._redact_secret("abc") == "***"

    def test_prefix_is_kept(self):
        assert main._redact_secret("postgresql://user:pw@db", 13) == "postgresql://" + "*" * 10


class TestEndpoints:
    def test_health(self):
        client = TestClient(main.app)

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_metrics_are_prometheus_text(self):
        client = TestClient(main.app)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")

    def test_not_ready_before_startup(self, monkeypatch):
        monkeypatch.setattr(main, "services", None)
        monkeypatch.setattr(main, "runner_task", None)

        response = run_async(main.ready())

        assert response.status_code == 503
        body = json.loads(response.body)
        assert body["dependencies"] == {"database": "unavailable", "runner": "stopped"}

    def test_ready_once_runner_is_running(self, monkeypatch):
        services = main.build_services(CurationSettings(), event_emitter=RecordingEventEmitter())
        monkeypatch.setattr(main, "services", services)

        async def test():
            task = asyncio.create_task(asyncio.sleep(10))
            monkeypatch.setattr(main, "runner_task", task)
            try:
                return await main.ready()
            finally:
                task.cancel()

        response = run_async(test())

        assert response.status_code == 200
        body = json.loads(response.body)
        assert body["dependencies"] == {"database": "in_memory", "runner": "running"}

    def test_lifespan_starts_and_stops_runner(self, in_memory_env):
        with TestClient(main.app) as client:
            response = client.get("/ready")
            assert response.status_code == 200
            assert main.services.database is None
            task = main.runner_task

        assert task.done()
        assert main.runner_task is None
