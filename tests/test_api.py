"""
Tests for the REST API.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from slugdeploy.api import create_app
from slugdeploy.config import Settings
from slugdeploy.errors import StateError, TeardownFailure
from slugdeploy.events import EventTypes, emit_event
from slugdeploy.orchestrator import DecommissionResult
from slugdeploy.state import DeploymentState, write_state


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def descriptor(project_dir):
    return {"slug": "demo-app", "main_file": "app.py", "context": str(project_dir), "title": "Demo App"}


class TestRoot:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["message"] == "slugdeploy API is running"

    def test_projects(self, client, settings):
        """Slugs with a record are listed."""
        assert client.get("/projects").json() == {"projects": []}
        write_state(DeploymentState(slug="demo-app"), settings.home)
        assert client.get("/projects").json() == {"projects": ["demo-app"]}


class TestDeployEndpoint:
    """POST /deploy"""

    def test_accepted(self, client, descriptor):
        """A valid descriptor is accepted and its pipeline runs in the background."""
        with patch("slugdeploy.api.app.deploy") as mock_deploy:
            response = client.post("/deploy", json={**descriptor, "force_rollout": True,
                                                    "tags": {"owner": "ml-seminar"}})

        assert response.status_code == 202
        body = response.json()
        assert body["slug"] == "demo-app"
        assert body["run_id"].startswith("r-")

        spec = mock_deploy.call_args.args[0]
        assert spec.slug == "demo-app"
        assert spec.title == "Demo App"
        kwargs = mock_deploy.call_args.kwargs
        assert kwargs["force_rollout"] is True
        assert kwargs["extra_tags"] == {"owner": "ml-seminar"}
        assert kwargs["run_id"] == body["run_id"]

    def test_slug_released_after_run(self, app, client, descriptor):
        """A finished pipeline no longer blocks the slug."""
        with patch("slugdeploy.api.app.deploy", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                client.post("/deploy", json=descriptor)
        assert "demo-app" not in app.state.running

    def test_invalid_slug(self, client, descriptor):
        """Descriptor errors are 422 invalid_spec and nothing runs."""
        with patch("slugdeploy.api.app.deploy") as mock_deploy:
            response = client.post("/deploy", json={**descriptor, "slug": "Demo_App"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "invalid_spec"
        mock_deploy.assert_not_called()

    def test_missing_main_file(self, client, descriptor):
        del descriptor["main_file"]
        response = client.post("/deploy", json=descriptor)
        assert response.status_code == 422
        assert response.json()["error"]["message"] == "Missing required field: main_file"

    def test_bad_field_type(self, client, descriptor):
        """Request bodies that do not parse are 422 invalid_request."""
        response = client.post("/deploy", json={**descriptor, "cpu": "lots"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "invalid_request"
        assert "cpu" in response.json()["error"]["message"]

    def test_already_running(self, app, client, descriptor):
        """A second deploy of the same slug is refused while one is in flight."""
        app.state.running.add("demo-app")
        with patch("slugdeploy.api.app.deploy") as mock_deploy:
            response = client.post("/deploy", json=descriptor)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "deploy_in_progress"
        mock_deploy.assert_not_called()

    def test_not_configured(self, tmp_path, descriptor):
        """Missing infrastructure settings are 503 not_configured."""
        client = TestClient(create_app(Settings(home=str(tmp_path / "home"))))
        with patch("slugdeploy.api.app.deploy") as mock_deploy:
            response = client.post("/deploy", json=descriptor)

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "not_configured"
        assert "registry" in error["message"]
        mock_deploy.assert_not_called()


class TestProjectEndpoints:
    """Status, events and decommission."""

    def test_status_not_found(self, client):
        response = client.get("/projects/nobody/status")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "project_not_found"

    def test_status(self, client, settings):
        write_state(DeploymentState(slug="demo-app", service_name="sd-demo-app"), settings.home)
        emit_event("demo-app", EventTypes.DONE, {}, run_id="r-1", home=settings.home)

        body = client.get("/projects/demo-app/status").json()

        assert body["status"] == "healthy"
        assert body["public_url"] == "https://d111111abcdef8.cloudfront.net/demo-app"
        assert body["state"]["service_name"] == "sd-demo-app"

    def test_events(self, client, settings):
        """Events can be filtered to a single run."""
        emit_event("demo-app", EventTypes.INIT, {}, run_id="r-1", home=settings.home)
        emit_event("demo-app", EventTypes.INIT, {}, run_id="r-2", home=settings.home)
        emit_event("demo-app", EventTypes.DONE, {}, run_id="r-2", home=settings.home)

        assert len(client.get("/projects/demo-app/events").json()["events"]) == 3
        events = client.get("/projects/demo-app/events", params={"run_id": "r-2"}).json()["events"]
        assert [e["type"] for e in events] == ["INIT", "DONE"]

    def test_events_not_found(self, client):
        assert client.get("/projects/nobody/events").status_code == 404

    def test_decommission(self, client):
        """Purge flags are passed through and removed kinds returned."""
        done = DecommissionResult(slug="demo-app", run_id="r-9", removed=["cdn_behavior", "listener_rule"])
        with patch("slugdeploy.api.app.decommission", return_value=done) as mock_decommission:
            response = client.post("/projects/demo-app/decommission", json={"purge_secrets": True})

        assert response.status_code == 200
        assert response.json()["removed"] == ["cdn_behavior", "listener_rule"]
        assert mock_decommission.call_args.kwargs == {"purge_secrets": True, "purge_logs": False}

    def test_decommission_unknown(self, client):
        with patch("slugdeploy.api.app.decommission", side_effect=StateError("No deployment record")):
            response = client.post("/projects/nobody/decommission")
        assert response.status_code == 404

    def test_decommission_failure(self, client):
        """A removal that stops part way is a 500 naming what was already removed."""
        failed = DecommissionResult(slug="demo-app", run_id="r-9", removed=["cdn_behavior"],
                                    error=TeardownFailure("listener_rule", "AccessDenied"))
        with patch("slugdeploy.api.app.decommission", return_value=failed):
            response = client.post("/projects/demo-app/decommission")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "decommission_failed"
        assert "cdn_behavior" in error["hint"]
