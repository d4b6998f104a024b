"""
Tests for tags, deployment records, event logs and run ids.
"""

import json

import pytest

from slugdeploy.envman import redact_data, redact_secrets
from slugdeploy.events import (
    EventTypes, emit_event, get_status_from_events, read_events, tail_events,
)
from slugdeploy.ids import is_valid_run_id, new_run_id
from slugdeploy.state import (
    DeploymentState, delete_state, get_project_dir, list_projects,
    read_state, write_state,
)
from slugdeploy.tags import (
    aws_tags, base_tags, ecs_tags, parse_user_tags,
)


class TestTags:
    """Resource tag helpers."""

    def test_base_tags(self):
        """Every resource carries project, slug and managed-by."""
        assert base_tags("demo-app") == {
            "project": "slugdeploy",
            "slug": "demo-app",
            "managed-by": "slugdeploy",
        }

    def test_reserved_keys_win(self):
        """User tags cannot override the ownership tags."""
        tags = base_tags("demo-app", {"slug": "other", "owner": "ml-seminar"})
        assert tags["slug"] == "demo-app"
        assert tags["owner"] == "ml-seminar"

    def test_parse_user_tags(self):
        """key=value strings, split on the first '='."""
        assert parse_user_tags(["owner=ml-seminar", " term = 2024=fall "]) == {
            "owner": "ml-seminar",
            "term": "2024=fall",
        }

    @pytest.mark.parametrize("bad", ["owner", "=x", "owner="])
    def test_parse_user_tags_rejects(self, bad):
        """Missing '=' or empty halves are errors."""
        with pytest.raises(ValueError, match="Invalid tag format"):
            parse_user_tags([bad])

    def test_shapes(self):
        """ECS uses lowercase keys, everyone else Key/Value."""
        tags = {"slug": "a", "project": "slugdeploy"}
        assert ecs_tags(tags) == [{"key": "project", "value": "slugdeploy"}, {"key": "slug", "value": "a"}]
        assert aws_tags(tags)[0] == {"Key": "project", "Value": "slugdeploy"}
        assert aws_tags(tags)[1] == {"Key": "slug", "Value": "a"}


class TestState:
    """Deployment records on disk."""

    def test_missing_state(self, tmp_path):
        """Never-deployed slugs have no record."""
        assert read_state("demo-app", str(tmp_path)) is None

    def test_write_then_read(self, tmp_path):
        """A written record reads back with timestamps stamped."""
        state = DeploymentState(slug="demo-app", image_digest="sha256:" + "b" * 64, rule_priority=3)
        write_state(state, str(tmp_path))

        loaded = read_state("demo-app", str(tmp_path))

        assert loaded.image_digest == state.image_digest
        assert loaded.rule_priority == 3
        assert loaded.created_at and loaded.updated_at
        assert not (tmp_path / "demo-app" / "state.json.tmp").exists()

    def test_created_at_is_kept(self, tmp_path):
        """Rewrites keep the original created_at."""
        state = write_state(DeploymentState(slug="demo-app"), str(tmp_path))
        created = state.created_at
        state.rule_arn = "arn:rule"
        write_state(state, str(tmp_path))
        assert read_state("demo-app", str(tmp_path)).created_at == created

    def test_unknown_keys_ignored(self, tmp_path):
        """Records written by a newer version still load."""
        project = tmp_path / "demo-app"
        project.mkdir()
        (project / "state.json").write_text(json.dumps({"slug": "demo-app", "future_field": 1}))
        assert read_state("demo-app", str(tmp_path)).slug == "demo-app"

    def test_delete_state_keeps_events(self, tmp_path):
        """Deleting the record leaves the event log in place."""
        write_state(DeploymentState(slug="demo-app"), str(tmp_path))
        emit_event("demo-app", EventTypes.INIT, {}, home=str(tmp_path))

        assert delete_state("demo-app", str(tmp_path))
        assert not delete_state("demo-app", str(tmp_path))
        assert read_events("demo-app", str(tmp_path))

    def test_list_projects(self, tmp_path):
        """Only directories holding a record are listed, sorted."""
        for slug in ("zeta", "alpha"):
            write_state(DeploymentState(slug=slug), str(tmp_path))
        (tmp_path / "events-only").mkdir()
        (tmp_path / "Not_A_Slug").mkdir()

        assert list_projects(str(tmp_path)) == ["alpha", "zeta"]

    def test_invalid_slug_path(self, tmp_path):
        """Slugs are validated before touching the filesystem."""
        with pytest.raises(ValueError):
            get_project_dir("../escape", str(tmp_path))


class TestEvents:
    """NDJSON event log."""

    def test_emit_and_read(self, tmp_path):
        """Events read back in order with their run id."""
        home = str(tmp_path)
        emit_event("demo-app", EventTypes.INIT, {"slug": "demo-app"}, run_id="r-1", home=home)
        emit_event("demo-app", EventTypes.BUILD_START, {}, run_id="r-1", home=home)
        emit_event("demo-app", EventTypes.INIT, {}, run_id="r-2", home=home)

        events = read_events("demo-app", home)

        assert [e["type"] for e in events] == ["INIT", "BUILD_START", "INIT"]
        assert [e["type"] for e in read_events("demo-app", home, run_id="r-1")] == ["INIT", "BUILD_START"]

    def test_timestamps_are_utc(self, tmp_path):
        """Event timestamps use the same UTC "Z" form as the deployment record."""
        event = emit_event("demo-app", EventTypes.INIT, {}, home=str(tmp_path))
        state = write_state(DeploymentState(slug="demo-app"), str(tmp_path))

        assert event["ts"].endswith("Z")
        assert state.updated_at.endswith("Z")

    def test_secrets_redacted(self, tmp_path):
        """Secret-looking keys and long hex strings never reach disk."""
        emit_event("demo-app", EventTypes.ERROR, {
            "api_token": "abc",
            "message": "failed with key 0123456789abcdef0123456789abcdef",
            "digest": "sha256:" + "c" * 64,
        }, home=str(tmp_path))

        raw = (tmp_path / "demo-app" / "events.ndjson").read_text()
        data = json.loads(raw)["data"]

        assert data["api_token"] == "[REDACTED]"
        assert "0123456789abcdef" not in raw
        assert data["digest"] == "sha256:" + "c" * 64

    def test_malformed_lines_skipped(self, tmp_path):
        """A torn line does not hide the rest of the log."""
        emit_event("demo-app", EventTypes.INIT, {}, home=str(tmp_path))
        with open(tmp_path / "demo-app" / "events.ndjson", "a") as f:
            f.write("{not json\n")
        emit_event("demo-app", EventTypes.DONE, {}, home=str(tmp_path))

        assert [e["type"] for e in read_events("demo-app", str(tmp_path))] == ["INIT", "DONE"]

    def test_status_progression(self, tmp_path):
        """The last event maps onto a coarse status."""
        home = str(tmp_path)
        assert get_status_from_events("demo-app", home) == "unknown"
        emit_event("demo-app", EventTypes.INIT, {}, home=home)
        assert get_status_from_events("demo-app", home) == "queued"
        emit_event("demo-app", EventTypes.ROUTING_START, {}, home=home)
        assert get_status_from_events("demo-app", home) == "reconciling_routing"
        emit_event("demo-app", EventTypes.DONE, {}, home=home)
        assert get_status_from_events("demo-app", home) == "healthy"

    def test_tail_without_follow(self, tmp_path):
        """tail_events yields what is there and stops."""
        emit_event("demo-app", EventTypes.INIT, {}, home=str(tmp_path))
        emit_event("demo-app", EventTypes.DONE, {}, home=str(tmp_path))
        assert [e["type"] for e in tail_events("demo-app", home=str(tmp_path))] == ["INIT", "DONE"]

    def test_tail_missing_log(self, tmp_path):
        """No log, no events."""
        assert list(tail_events("demo-app", home=str(tmp_path))) == []


class TestRedaction:
    """Secret scrubbing helpers."""

    def test_nested(self):
        """Redaction walks dicts and lists."""
        data = {"env": [{"password": "x", "name": "DB"}], "count": 3}
        assert redact_data(data) == {"env": [{"password": "[REDACTED]", "name": "DB"}], "count": 3}

    def test_redact_string(self):
        """Whole strings mentioning secrets are masked."""
        assert redact_secrets("OPENAI_API_KEY=sk-123 secret") == "[REDACTED]"
        assert redact_secrets("plain text") == "plain text"


class TestRunIds:
    def test_format(self):
        run_id = new_run_id()
        assert is_valid_run_id(run_id)
        assert not is_valid_run_id("r-2024-01")
        assert not is_valid_run_id("x-20240101-120000-abcd")
