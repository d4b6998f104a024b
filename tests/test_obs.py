"""
Basic tests for observability features.
"""

from slugdeploy.obs import (
    ConsoleLinkBuilder, DeploymentStatus, FailureClassifier, Severity, StatusDeriver, hint_for,
)


def _event(event_type, data=None, run_id="r-1"):
    return {"ts": "2024-01-01T00:00:00", "type": event_type, "run_id": run_id, "data": data or {}}


class TestFailureClassifier:
    """Test failure detection and classification."""

    def test_classify_exec_format(self):
        """Test detection of images built for the wrong architecture."""
        classifier = FailureClassifier()

        failure = classifier.detect_failure("standard_init_linux.go:228: exec user process caused: exec format error",
                                            "ecs:task")
        assert failure is not None
        assert failure["reason_code"] == "exec_format_error"
        assert failure["hint"] == "Build with --platform linux/amd64"
        assert failure["severity"] == "high"
        assert failure["source"] == "ecs:task"

    def test_classify_registry_auth(self):
        """Test detection of rejected registry credentials."""
        failure = FailureClassifier().detect_failure("no basic auth credentials", "docker:push")
        assert failure["reason_code"] == "registry_auth"

    def test_classify_health_check(self):
        """Target health reasons map to the health check rule."""
        failure = FailureClassifier().detect_failure("10.0.1.23:8501=unhealthy (Target.FailedHealthChecks)")
        assert failure["reason_code"] == "health_check_failed"
        assert "_stcore/health" in failure["hint"]

    def test_classify_address_in_use(self):
        """Test detection of port conflicts."""
        failure = FailureClassifier().detect_failure("OSError: [Errno 98] Address already in use", "ecs:task")
        assert failure["reason_code"] == "address_in_use"
        assert failure["message"] == "Port already in use"

    def test_classify_secrets(self):
        """Missing SSM parameters surface as secrets_unavailable."""
        failure = FailureClassifier().detect_failure(
            "ResourceInitializationError: unable to pull secrets or registry auth")
        assert failure["reason_code"] == "secrets_unavailable"

    def test_no_failure_detected(self):
        """Test that unrelated lines are ignored."""
        assert FailureClassifier().detect_failure("Collecting streamlit==1.37.0") is None

    def test_same_failure_reported_once(self):
        """A rule fires once per classifier."""
        classifier = FailureClassifier()
        assert classifier.detect_failure("exec format error") is not None
        assert classifier.detect_failure("exec format error") is None
        assert "exec_format_error" in classifier.get_detected_failures()

        classifier.clear_detected_failures()
        assert classifier.detect_failure("exec format error") is not None

    def test_classify_lines_prefers_latest(self):
        """The last matching line wins."""
        rule = FailureClassifier().classify_lines([
            "Cannot connect to the Docker daemon at unix:///var/run/docker.sock",
            "ERROR: No matching distribution found for torch==9.9",
        ])
        assert rule.id == "pip_install_error"

    def test_hint_for(self):
        """hint_for falls back to the default."""
        assert hint_for(["exec format error"]) == "Build with --platform linux/amd64"
        assert hint_for(["all good"], default="none") == "none"

    def test_rule_lookup(self):
        """Rules are addressable by id."""
        rule = FailureClassifier().get_rule_by_id("docker_daemon_unavailable")
        assert rule.severity == Severity.CRITICAL
        assert FailureClassifier().get_rule_by_id("npm_error") is None


class TestStatusDeriver:
    """Test status derivation from events."""

    def test_no_events(self):
        """Test status with no events."""
        info = StatusDeriver().derive_status([])
        assert info.status == DeploymentStatus.UNKNOWN

    def test_healthy(self):
        """A finished run is healthy and exposes its public URL."""
        events = [_event("INIT"), _event("VERIFY_START"), _event("DONE")]
        info = StatusDeriver().derive_status(events, public_url="https://cdn/demo-app")

        assert info.status == DeploymentStatus.HEALTHY
        assert info.to_dict()["public_url"] == "https://cdn/demo-app"

    def test_in_progress(self):
        """The latest event decides the stage; no URL until healthy."""
        events = [_event("INIT"), _event("ROUTING_START")]
        info = StatusDeriver().derive_status(events, public_url="https://cdn/demo-app")

        assert info.status == DeploymentStatus.RECONCILING_ROUTING
        assert info.public_url is None

    def test_failed_with_reason(self):
        """Failures report stage, classified reason and hint."""
        events = [
            _event("INIT"),
            _event("ERROR", {"stage": "verify", "message": "Targets not healthy", "hint": "check logs"}),
            _event("FAILURE_DETECTED", {"reason_code": "health_check_failed", "hint": "serve the health path"}),
        ]
        info = StatusDeriver().derive_status(events)

        assert info.status == DeploymentStatus.FAILED
        assert info.failed_stage == "verify"
        assert info.failure_reason == "health_check_failed"
        assert info.failure_hint == "serve the health path"
        assert "Targets not healthy" in info.message

    def test_failed_without_classification(self):
        """Without a classified failure the error's own hint is used."""
        events = [_event("ERROR", {"stage": "routing", "message": "overlap", "hint": "pick another slug"})]
        info = StatusDeriver().derive_status(events)
        assert info.failure_reason is None
        assert info.failure_hint == "pick another slug"

    def test_only_latest_run_counts(self):
        """An old failure does not taint a newer successful run."""
        events = [
            _event("ERROR", {"stage": "build", "message": "boom"}, run_id="r-1"),
            _event("INIT", run_id="r-2"),
            _event("DONE", run_id="r-2"),
        ]
        assert StatusDeriver().derive_status(events).status == DeploymentStatus.HEALTHY

    def test_terminal(self):
        deriver = StatusDeriver()
        assert deriver.is_terminal_status(DeploymentStatus.DECOMMISSIONED)
        assert not deriver.is_terminal_status(DeploymentStatus.VERIFYING)


class TestConsoleLinkBuilder:
    """Test console link generation."""

    def test_links_for_record(self):
        """Links exist only for identifiers the record holds."""
        builder = ConsoleLinkBuilder("us-east-1")
        links = builder.build_links("student-apps", {
            "log_group": "/ecs/slugdeploy/demo-app",
            "service_name": "sd-demo-app",
            "target_group_arn": None,
            "behavior_id": "E2EXAMPLE123:/demo-app*",
        }, distribution_id="E2EXAMPLE123")

        assert set(links) == {"logs", "service", "cdn"}
        assert "%2Fecs%2Fslugdeploy%2Fdemo-app" in links["logs"]
        assert "clusters/student-apps/services/sd-demo-app" in links["service"]
        assert links["cdn"].endswith("/distributions/E2EXAMPLE123/behaviors")

    def test_empty_record(self):
        assert ConsoleLinkBuilder("eu-west-1").build_links("c", {}) == {}
