"""
Tests for the compute reconciler against in-memory AWS fakes.
"""

import pytest
from botocore.exceptions import ClientError

from slugdeploy.compute import ComputeReconciler, reconcile_compute
from slugdeploy.errors import ReconcileFailure
from slugdeploy.image import ImageRef
from slugdeploy.spec import load_spec

from fakes import ACCOUNT, REGION

IMAGE = ImageRef(uri=f"{ACCOUNT}.dkr.ecr.{REGION}.amazonaws.com/student-apps:demo-app",
                 digest="sha256:" + "a" * 64)


def _attach(clients, tg_arn, pattern="/demo-app*", priority=1):
    """Stand in for the routing step: forward a rule to the target group."""
    clients.elbv2.add_rule(pattern, tg_arn, priority)


def _full_run(spec, settings, clients, rollout=False):
    reconciler = ComputeReconciler(spec, settings, clients)
    result = reconciler.prepare(IMAGE)
    if result.target_group_arn not in clients.elbv2.attached_target_groups():
        _attach(clients, result.target_group_arn)
    return reconciler.finish(rollout=rollout)


class TestFirstRun:
    """Creating everything from nothing."""

    def test_creates_each_resource_once(self, demo_spec, settings, clients):
        """First run creates log group, task definition, target group and service."""
        result = _full_run(demo_spec, settings, clients)

        assert result.mutations == [
            "logs:CreateLogGroup",
            "logs:PutRetentionPolicy",
            "ecs:RegisterTaskDefinition",
            "elbv2:CreateTargetGroup",
            "ecs:CreateService",
        ]
        assert result.task_definition_arn.endswith("task-definition/sd-demo-app:1")
        assert result.task_definition_revision == 1
        assert result.service_name == "sd-demo-app"
        assert result.log_group == "/ecs/slugdeploy/demo-app"

    def test_task_definition_shape(self, demo_spec, settings, clients):
        """Fargate sizing, awsvpc, x86_64 and awslogs for the slug's group."""
        _full_run(demo_spec, settings, clients)
        td = clients.ecs.task_definitions["sd-demo-app"][0]
        container = td["containerDefinitions"][0]

        assert (td["cpu"], td["memory"]) == ("512", "2048")
        assert td["networkMode"] == "awsvpc"
        assert td["requiresCompatibilities"] == ["FARGATE"]
        assert td["runtimePlatform"]["cpuArchitecture"] == "X86_64"
        assert td["executionRoleArn"] == settings.execution_role_arn
        assert container["name"] == "demo-app"
        assert container["image"] == IMAGE.uri
        assert container["portMappings"][0]["containerPort"] == 8501
        assert container["logConfiguration"]["options"]["awslogs-group"] == "/ecs/slugdeploy/demo-app"
        assert "secrets" not in container

    def test_target_group_health_check(self, demo_spec, settings, clients):
        """The target group probes the slug's Streamlit health path."""
        _full_run(demo_spec, settings, clients)
        tg = clients.elbv2.target_groups["sd-demo-app"]

        assert tg["TargetType"] == "ip"
        assert tg["Port"] == 8501
        assert tg["VpcId"] == "vpc-0abc"
        assert tg["HealthCheckPath"] == "/demo-app/_stcore/health"
        assert tg["HealthyThresholdCount"] == 2
        assert tg["UnhealthyThresholdCount"] == 3
        assert tg["Matcher"] == {"HttpCode": "200"}
        assert {"Key": "slug", "Value": "demo-app"} in tg["Tags"]

    def test_service_shape(self, demo_spec, settings, clients):
        """The service runs on Fargate behind the slug's target group."""
        result = _full_run(demo_spec, settings, clients)
        service = clients.ecs.services["sd-demo-app"]

        assert service["desiredCount"] == 1
        assert service["taskDefinition"] == result.task_definition_arn
        assert service["loadBalancers"] == [{
            "targetGroupArn": result.target_group_arn, "containerName": "demo-app", "containerPort": 8501,
        }]
        assert service["networkConfiguration"]["awsvpcConfiguration"]["subnets"] == ["subnet-a", "subnet-b"]
        assert {"key": "project", "value": "slugdeploy"} in service["tags"]

    def test_service_needs_routing_first(self, demo_spec, settings, clients):
        """Without a rule forwarding to the target group ECS refuses the service."""
        reconciler = ComputeReconciler(demo_spec, settings, clients)
        reconciler.prepare(IMAGE)

        with pytest.raises(ReconcileFailure) as excinfo:
            reconciler.finish()

        error = excinfo.value
        assert error.resource == "service"
        assert "InvalidParameterException" in error.cause
        assert set(error.completed) == {"log_group", "task_definition", "target_group"}

    def test_reconcile_compute_with_existing_rule(self, demo_spec, settings, clients):
        """reconcile_compute runs both passes once the rule exists."""
        first = ComputeReconciler(demo_spec, settings, clients).prepare(IMAGE)
        _attach(clients, first.target_group_arn)

        result = reconcile_compute(demo_spec, IMAGE, settings, clients)

        assert result.mutations == ["ecs:CreateService"]


class TestIdempotence:
    """Re-running with an unchanged spec changes nothing."""

    def test_second_run_is_a_no_op(self, demo_spec, settings, clients):
        """Only describe calls on the second run."""
        first = _full_run(demo_spec, settings, clients)
        second = _full_run(demo_spec, settings, clients)

        assert second.mutations == []
        assert second.task_definition_arn == first.task_definition_arn
        assert second.target_group_arn == first.target_group_arn
        assert len(clients.ecs.task_definitions["sd-demo-app"]) == 1

    def test_rollout_forces_new_deployment(self, demo_spec, settings, clients):
        """A rollout on an unchanged spec only restarts tasks."""
        _full_run(demo_spec, settings, clients)
        clients.ecs.calls.clear()

        result = _full_run(demo_spec, settings, clients, rollout=True)

        assert result.mutations == ["ecs:UpdateService"]
        update = [kw for op, kw in clients.ecs.calls if op == "UpdateService"][0]
        assert update["forceNewDeployment"] is True
        assert "taskDefinition" not in update

    def test_size_change_registers_revision(self, demo_spec, settings, clients, project_dir):
        """Changed cpu/memory gives a new revision and points the service at it."""
        _full_run(demo_spec, settings, clients)
        bigger = load_spec({"slug": "demo-app", "main_file": "app.py", "cpu": 1024, "memory": 4096,
                            "context": str(project_dir)}, settings)

        result = _full_run(bigger, settings, clients)

        assert result.mutations == ["ecs:RegisterTaskDefinition", "ecs:UpdateService"]
        assert result.task_definition_revision == 2
        assert clients.ecs.services["sd-demo-app"]["taskDefinition"] == result.task_definition_arn

    def test_replica_change(self, demo_spec, settings, clients, project_dir):
        """Only desiredCount changes when replicas change."""
        _full_run(demo_spec, settings, clients)
        scaled = load_spec({"slug": "demo-app", "main_file": "app.py", "replicas": 3,
                            "context": str(project_dir)}, settings)

        result = _full_run(scaled, settings, clients)

        assert result.mutations == ["ecs:UpdateService"]
        assert clients.ecs.services["sd-demo-app"]["desiredCount"] == 3

    def test_health_check_drift_repaired(self, demo_spec, settings, clients):
        """A hand-edited health check is put back."""
        _full_run(demo_spec, settings, clients)
        clients.elbv2.target_groups["sd-demo-app"]["HealthCheckPath"] = "/"

        result = _full_run(demo_spec, settings, clients)

        assert result.mutations == ["elbv2:ModifyTargetGroup"]
        assert clients.elbv2.target_groups["sd-demo-app"]["HealthCheckPath"] == "/demo-app/_stcore/health"

    def test_existing_log_group_reused(self, demo_spec, settings, clients):
        """A pre-existing log group is not recreated."""
        clients.logs.groups["/ecs/slugdeploy/demo-app"] = {"tags": {}}
        reconciler = ComputeReconciler(demo_spec, settings, clients)
        reconciler.ensure_log_group()
        assert reconciler.result.mutations == []


class TestFailures:
    """Conditions that stop the compute step."""

    def test_instance_target_group_rejected(self, demo_spec, settings, clients):
        """A same-named target group of the wrong type cannot be reused."""
        clients.elbv2.create_target_group(Name="sd-demo-app", Protocol="HTTP", Port=8501,
                                          VpcId="vpc-0abc", TargetType="instance")
        clients.elbv2.calls.clear()

        with pytest.raises(ReconcileFailure) as excinfo:
            ComputeReconciler(demo_spec, settings, clients).prepare(IMAGE)

        assert excinfo.value.resource == "target_group"
        assert "requires ip" in excinfo.value.cause
        assert "task_definition" in excinfo.value.completed
        assert clients.elbv2.mutations == []

    def test_missing_secrets_stop_before_any_change(self, settings, clients, project_dir):
        """Missing SSM parameters fail before anything is created."""
        spec = load_spec({"slug": "demo-app", "main_file": "app.py", "env": ["OPENAI_API_KEY", "DB_URL"],
                          "context": str(project_dir)}, settings)
        clients.ssm.parameters["/slugdeploy/demo-app/env/DB_URL"] = "postgres://"

        with pytest.raises(ReconcileFailure) as excinfo:
            ComputeReconciler(spec, settings, clients).prepare(IMAGE)

        assert excinfo.value.resource == "secrets"
        assert "OPENAI_API_KEY" in excinfo.value.cause
        assert "DB_URL" not in excinfo.value.cause
        assert clients.mutations() == []

    def test_secrets_referenced_by_name(self, settings, clients, project_dir):
        """Present parameters become container secrets, never plain values."""
        spec = load_spec({"slug": "demo-app", "main_file": "app.py", "env": ["OPENAI_API_KEY"],
                          "context": str(project_dir)}, settings)
        clients.ssm.parameters["/slugdeploy/demo-app/env/OPENAI_API_KEY"] = "sk-live"

        ComputeReconciler(spec, settings, clients).prepare(IMAGE)

        container = clients.ecs.task_definitions["sd-demo-app"][0]["containerDefinitions"][0]
        assert container["secrets"] == [
            {"name": "OPENAI_API_KEY", "valueFrom": "/slugdeploy/demo-app/env/OPENAI_API_KEY"},
        ]
        assert "sk-live" not in str(container)

    def test_many_secrets_checked_in_batches(self, settings, clients, project_dir):
        """GetParameters is called with at most ten names at a time."""
        names = [f"KEY_{i}" for i in range(12)]
        spec = load_spec({"slug": "demo-app", "main_file": "app.py", "env": names,
                          "context": str(project_dir)}, settings)
        for name in names:
            clients.ssm.parameters[f"/slugdeploy/demo-app/env/{name}"] = "x"

        ComputeReconciler(spec, settings, clients).check_secrets()

        batches = [kw["Names"] for op, kw in clients.ssm.calls if op == "GetParameters"]
        assert [len(b) for b in batches] == [10, 2]


class TestTeardown:
    """Removal helpers used by decommission."""

    def test_remove_everything(self, demo_spec, settings, clients):
        """Service is scaled down and deleted, then the target group goes."""
        _full_run(demo_spec, settings, clients)
        rule_arn = clients.elbv2.rules[-1]["RuleArn"]
        clients.elbv2.delete_rule(RuleArn=rule_arn)
        reconciler = ComputeReconciler(demo_spec, settings, clients)

        assert reconciler.remove_service() == "sd-demo-app"
        assert reconciler.remove_target_group() is not None
        assert len(reconciler.deregister_task_definitions()) == 1
        assert reconciler.remove_log_group() == "/ecs/slugdeploy/demo-app"

        assert reconciler.result.mutations == [
            "ecs:UpdateService", "ecs:DeleteService", "elbv2:DeleteTargetGroup",
            "ecs:DeregisterTaskDefinition", "logs:DeleteLogGroup",
        ]
        assert clients.ecs.services["sd-demo-app"]["status"] == "INACTIVE"
        assert "sd-demo-app" not in clients.elbv2.target_groups

    def test_teardown_of_nothing(self, demo_spec, settings, clients):
        """Removing absent resources is not an error."""
        reconciler = ComputeReconciler(demo_spec, settings, clients)

        assert reconciler.remove_service() is None
        assert reconciler.remove_target_group() is None
        assert reconciler.deregister_task_definitions() == []
        assert reconciler.remove_log_group() is None
        assert reconciler.result.mutations == []

    def test_target_group_in_use_retries(self, demo_spec, settings, clients, clock):
        """ResourceInUse is retried and finally raised."""
        _full_run(demo_spec, settings, clients)
        reconciler = ComputeReconciler(demo_spec, settings, clients)

        with pytest.raises(ClientError):
            reconciler.remove_target_group(attempts=3, sleep=clock.sleep)

        assert clock.sleeps == [settings.target_poll_interval] * 2

    def test_other_families_untouched(self, demo_spec, settings, clients, project_dir):
        """Deregistration is limited to the slug's exact family."""
        _full_run(demo_spec, settings, clients)
        longer = load_spec({"slug": "demo-app-v2", "main_file": "app.py", "context": str(project_dir)}, settings)
        ComputeReconciler(longer, settings, clients).ensure_task_definition(IMAGE)

        removed = ComputeReconciler(demo_spec, settings, clients).deregister_task_definitions()

        assert [arn.split("/")[-1] for arn in removed] == ["sd-demo-app:1"]
        assert clients.ecs.task_definitions["sd-demo-app-v2"][0]["status"] == "ACTIVE"
