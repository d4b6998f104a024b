"""
Compute reconciler: task definition, target group and ECS service for a slug.

Every step compares desired state with what the provider reports and only
calls a mutating API when they differ, so re-running with an unchanged spec
changes nothing.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .aws import AWS_ERRORS, AWSClients, error_code, error_message
from .config import Settings
from .envman.ssm import container_secrets, missing_parameters
from .errors import ReconcileFailure
from .image import ImageRef
from .obs.classify import hint_for
from .spec import ProjectSpec, ResourceNames, resource_names
from .tags import aws_tags, base_tags, ecs_tags

logger = logging.getLogger(__name__)


@dataclass
class ComputeResult:
    task_definition_arn: Optional[str] = None
    task_definition_revision: Optional[int] = None
    target_group_arn: Optional[str] = None
    service_name: Optional[str] = None
    log_group: Optional[str] = None
    mutations: List[str] = field(default_factory=list)

    def completed(self) -> Dict[str, str]:
        done = {
            "log_group": self.log_group,
            "task_definition": self.task_definition_arn,
            "target_group": self.target_group_arn,
            "service": self.service_name,
        }
        return {k: v for k, v in done.items() if v}


def _cpu_architecture(platform: str) -> str:
    return "ARM64" if platform.endswith("arm64") else "X86_64"


def _normalize_task_definition(td: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a task definition to the fields this tool manages."""
    containers = []
    for c in td.get("containerDefinitions", []):
        containers.append({
            "name": c.get("name"),
            "image": c.get("image"),
            "essential": c.get("essential", True),
            "ports": sorted((p.get("containerPort"), p.get("protocol", "tcp")) for p in c.get("portMappings", [])),
            "secrets": sorted((s["name"], s["valueFrom"]) for s in c.get("secrets", [])),
            "environment": sorted((e["name"], e["value"]) for e in c.get("environment", [])),
            "log": c.get("logConfiguration"),
        })
    return {
        "family": td.get("family"),
        "cpu": str(td.get("cpu")),
        "memory": str(td.get("memory")),
        "networkMode": td.get("networkMode"),
        "requiresCompatibilities": sorted(td.get("requiresCompatibilities", [])),
        "executionRoleArn": td.get("executionRoleArn"),
        "taskRoleArn": td.get("taskRoleArn"),
        "runtimePlatform": td.get("runtimePlatform"),
        "containers": sorted(containers, key=lambda c: c["name"] or ""),
    }


class ComputeReconciler:
    """Brings one slug's compute resources to their desired state."""

    def __init__(self, spec: ProjectSpec, settings: Settings, clients: AWSClients,
                 extra_tags: Optional[Dict[str, str]] = None):
        self.spec = spec
        self.settings = settings
        self.clients = clients
        self.names: ResourceNames = resource_names(spec, settings)
        self.tags = base_tags(spec.slug, extra_tags)
        self.result = ComputeResult()

    def _fail(self, resource: str, e: Exception) -> ReconcileFailure:
        cause = error_message(e) if isinstance(e, AWS_ERRORS) else str(e)
        return ReconcileFailure(resource, cause, completed=self.result.completed(), hint=hint_for([cause]))

    def _mutated(self, call: str) -> None:
        self.result.mutations.append(call)
        logger.info(f"[{self.spec.slug}] {call}")

    # Secrets

    def check_secrets(self) -> None:
        if not self.spec.env:
            return
        try:
            missing = missing_parameters(self.clients.ssm, self.spec, self.settings)
        except AWS_ERRORS as e:
            raise self._fail("secrets", e) from e
        if missing:
            raise ReconcileFailure(
                "secrets",
                f"missing SSM parameters for {', '.join(missing)}",
                completed=self.result.completed(),
                hint=f"Create them under {self.names.ssm_path}/",
            )

    # Log group

    def ensure_log_group(self) -> str:
        logs = self.clients.logs
        name = self.names.log_group
        try:
            response = logs.describe_log_groups(logGroupNamePrefix=name)
            if not any(g["logGroupName"] == name for g in response.get("logGroups", [])):
                logs.create_log_group(logGroupName=name, tags=self.tags)
                self._mutated("logs:CreateLogGroup")
                logs.put_retention_policy(logGroupName=name, retentionInDays=self.settings.log_retention_days)
                self._mutated("logs:PutRetentionPolicy")
        except AWS_ERRORS as e:
            raise self._fail("log_group", e) from e
        self.result.log_group = name
        return name

    # Task definition

    def desired_task_definition(self, image_ref: ImageRef) -> Dict[str, Any]:
        settings = self.settings
        container = {
            "name": self.names.container,
            "image": image_ref.uri,
            "essential": True,
            "portMappings": [{
                "containerPort": settings.container_port,
                "hostPort": settings.container_port,
                "protocol": "tcp",
            }],
            "logConfiguration": {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-group": self.names.log_group,
                    "awslogs-region": settings.region,
                    "awslogs-stream-prefix": self.spec.slug,
                },
            },
        }
        secrets = container_secrets(self.spec, settings)
        if secrets:
            container["secrets"] = secrets

        task_definition = {
            "family": self.names.task_family,
            "cpu": str(self.spec.cpu),
            "memory": str(self.spec.memory),
            "networkMode": "awsvpc",
            "requiresCompatibilities": ["FARGATE"],
            "executionRoleArn": settings.execution_role_arn,
            "runtimePlatform": {
                "cpuArchitecture": _cpu_architecture(settings.platform),
                "operatingSystemFamily": "LINUX",
            },
            "containerDefinitions": [container],
        }
        if settings.task_role_arn:
            task_definition["taskRoleArn"] = settings.task_role_arn
        return task_definition

    def _current_task_definition(self) -> Optional[Dict[str, Any]]:
        try:
            response = self.clients.ecs.describe_task_definition(taskDefinition=self.names.task_family)
        except AWS_ERRORS as e:
            # ECS reports an unknown family as a generic ClientException
            if error_code(e) == "ClientException":
                return None
            raise
        td = response["taskDefinition"]
        return td if td.get("status", "ACTIVE") == "ACTIVE" else None

    def ensure_task_definition(self, image_ref: ImageRef) -> str:
        desired = self.desired_task_definition(image_ref)
        try:
            current = self._current_task_definition()
            if current and _normalize_task_definition(current) == _normalize_task_definition(desired):
                td = current
                logger.debug(f"[{self.spec.slug}] task definition {td['taskDefinitionArn']} up to date")
            else:
                response = self.clients.ecs.register_task_definition(**desired, tags=ecs_tags(self.tags))
                td = response["taskDefinition"]
                self._mutated("ecs:RegisterTaskDefinition")
        except AWS_ERRORS as e:
            raise self._fail("task_definition", e) from e

        self.result.task_definition_arn = td["taskDefinitionArn"]
        self.result.task_definition_revision = td.get("revision")
        return td["taskDefinitionArn"]

    # Target group

    def desired_health_check(self) -> Dict[str, Any]:
        s = self.settings
        return {
            "HealthCheckProtocol": "HTTP",
            "HealthCheckPath": self.spec.health_path,
            "HealthCheckIntervalSeconds": s.health_interval,
            "HealthCheckTimeoutSeconds": s.health_timeout,
            "HealthyThresholdCount": s.healthy_threshold,
            "UnhealthyThresholdCount": s.unhealthy_threshold,
            "Matcher": {"HttpCode": s.health_matcher},
        }

    def find_target_group(self) -> Optional[Dict[str, Any]]:
        try:
            response = self.clients.elbv2.describe_target_groups(Names=[self.names.target_group])
        except AWS_ERRORS as e:
            if error_code(e) == "TargetGroupNotFound":
                return None
            raise
        groups = response.get("TargetGroups", [])
        return groups[0] if groups else None

    def ensure_target_group(self) -> str:
        elbv2 = self.clients.elbv2
        health_check = self.desired_health_check()
        try:
            tg = self.find_target_group()
            if tg is None:
                response = elbv2.create_target_group(
                    Name=self.names.target_group,
                    Protocol="HTTP",
                    Port=self.settings.container_port,
                    VpcId=self.settings.vpc_id,
                    TargetType="ip",
                    HealthCheckEnabled=True,
                    Tags=aws_tags(self.tags),
                    **health_check,
                )
                tg = response["TargetGroups"][0]
                self._mutated("elbv2:CreateTargetGroup")
            else:
                self._check_target_group_identity(tg)
                drift = {k: v for k, v in health_check.items() if tg.get(k) != v}
                if drift:
                    logger.info(f"[{self.spec.slug}] health check drift on {sorted(drift)}")
                    elbv2.modify_target_group(TargetGroupArn=tg["TargetGroupArn"], **health_check)
                    self._mutated("elbv2:ModifyTargetGroup")
        except AWS_ERRORS as e:
            raise self._fail("target_group", e) from e

        self.result.target_group_arn = tg["TargetGroupArn"]
        return tg["TargetGroupArn"]

    def _check_target_group_identity(self, tg: Dict[str, Any]) -> None:
        # Target type, VPC, protocol and port cannot be changed in place
        problems = []
        if tg.get("TargetType") != "ip":
            problems.append(f"target type is {tg.get('TargetType')}, Fargate requires ip")
        if self.settings.vpc_id and tg.get("VpcId") != self.settings.vpc_id:
            problems.append(f"VPC is {tg.get('VpcId')}, expected {self.settings.vpc_id}")
        if tg.get("Protocol") != "HTTP" or tg.get("Port") != self.settings.container_port:
            problems.append(f"listens on {tg.get('Protocol')}:{tg.get('Port')}")
        if problems:
            raise ReconcileFailure(
                "target_group",
                f"{self.names.target_group} exists but {'; '.join(problems)}",
                completed=self.result.completed(),
                hint="Delete the target group manually; it cannot be modified in place",
            )

    # Service

    def desired_network(self) -> Dict[str, Any]:
        s = self.settings
        return {
            "awsvpcConfiguration": {
                "subnets": list(s.subnet_ids),
                "securityGroups": list(s.security_group_ids),
                "assignPublicIp": "ENABLED" if s.assign_public_ip else "DISABLED",
            }
        }

    def desired_load_balancers(self, target_group_arn: str) -> List[Dict[str, Any]]:
        return [{
            "targetGroupArn": target_group_arn,
            "containerName": self.names.container,
            "containerPort": self.settings.container_port,
        }]

    def _find_service(self) -> Optional[Dict[str, Any]]:
        response = self.clients.ecs.describe_services(cluster=self.settings.cluster, services=[self.names.service])
        for service in response.get("services", []):
            if service.get("status") != "INACTIVE":
                return service
        return None

    def ensure_service(self, task_definition_arn: str, target_group_arn: str, rollout: bool = False) -> str:
        ecs = self.clients.ecs
        network = self.desired_network()
        load_balancers = self.desired_load_balancers(target_group_arn)
        try:
            service = self._find_service()
            if service is None:
                ecs.create_service(
                    cluster=self.settings.cluster,
                    serviceName=self.names.service,
                    taskDefinition=task_definition_arn,
                    desiredCount=self.spec.replicas,
                    launchType="FARGATE",
                    platformVersion="LATEST",
                    networkConfiguration=network,
                    loadBalancers=load_balancers,
                    healthCheckGracePeriodSeconds=self.settings.health_check_grace_period,
                    deploymentConfiguration={
                        "deploymentCircuitBreaker": {"enable": True, "rollback": False},
                    },
                    propagateTags="SERVICE",
                    tags=ecs_tags(self.tags),
                )
                self._mutated("ecs:CreateService")
            else:
                if service.get("status") == "DRAINING":
                    raise ReconcileFailure(
                        "service", f"{self.names.service} is draining",
                        completed=self.result.completed(),
                        hint="Wait for the previous service to finish deleting, then retry",
                    )
                changes = self._service_changes(service, task_definition_arn, network, load_balancers)
                if changes or rollout:
                    ecs.update_service(
                        cluster=self.settings.cluster,
                        service=self.names.service,
                        forceNewDeployment=rollout,
                        **changes,
                    )
                    self._mutated("ecs:UpdateService")
        except AWS_ERRORS as e:
            raise self._fail("service", e) from e

        self.result.service_name = self.names.service
        return self.names.service

    def _service_changes(self, service: Dict[str, Any], task_definition_arn: str,
                         network: Dict[str, Any], load_balancers: List[Dict[str, Any]]) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        if service.get("taskDefinition") != task_definition_arn:
            changes["taskDefinition"] = task_definition_arn
        if service.get("desiredCount") != self.spec.replicas:
            changes["desiredCount"] = self.spec.replicas

        current_net = service.get("networkConfiguration", {}).get("awsvpcConfiguration", {})
        wanted_net = network["awsvpcConfiguration"]
        if (sorted(current_net.get("subnets", [])) != sorted(wanted_net["subnets"])
                or sorted(current_net.get("securityGroups", [])) != sorted(wanted_net["securityGroups"])
                or current_net.get("assignPublicIp", "DISABLED") != wanted_net["assignPublicIp"]):
            changes["networkConfiguration"] = network

        current_lbs = sorted(
            (lb.get("targetGroupArn"), lb.get("containerName"), lb.get("containerPort"))
            for lb in service.get("loadBalancers", [])
        )
        wanted_lbs = sorted((lb["targetGroupArn"], lb["containerName"], lb["containerPort"]) for lb in load_balancers)
        if current_lbs != wanted_lbs:
            changes["loadBalancers"] = load_balancers
        return changes

    # Teardown

    def remove_service(self) -> Optional[str]:
        ecs = self.clients.ecs
        try:
            service = self._find_service()
            if service is None:
                return None
            if service.get("desiredCount", 0) > 0 and service.get("status") == "ACTIVE":
                ecs.update_service(cluster=self.settings.cluster, service=self.names.service, desiredCount=0)
                self._mutated("ecs:UpdateService")
            ecs.delete_service(cluster=self.settings.cluster, service=self.names.service, force=True)
            self._mutated("ecs:DeleteService")
        except AWS_ERRORS as e:
            if error_code(e) == "ServiceNotFoundException":
                return None
            raise
        return self.names.service

    def remove_target_group(self, attempts: int = 6, sleep=None) -> Optional[str]:
        """Delete the target group, retrying while the service is still detaching from it."""
        tg = self.find_target_group()
        if tg is None:
            return None
        for attempt in range(1, attempts + 1):
            try:
                self.clients.elbv2.delete_target_group(TargetGroupArn=tg["TargetGroupArn"])
                self._mutated("elbv2:DeleteTargetGroup")
                return tg["TargetGroupArn"]
            except AWS_ERRORS as e:
                if error_code(e) != "ResourceInUse" or attempt == attempts:
                    raise
                logger.info(f"[{self.spec.slug}] target group still in use, retrying ({attempt})")
                if sleep:
                    sleep(self.settings.target_poll_interval)
        return None

    def deregister_task_definitions(self) -> List[str]:
        ecs = self.clients.ecs
        arns: List[str] = []
        paginator = ecs.get_paginator("list_task_definitions")
        for page in paginator.paginate(familyPrefix=self.names.task_family, status="ACTIVE"):
            arns.extend(page.get("taskDefinitionArns", []))
        removed = []
        for arn in arns:
            # familyPrefix also matches longer families sharing the prefix
            if arn.split("/")[-1].rsplit(":", 1)[0] != self.names.task_family:
                continue
            ecs.deregister_task_definition(taskDefinition=arn)
            self._mutated("ecs:DeregisterTaskDefinition")
            removed.append(arn)
        return removed

    def remove_log_group(self) -> Optional[str]:
        try:
            self.clients.logs.delete_log_group(logGroupName=self.names.log_group)
        except AWS_ERRORS as e:
            if error_code(e) == "ResourceNotFoundException":
                return None
            raise
        self._mutated("logs:DeleteLogGroup")
        return self.names.log_group

    # Passes

    def prepare(self, image_ref: ImageRef) -> ComputeResult:
        """Everything up to the target group; the service needs routing in place first."""
        self.check_secrets()
        self.ensure_log_group()
        self.ensure_task_definition(image_ref)
        self.ensure_target_group()
        return self.result

    def finish(self, rollout: bool = False) -> ComputeResult:
        self.ensure_service(self.result.task_definition_arn, self.result.target_group_arn, rollout=rollout)
        return self.result


def reconcile_compute(spec: ProjectSpec, image_ref: ImageRef, settings: Settings, clients: AWSClients,
                      rollout: bool = False, extra_tags: Optional[Dict[str, str]] = None) -> ComputeResult:
    """
    Ensure task definition, target group and service exist for a slug.

    ECS only accepts a target group in a service once a listener rule forwards
    to it, so first deploys go through the orchestrator, which runs routing
    between prepare() and finish().

    Raises:
        ReconcileFailure: With the failing resource and the sub-resources already done
    """
    reconciler = ComputeReconciler(spec, settings, clients, extra_tags)
    reconciler.prepare(image_ref)
    return reconciler.finish(rollout=rollout)
