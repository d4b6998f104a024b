"""
Main orchestrator for the per-slug deployment lifecycle.

A pipeline runs load -> build -> compute -> routing -> verify for one slug and
stops at the first failing stage. Resources created before the failure stay
in place; the next run reconciles from wherever the last one stopped.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .aws import AWS_ERRORS, AWSClients, error_code, error_message
from .cleanup import find_leftovers
from .cleanup.sweep import DEFAULT_IGNORED
from .compute import ComputeReconciler, ComputeResult
from .config import Settings, load_settings
from .envman import delete_parameters
from .errors import DeployError, InvalidSpec, StateError, TeardownFailure
from .events import EventTypes, emit_event, read_events
from .ids import new_run_id
from .image import build_and_push
from .obs import ConsoleLinkBuilder, FailureClassifier, StatusDeriver
from .routing import RoutingReconciler, reconcile_routing
from .spec import ProjectSpec, SpecSource, load_spec
from .state import (
    DeploymentState, create_project_dir, delete_state, list_projects as list_state_projects,
    read_state, write_state,
)
from .verify import HealthReport, HealthVerifier

logger = logging.getLogger(__name__)

# Settings a deploy cannot run without
DEPLOY_SETTINGS = (
    "registry", "cluster", "vpc_id", "subnet_ids", "execution_role_arn",
    "listener_arn", "alb_dns_name", "distribution_id", "cdn_domain", "cdn_origin_id",
)
DECOMMISSION_SETTINGS = ("cluster", "listener_arn", "distribution_id", "cdn_origin_id")

ClientsFactory = Callable[[Settings], AWSClients]
VerifierFactory = Callable[[Settings, AWSClients], HealthVerifier]


@dataclass
class PipelineResult:
    """Outcome of one slug's pipeline run."""
    slug: Optional[str]
    run_id: str
    status: str = "failed"
    stage: str = "load"
    error: Optional[DeployError] = None
    state: Optional[DeploymentState] = None
    report: Optional[HealthReport] = None

    @property
    def ok(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "run_id": self.run_id,
            "status": self.status,
            "stage": self.stage,
            "error": self.error.to_dict() if self.error else None,
            "state": self.state.to_dict() if self.state else None,
            "report": self.report.to_dict() if self.report else None,
        }


@dataclass
class DecommissionResult:
    slug: str
    run_id: str
    removed: List[str] = field(default_factory=list)
    leftovers: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[DeployError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "run_id": self.run_id,
            "removed": self.removed,
            "leftovers": self.leftovers,
            "error": self.error.to_dict() if self.error else None,
        }


def check_settings(settings: Settings, names: Sequence[str] = DEPLOY_SETTINGS) -> None:
    """Raise ConfigError before any pipeline starts if required settings are unset."""
    settings.require(*names)


def _record_compute(state: DeploymentState, compute: ComputeResult) -> None:
    if compute.log_group:
        state.log_group = compute.log_group
    if compute.task_definition_arn:
        state.task_definition_arn = compute.task_definition_arn
        state.task_definition_revision = compute.task_definition_revision
    if compute.target_group_arn:
        state.target_group_arn = compute.target_group_arn
    if compute.service_name:
        state.service_name = compute.service_name


class Pipeline:
    """One slug's sequential deployment run."""

    def __init__(self, spec: ProjectSpec, settings: Settings, clients: AWSClients, run_id: str,
                 force_rollout: bool = False, extra_tags: Optional[Dict[str, str]] = None,
                 verifier: Optional[HealthVerifier] = None):
        self.spec = spec
        self.settings = settings
        self.clients = clients
        self.run_id = run_id
        self.force_rollout = force_rollout
        self.extra_tags = extra_tags
        self.verifier = verifier or HealthVerifier(settings, clients)
        self.home = settings.home

    def emit(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        emit_event(self.spec.slug, event_type, data or {}, run_id=self.run_id, home=self.home)

    def save(self, state: DeploymentState) -> None:
        write_state(state, self.home)

    def run(self) -> PipelineResult:
        spec, settings = self.spec, self.settings
        slug = spec.slug
        project_dir = create_project_dir(slug, self.home)

        state = read_state(slug, self.home) or DeploymentState(slug=slug)
        state.last_run_id = self.run_id
        result = PipelineResult(slug=slug, run_id=self.run_id, state=state)
        # measured on the verifier's clock, which is the only one that polls
        deadline = self.verifier.clock() + settings.deploy_timeout

        self.emit(EventTypes.INIT, {"slug": slug, "region": settings.region, "force_rollout": self.force_rollout})
        self.emit(EventTypes.SPEC_LOADED, spec.to_dict())

        try:
            # Build and publish
            result.stage = "build"
            self.emit(EventTypes.BUILD_START, {"image": settings.image_uri(spec.image_tag),
                                               "platform": settings.platform})
            image_ref = build_and_push(
                spec, settings, self.clients,
                log_path=project_dir / "build.log",
                on_line=lambda line: self.emit(EventTypes.BUILD_LINE, {"line": line}),
            )
            self.emit(EventTypes.BUILD_DONE, {"image": image_ref.uri})
            previous_digest = state.image_digest
            state.image_uri, state.image_digest = image_ref.uri, image_ref.digest
            self.save(state)
            self.emit(EventTypes.PUSH_DONE, {"image": image_ref.uri, "digest": image_ref.digest})

            # Same tag, new bytes: the task definition is unchanged, so only a forced rollout picks it up
            digest_changed = previous_digest is not None and image_ref.digest != previous_digest
            rollout = self.force_rollout or digest_changed

            # Compute, first pass
            result.stage = "compute"
            self.emit(EventTypes.COMPUTE_START, {"pass": "prepare"})
            compute = ComputeReconciler(spec, settings, self.clients, self.extra_tags)
            try:
                compute.prepare(image_ref)
            finally:
                _record_compute(state, compute.result)
                self.save(state)
            self.emit(EventTypes.COMPUTE_DONE, {"pass": "prepare", **compute.result.completed(),
                                                "mutations": list(compute.result.mutations)})

            # Routing
            result.stage = "routing"
            self.emit(EventTypes.ROUTING_START, {"pattern": spec.path_pattern})
            routing = reconcile_routing(spec, compute.result.target_group_arn, settings, self.clients,
                                        self.extra_tags)
            state.rule_arn, state.rule_priority = routing.rule_arn, routing.rule_priority
            state.behavior_id = routing.behavior_id
            self.save(state)
            self.emit(EventTypes.ROUTING_DONE, {
                "rule_arn": routing.rule_arn,
                "priority": routing.rule_priority,
                "behavior_id": routing.behavior_id,
                "mutations": routing.mutations,
            })

            # Compute, service pass
            result.stage = "compute"
            self.emit(EventTypes.COMPUTE_START, {"pass": "service", "rollout": rollout})
            mutations_before = len(compute.result.mutations)
            try:
                compute.finish(rollout=rollout)
            finally:
                _record_compute(state, compute.result)
                self.save(state)
            self.emit(EventTypes.COMPUTE_DONE, {"pass": "service", "service": compute.result.service_name,
                                                "mutations": compute.result.mutations[mutations_before:]})

            # Verify
            result.stage = "verify"
            self.emit(EventTypes.VERIFY_START, {
                "target_group_arn": state.target_group_arn,
                "lb_url": self.verifier.lb_url(spec),
                "cdn_url": self.verifier.cdn_url(spec),
            })
            report = self.verifier.verify(spec, state.target_group_arn, deadline, on_step=self.emit)
            result.report = report
            state.last_verified_healthy = report.checked_at
            self.save(state)

            result.status = "healthy"
            self.emit(EventTypes.DONE, {"public_url": settings.public_url(slug), "targets": report.target_states})
            logger.info(f"✅ {slug} healthy at {settings.public_url(slug)}")

        except DeployError as e:
            result.stage = e.stage
            result.error = e
            self._report_failure(e)

        return result

    def _report_failure(self, error: DeployError) -> None:
        self.emit(EventTypes.ERROR, error.to_dict())
        classifier = FailureClassifier()
        lines = list(getattr(error, "last_lines", [])) + [error.message]
        for line in reversed(lines):
            failure = classifier.detect_failure(line, source=error.stage)
            if failure:
                self.emit(EventTypes.FAILURE_DETECTED, failure)
                break
        logger.error(f"❌ {self.spec.slug} failed at {error.stage}: {error.message}")


def deploy(source: SpecSource, settings: Optional[Settings] = None, clients: Optional[AWSClients] = None,
           force_rollout: bool = False, extra_tags: Optional[Dict[str, str]] = None,
           run_id: Optional[str] = None, verifier: Optional[HealthVerifier] = None) -> PipelineResult:
    """
    Deploy one project end to end.

    Args:
        source: Descriptor path, mapping, or ProjectSpec
        settings: Settings (loaded from file/env when omitted)
        clients: AWS clients (a fresh session per call when omitted)
        force_rollout: Force a new ECS deployment even if nothing changed
        extra_tags: User tags applied next to the reserved ones
        run_id: Run identifier (generated if not provided)
        verifier: Health verifier to use instead of the default

    Returns:
        PipelineResult; stage failures are returned, not raised
    """
    settings = settings or load_settings()
    check_settings(settings)
    run_id = run_id or new_run_id()

    try:
        spec = load_spec(source, settings)
    except InvalidSpec as e:
        logger.error(f"❌ Invalid descriptor {source!r}: {e.message}")
        return PipelineResult(slug=None, run_id=run_id, stage=e.stage, error=e)

    clients = clients or AWSClients(settings)
    pipeline = Pipeline(spec, settings, clients, run_id, force_rollout=force_rollout,
                        extra_tags=extra_tags, verifier=verifier)
    return pipeline.run()


def deploy_batch(sources: Sequence[SpecSource], settings: Optional[Settings] = None,
                 max_workers: Optional[int] = None, force_rollout: bool = False,
                 extra_tags: Optional[Dict[str, str]] = None,
                 clients_factory: ClientsFactory = AWSClients,
                 verifier_factory: Optional[VerifierFactory] = None) -> List[PipelineResult]:
    """
    Deploy several independent projects concurrently.

    Each pipeline gets its own clients from clients_factory. Results come back
    in input order; a slug seen twice fails its later occurrences.
    """
    settings = settings or load_settings()
    check_settings(settings)
    workers = max_workers or settings.max_workers

    results: List[Optional[PipelineResult]] = [None] * len(sources)
    jobs = []
    seen = set()
    for index, source in enumerate(sources):
        run_id = new_run_id()
        try:
            spec = load_spec(source, settings)
        except InvalidSpec as e:
            results[index] = PipelineResult(slug=None, run_id=run_id, stage=e.stage, error=e)
            continue
        if spec.slug in seen:
            error = InvalidSpec(f"Slug {spec.slug} appears more than once in this batch",
                                hint="Each slug may be deployed once per batch")
            results[index] = PipelineResult(slug=spec.slug, run_id=run_id, stage=error.stage, error=error)
            continue
        seen.add(spec.slug)
        jobs.append((index, spec, run_id))

    def run_one(spec: ProjectSpec, run_id: str) -> PipelineResult:
        clients = clients_factory(settings)
        verifier = verifier_factory(settings, clients) if verifier_factory else None
        return Pipeline(spec, settings, clients, run_id, force_rollout=force_rollout,
                        extra_tags=extra_tags, verifier=verifier).run()

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(run_one, spec, run_id): (index, spec, run_id) for index, spec, run_id in jobs}
        for future, (index, spec, run_id) in futures.items():
            try:
                results[index] = future.result()
            except Exception as e:
                # A bug in one pipeline must not take the others down
                logger.exception(f"Pipeline for {spec.slug} crashed")
                error = DeployError(f"Unexpected error: {e}")
                emit_event(spec.slug, EventTypes.ERROR, error.to_dict(), run_id=run_id, home=settings.home)
                results[index] = PipelineResult(slug=spec.slug, run_id=run_id, stage="unknown", error=error)

    return results


def decommission(slug: str, settings: Optional[Settings] = None, clients: Optional[AWSClients] = None,
                 purge_secrets: bool = False, purge_logs: bool = False,
                 sleep: Callable[[float], None] = time.sleep) -> DecommissionResult:
    """
    Tear a project down in reverse creation order.

    CDN behavior, listener rule, service (scaled to zero, then deleted), target
    group, task definition revisions and the image tag are removed; resources
    already gone are skipped. Leftovers still tagged with the slug are reported
    and the deployment record is removed.

    Raises:
        StateError: No deployment record exists for the slug
    """
    settings = settings or load_settings()
    home = settings.home
    state = read_state(slug, home)
    if state is None:
        raise StateError(f"No deployment record for {slug}", hint="Run 'slugdeploy list' to see known projects")
    check_settings(settings, DECOMMISSION_SETTINGS)

    clients = clients or AWSClients(settings)
    run_id = new_run_id()
    result = DecommissionResult(slug=slug, run_id=run_id)
    spec = ProjectSpec(slug=slug, main_file="-", cpu=settings.default_cpu, memory=settings.default_memory)
    routing = RoutingReconciler(spec, settings, clients)
    compute = ComputeReconciler(spec, settings, clients)

    def emit(event_type: str, data: Dict[str, Any]) -> None:
        emit_event(slug, event_type, data, run_id=run_id, home=home)

    def removed(resource: str, ident: Optional[str]) -> None:
        if ident:
            result.removed.append(resource)
            emit(EventTypes.RESOURCE_REMOVED, {"resource": resource, "id": ident})
            logger.info(f"Removed {resource} {ident}")

    def own_target_group_arn() -> Optional[str]:
        if state.target_group_arn:
            return state.target_group_arn
        tg = compute.find_target_group()
        return tg["TargetGroupArn"] if tg else None

    steps = [
        ("cdn_behavior", routing.remove_behavior),
        ("listener_rule", lambda: routing.remove_rule(own_target_group_arn())),
        ("service", compute.remove_service),
        ("target_group", lambda: compute.remove_target_group(sleep=sleep)),
        ("task_definitions", lambda: ", ".join(compute.deregister_task_definitions()) or None),
        ("image", lambda: _delete_image(clients, settings, slug)),
    ]
    if purge_logs:
        steps.append(("log_group", compute.remove_log_group))
    if purge_secrets:
        steps.append(("secrets", lambda: _purge_secrets(clients, settings, slug)))

    emit(EventTypes.DECOMMISSION_START, {"slug": slug, "steps": [name for name, _ in steps]})

    for resource, step in steps:
        try:
            removed(resource, step())
        except DeployError as e:
            result.error = TeardownFailure(resource, e.message, removed=result.removed)
        except AWS_ERRORS as e:
            result.error = TeardownFailure(resource, error_message(e), removed=result.removed)
        if result.error:
            emit(EventTypes.ERROR, result.error.to_dict())
            logger.error(f"❌ Decommission of {slug} stopped at {resource}: {result.error.cause}")
            return result

    # a kept log group is expected to remain tagged
    ignore = DEFAULT_IGNORED if purge_logs else DEFAULT_IGNORED + ("logs",)
    leftovers = find_leftovers(clients, slug, ignore_services=ignore)
    result.leftovers = [r.to_dict() for r in leftovers]
    emit(EventTypes.GC_SCAN, {"remaining": len(leftovers), "resources": result.leftovers})

    delete_state(slug, home)
    emit(EventTypes.DECOMMISSION_DONE, {"removed": result.removed, "leftovers": len(leftovers)})
    return result


def _purge_secrets(clients: AWSClients, settings: Settings, slug: str) -> Optional[str]:
    count = delete_parameters(clients.ssm, slug, settings)
    return f"{count} parameter(s)" if count else None


def _delete_image(clients: AWSClients, settings: Settings, slug: str) -> Optional[str]:
    try:
        response = clients.ecr.batch_delete_image(repositoryName=settings.repository,
                                                  imageIds=[{"imageTag": slug}])
    except AWS_ERRORS as e:
        if error_code(e) == "RepositoryNotFoundException":
            return None
        raise
    deleted = response.get("imageIds", [])
    return deleted[0].get("imageDigest") if deleted else None


def status(slug: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Get a project's deployment record and the status derived from its events.

    Raises:
        StateError: Nothing is known about the slug
    """
    settings = settings or load_settings()
    state = read_state(slug, settings.home)
    events = read_events(slug, settings.home)
    if state is None and not events:
        raise StateError(f"Unknown project: {slug}")

    state_dict = state.to_dict() if state else {}
    links = ConsoleLinkBuilder(settings.region).build_links(settings.cluster, state_dict, settings.distribution_id)
    info = StatusDeriver().derive_status(events, public_url=settings.public_url(slug), links=links)
    return {
        "slug": slug,
        "state": state_dict or None,
        **info.to_dict(),
    }


def list_projects(settings: Optional[Settings] = None) -> List[str]:
    settings = settings or load_settings()
    return list_state_projects(settings.home)
