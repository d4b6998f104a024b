"""
Health verification for a deployed slug.

Waits for the target group to report every target healthy, then probes the
health endpoint through the load balancer and through the CDN. Nothing here
changes infrastructure.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import requests

from .aws import AWS_ERRORS, AWSClients, error_message
from .config import Settings
from .errors import ProbeFailure, UnhealthyTimeout
from .spec import ProjectSpec

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    """Result of probing one URL."""
    url: str
    success: bool
    status_code: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "success": self.success,
            "status_code": self.status_code,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class HealthReport:
    target_states: Dict[str, str] = field(default_factory=dict)
    lb_probe: Optional[ProbeResult] = None
    cdn_probe: Optional[ProbeResult] = None
    checked_at: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return bool(self.lb_probe and self.lb_probe.success and self.cdn_probe and self.cdn_probe.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_states": self.target_states,
            "lb_probe": self.lb_probe.to_dict() if self.lb_probe else None,
            "cdn_probe": self.cdn_probe.to_dict() if self.cdn_probe else None,
            "checked_at": self.checked_at,
        }


class HealthVerifier:
    """
    Runs the post-deploy checks for one slug.

    Args:
        settings: Poll intervals, timeouts and endpoints
        clients: AWS clients for the target group and distribution
        session: requests-compatible session used for HTTP probes
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(self, settings: Settings, clients: AWSClients, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.clients = clients
        self.session = session or requests.Session()
        self.sleep = sleep
        self.clock = clock

    def target_states(self, target_group_arn: str) -> Dict[str, str]:
        response = self.clients.elbv2.describe_target_health(TargetGroupArn=target_group_arn)
        states = {}
        for desc in response.get("TargetHealthDescriptions", []):
            target = desc.get("Target", {})
            key = f"{target.get('Id')}:{target.get('Port')}"
            health = desc.get("TargetHealth", {})
            state = health.get("State", "unknown")
            if state != "healthy" and health.get("Reason"):
                state = f"{state} ({health['Reason']})"
            states[key] = state
        return states

    def wait_for_targets(self, target_group_arn: str, deadline: float) -> Dict[str, str]:
        """Poll until at least one target is registered and all are healthy."""
        started = self.clock()
        until = min(deadline, started + self.settings.target_deadline)
        states: Dict[str, str] = {}

        while True:
            try:
                states = self.target_states(target_group_arn)
            except AWS_ERRORS as e:
                # target health is eventually consistent right after a service update
                logger.warning(f"describe_target_health failed: {error_message(e)}")
                states = {}
            if states and all(s == "healthy" for s in states.values()):
                logger.info(f"✅ {len(states)} target(s) healthy")
                return states
            if self.clock() >= until:
                raise UnhealthyTimeout(states, self.clock() - started)
            logger.debug(f"Targets not ready: {states or 'none registered'}")
            self.sleep(self.settings.target_poll_interval)

    def probe(self, url: str, deadline: float) -> ProbeResult:
        """GET the URL until it answers 2xx, probe_attempts times at most."""
        result = ProbeResult(url=url, success=False)
        for attempt in range(1, self.settings.probe_attempts + 1):
            result.attempts = attempt
            try:
                response = self.session.get(url, timeout=self.settings.probe_timeout)
                result.status_code = response.status_code
                if 200 <= response.status_code < 300:
                    result.success = True
                    result.error = None
                    return result
                result.error = f"Expected 2xx, got {response.status_code}"
            except requests.exceptions.RequestException as e:
                result.error = f"Request failed: {e}"

            if attempt < self.settings.probe_attempts and self.clock() < deadline:
                logger.debug(f"Probe {url} attempt {attempt} failed, retrying in {self.settings.probe_retry_delay}s")
                self.sleep(self.settings.probe_retry_delay)
            else:
                break
        return result

    def wait_for_distribution(self, deadline: float) -> None:
        distribution_id = self.settings.distribution_id
        until = min(deadline, self.clock() + self.settings.cdn_deploy_timeout)
        status = "unknown"
        while True:
            try:
                response = self.clients.cloudfront.get_distribution(Id=distribution_id)
                status = response["Distribution"]["Status"]
            except AWS_ERRORS as e:
                raise ProbeFailure("cdn_status", distribution_id, error_message(e)) from e
            if status == "Deployed":
                return
            if self.clock() >= until:
                raise ProbeFailure("cdn_status", distribution_id, f"status still {status}")
            logger.debug(f"Distribution {distribution_id} is {status}")
            self.sleep(self.settings.cdn_poll_interval)

    def lb_url(self, spec: ProjectSpec) -> str:
        return f"{self.settings.alb_scheme}://{self.settings.alb_dns_name}{spec.health_path}"

    def cdn_url(self, spec: ProjectSpec) -> str:
        return f"https://{self.settings.cdn_domain}{spec.health_path}"

    def verify(self, spec: ProjectSpec, target_group_arn: str, deadline: Optional[float] = None,
               on_step: Optional[Callable[[str, Dict[str, Any]], None]] = None) -> HealthReport:
        """
        Verify a deployment end to end.

        Args:
            spec: Project being verified
            target_group_arn: Target group the service registers into
            deadline: Absolute clock value after which polling stops
            on_step: Called with (event_type, data) as each check passes

        Returns:
            HealthReport

        Raises:
            UnhealthyTimeout: Targets not all healthy in time
            ProbeFailure: A probe or the CDN status check failed
        """
        if deadline is None:
            deadline = self.clock() + self.settings.deploy_timeout
        notify = on_step or (lambda event_type, data: None)
        report = HealthReport()

        report.target_states = self.wait_for_targets(target_group_arn, deadline)
        notify("TARGETS_HEALTHY", {"targets": report.target_states})

        lb_url = self.lb_url(spec)
        report.lb_probe = self.probe(lb_url, deadline)
        if not report.lb_probe.success:
            raise ProbeFailure("load_balancer", lb_url, report.lb_probe.error or "no response")
        notify("PROBE_OK", {"probe": "load_balancer", **report.lb_probe.to_dict()})

        self.wait_for_distribution(deadline)
        notify("CDN_DEPLOYED", {"distribution_id": self.settings.distribution_id})

        cdn_url = self.cdn_url(spec)
        report.cdn_probe = self.probe(cdn_url, deadline)
        if not report.cdn_probe.success:
            raise ProbeFailure("cdn", cdn_url, report.cdn_probe.error or "no response")
        notify("PROBE_OK", {"probe": "cdn", **report.cdn_probe.to_dict()})

        report.checked_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        return report
