"""
Status derivation from events and the persisted deployment record.
"""

from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum
import time

from ..events import STATUS_BY_EVENT


class DeploymentStatus(Enum):
    """Project status states."""
    UNKNOWN = "unknown"
    QUEUED = "queued"
    BUILDING = "building"
    PUSHING = "pushing"
    PUSHED = "pushed"
    RECONCILING_COMPUTE = "reconciling_compute"
    RECONCILING_ROUTING = "reconciling_routing"
    VERIFYING = "verifying"
    HEALTHY = "healthy"
    FAILED = "failed"
    DECOMMISSIONING = "decommissioning"
    DECOMMISSIONED = "decommissioned"


TERMINAL_STATUSES = (DeploymentStatus.HEALTHY, DeploymentStatus.FAILED, DeploymentStatus.DECOMMISSIONED)


@dataclass
class StatusInfo:
    """Comprehensive status information."""
    status: DeploymentStatus
    message: str
    last_event: Optional[Dict[str, Any]] = None
    failed_stage: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_hint: Optional[str] = None
    public_url: Optional[str] = None
    links: Dict[str, str] = field(default_factory=dict)
    timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "failed_stage": self.failed_stage,
            "failure_reason": self.failure_reason,
            "failure_hint": self.failure_hint,
            "public_url": self.public_url,
            "links": self.links,
        }


class StatusDeriver:
    """Derives project status from its event log."""

    MESSAGES = {
        DeploymentStatus.UNKNOWN: "No events recorded",
        DeploymentStatus.QUEUED: "Deployment queued",
        DeploymentStatus.BUILDING: "Building image",
        DeploymentStatus.PUSHING: "Pushing image",
        DeploymentStatus.PUSHED: "Image published",
        DeploymentStatus.RECONCILING_COMPUTE: "Reconciling task definition, target group and service",
        DeploymentStatus.RECONCILING_ROUTING: "Reconciling load balancer rule and CDN behavior",
        DeploymentStatus.VERIFYING: "Verifying deployment",
        DeploymentStatus.HEALTHY: "Deployment healthy",
        DeploymentStatus.FAILED: "Deployment failed",
        DeploymentStatus.DECOMMISSIONING: "Decommissioning project",
        DeploymentStatus.DECOMMISSIONED: "Project decommissioned",
    }

    def derive_status(self, events: List[Dict[str, Any]], public_url: Optional[str] = None,
                      links: Optional[Dict[str, str]] = None) -> StatusInfo:
        """Derive current status from the events of the most recent run."""
        if not events:
            return StatusInfo(
                status=DeploymentStatus.UNKNOWN,
                message=self.MESSAGES[DeploymentStatus.UNKNOWN],
                timestamp=time.time()
            )

        run_events = self._latest_run(events)
        last_event = run_events[-1]
        status = self._derive_from_events(run_events)

        info = StatusInfo(
            status=status,
            message=self.MESSAGES[status],
            last_event=last_event,
            public_url=public_url if status == DeploymentStatus.HEALTHY else None,
            links=links or {},
            timestamp=time.time()
        )

        if status == DeploymentStatus.FAILED:
            error = self._last_of(run_events, "ERROR") or {}
            data = error.get("data", {})
            info.failed_stage = data.get("stage")
            info.message = f"{self.MESSAGES[status]}: {data.get('message', 'unknown error')}"
            failure = self._last_of(run_events, "FAILURE_DETECTED")
            if failure:
                info.failure_reason = failure["data"].get("reason_code")
                info.failure_hint = failure["data"].get("hint")
            else:
                info.failure_hint = data.get("hint")

        return info

    def _latest_run(self, events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        run_id = events[-1].get("run_id")
        if run_id is None:
            return events
        return [e for e in events if e.get("run_id") == run_id]

    def _last_of(self, events: List[Dict[str, Any]], event_type: str) -> Optional[Dict[str, Any]]:
        for event in reversed(events):
            if event.get("type") == event_type:
                return event
        return None

    def _derive_from_events(self, events: List[Dict[str, Any]]) -> DeploymentStatus:
        # An error anywhere in the run makes it failed, even if later events exist
        if self._last_of(events, "ERROR") and not self._last_of(events, "DONE"):
            return DeploymentStatus.FAILED

        for event in reversed(events):
            value = STATUS_BY_EVENT.get(event.get("type", ""))
            if value:
                return DeploymentStatus(value)

        return DeploymentStatus.QUEUED

    def is_terminal_status(self, status: DeploymentStatus) -> bool:
        return status in TERMINAL_STATUSES
