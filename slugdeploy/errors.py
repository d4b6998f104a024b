"""
Error taxonomy for deployment pipelines.

Every error raised by a pipeline stage derives from DeployError and carries the
name of the stage that raised it, so the orchestrator can report it untouched.
"""

from typing import Dict, List, Optional


class ConfigError(ValueError):
    """Raised when settings cannot be loaded or coerced."""


class DeployError(Exception):
    """Base class for stage failures."""

    stage = "unknown"

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self) -> Dict[str, object]:
        data = {
            "kind": type(self).__name__,
            "stage": self.stage,
            "message": self.message,
        }
        if self.hint:
            data["hint"] = self.hint
        return data


class InvalidSpec(DeployError):
    """Descriptor is present but one of its values is not acceptable."""

    stage = "load"


class MissingField(InvalidSpec):
    """Descriptor lacks a required attribute."""

    def __init__(self, field: str):
        super().__init__(f"Missing required field: {field}",
                         hint=f"Add '{field}' to the project descriptor")
        self.field = field

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class BuildFailure(DeployError):
    """Container image could not be built."""

    stage = "build"

    def __init__(self, message: str, last_lines: Optional[List[str]] = None, hint: Optional[str] = None):
        super().__init__(message, hint=hint)
        self.last_lines = last_lines or []

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data["last_lines"] = self.last_lines
        return data


class PushFailure(BuildFailure):
    """Image was built but the registry rejected it (auth, network, repository)."""


class ReconcileFailure(DeployError):
    """A compute sub-resource could not be brought to its desired state."""

    stage = "compute"

    def __init__(self, resource: str, cause: str, completed: Optional[Dict[str, str]] = None,
                 hint: Optional[str] = None):
        super().__init__(f"Failed to reconcile {resource}: {cause}", hint=hint)
        self.resource = resource
        self.cause = cause
        # sub-resources that reached desired state before the failure
        self.completed = dict(completed or {})

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data.update({"resource": self.resource, "cause": self.cause, "completed": self.completed})
        return data


class RoutingConflict(DeployError):
    """Another slug already claims an overlapping path pattern."""

    stage = "routing"

    def __init__(self, pattern: str, existing_pattern: str, owner: str, where: str):
        super().__init__(
            f"{where} path {pattern} overlaps {existing_pattern} owned by {owner}",
            hint="Choose a slug whose path does not overlap an existing project",
        )
        self.pattern = pattern
        self.existing_pattern = existing_pattern
        self.owner = owner
        self.where = where

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data.update({
            "pattern": self.pattern,
            "existing_pattern": self.existing_pattern,
            "owner": self.owner,
            "where": self.where,
        })
        return data


class RoutingFailure(DeployError):
    """Provider error while changing a listener rule or CDN behavior."""

    stage = "routing"


class UnhealthyTimeout(DeployError):
    """Targets did not all become healthy before the deadline."""

    stage = "verify"

    def __init__(self, states: Dict[str, str], waited_s: float):
        summary = ", ".join(f"{t}={s}" for t, s in sorted(states.items())) or "no targets registered"
        super().__init__(
            f"Targets not healthy after {waited_s:.0f}s: {summary}",
            hint="Inspect the service's task logs; infrastructure was left in place",
        )
        self.states = dict(states)
        self.waited_s = waited_s

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data["states"] = self.states
        return data


class ProbeFailure(DeployError):
    """An HTTP probe or the CDN deployment status check failed."""

    stage = "verify"

    def __init__(self, probe_stage: str, url: str, detail: str):
        super().__init__(f"{probe_stage} probe failed for {url}: {detail}")
        self.probe_stage = probe_stage
        self.url = url
        self.detail = detail

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data.update({"probe_stage": self.probe_stage, "url": self.url, "detail": self.detail})
        return data


class StateError(DeployError):
    """No deployment record exists for the requested slug."""

    stage = "state"


class TeardownFailure(DeployError):
    """A provider error stopped decommissioning part way."""

    stage = "decommission"

    def __init__(self, resource: str, cause: str, removed: Optional[List[str]] = None):
        super().__init__(f"Failed to remove {resource}: {cause}")
        self.resource = resource
        self.cause = cause
        self.removed = list(removed or [])

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data.update({"resource": self.resource, "cause": self.cause, "removed": self.removed})
        return data
