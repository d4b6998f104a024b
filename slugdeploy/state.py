"""
State management for deployed projects.

Each slug owns a directory under the state home holding state.json (the
DeploymentState record), events.ndjson and build.log.
"""

import json
import os
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .spec import SLUG_RE


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DeploymentState:
    """Identifiers of everything deployed for one slug."""
    slug: str
    image_uri: Optional[str] = None
    image_digest: Optional[str] = None
    task_definition_arn: Optional[str] = None
    task_definition_revision: Optional[int] = None
    target_group_arn: Optional[str] = None
    service_name: Optional[str] = None
    log_group: Optional[str] = None
    rule_arn: Optional[str] = None
    rule_priority: Optional[int] = None
    behavior_id: Optional[str] = None
    last_verified_healthy: Optional[str] = None
    last_run_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentState":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def get_state_home(home: Optional[str] = None) -> Path:
    """
    Get the state home directory.

    Args:
        home: Explicit home; falls back to $SLUGDEPLOY_HOME, then .slugdeploy

    Returns:
        Path: State home directory
    """
    home = home or os.environ.get("SLUGDEPLOY_HOME", ".slugdeploy")
    return Path(home).resolve()


def get_project_dir(slug: str, home: Optional[str] = None) -> Path:
    """
    Get the directory for a specific project.

    Raises:
        ValueError: If slug is invalid
    """
    if not SLUG_RE.fullmatch(slug or ""):
        raise ValueError(f"Invalid slug: {slug}")

    return get_state_home(home) / slug


def create_project_dir(slug: str, home: Optional[str] = None) -> Path:
    project_dir = get_project_dir(slug, home)
    project_dir.mkdir(parents=True, exist_ok=True)
    return project_dir


def read_state(slug: str, home: Optional[str] = None) -> Optional[DeploymentState]:
    """
    Read a project's deployment record.

    Returns:
        DeploymentState or None if the project was never deployed
    """
    state_file = get_project_dir(slug, home) / "state.json"

    if not state_file.exists():
        return None

    with open(state_file, "r") as f:
        return DeploymentState.from_dict(json.load(f))


def write_state(state: DeploymentState, home: Optional[str] = None) -> DeploymentState:
    """
    Persist a deployment record, stamping created_at/updated_at.

    The file is replaced atomically so a crash mid-write never leaves a
    truncated record behind.
    """
    project_dir = create_project_dir(state.slug, home)
    now = utcnow_iso()
    if not state.created_at:
        state.created_at = now
    state.updated_at = now

    tmp_file = project_dir / "state.json.tmp"
    with open(tmp_file, "w") as f:
        json.dump(state.to_dict(), f, indent=2)
    os.replace(tmp_file, project_dir / "state.json")
    return state


def delete_state(slug: str, home: Optional[str] = None) -> bool:
    """Remove a project's record; event and build logs are kept."""
    state_file = get_project_dir(slug, home) / "state.json"
    if state_file.exists():
        state_file.unlink()
        return True
    return False


def list_projects(home: Optional[str] = None) -> List[str]:
    """
    List all slugs that have a deployment record.

    Returns:
        Sorted list of slugs
    """
    state_home = get_state_home(home)

    if not state_home.exists():
        return []

    projects = []
    for item in state_home.iterdir():
        if item.is_dir() and SLUG_RE.fullmatch(item.name) and (item / "state.json").exists():
            projects.append(item.name)

    return sorted(projects)
