"""
Per-project event log: one redacted JSON object per line in events.ndjson.
"""

import json
import threading
import time
from typing import Any, Dict, Iterator, List, Optional

from .envman.redact import redact_data
from .state import create_project_dir, get_project_dir, utcnow_iso

_write_lock = threading.Lock()


def emit_event(slug: str, event_type: str, data: Dict[str, Any],
               run_id: Optional[str] = None, home: Optional[str] = None) -> Dict[str, Any]:
    """
    Emit an event to the project's events.ndjson file.

    Args:
        slug: Project slug
        event_type: Event type (e.g., "BUILD_START", "ERROR")
        data: Event data
        run_id: Pipeline run this event belongs to
        home: State home

    Returns:
        The event as written
    """
    project_dir = create_project_dir(slug, home)
    events_file = project_dir / "events.ndjson"

    event = {
        "ts": utcnow_iso(),
        "type": event_type,
        "run_id": run_id,
        "data": redact_data(data),
    }

    with _write_lock:
        with open(events_file, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")
            f.flush()

    return event


def read_events(slug: str, home: Optional[str] = None, run_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Read all events from a project's events.ndjson file.

    Args:
        slug: Project slug
        home: State home
        run_id: Only return events from this run

    Returns:
        List of events
    """
    events_file = get_project_dir(slug, home) / "events.ndjson"

    if not events_file.exists():
        return []

    events = []
    with open(events_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue  # Skip malformed lines
                if run_id is None or event.get("run_id") == run_id:
                    events.append(event)

    return events


def get_last_event(slug: str, home: Optional[str] = None) -> Optional[Dict[str, Any]]:
    events = read_events(slug, home)
    return events[-1] if events else None


def get_status_from_events(slug: str, home: Optional[str] = None) -> str:
    """
    Determine project status from its last event.

    Returns:
        Status string
    """
    last_event = get_last_event(slug, home)
    if not last_event:
        return "unknown"

    return STATUS_BY_EVENT.get(last_event.get("type", ""), "unknown")


def tail_events(slug: str, follow: bool = False, home: Optional[str] = None,
                poll_interval: float = 0.2) -> Iterator[Dict[str, Any]]:
    """
    Generator that yields events as they're written.

    Args:
        slug: Project slug
        follow: If True, continue watching for new events
        home: State home
        poll_interval: Seconds between size checks while following
    """
    events_file = get_project_dir(slug, home) / "events.ndjson"

    if not events_file.exists():
        return

    last_size = 0
    while True:
        try:
            current_size = events_file.stat().st_size
            if current_size > last_size:
                with open(events_file, "r") as f:
                    f.seek(last_size)
                    for line in f:
                        line = line.strip()
                        if line:
                            try:
                                yield json.loads(line)
                            except json.JSONDecodeError:
                                continue
                last_size = current_size
            if not follow:
                return
            time.sleep(poll_interval)
        except (FileNotFoundError, KeyboardInterrupt):
            break


# Predefined event types for consistency
class EventTypes:
    INIT = "INIT"
    SPEC_LOADED = "SPEC_LOADED"
    BUILD_START = "BUILD_START"
    BUILD_LINE = "BUILD_LINE"
    BUILD_DONE = "BUILD_DONE"
    PUSH_DONE = "PUSH_DONE"
    COMPUTE_START = "COMPUTE_START"
    COMPUTE_DONE = "COMPUTE_DONE"
    ROUTING_START = "ROUTING_START"
    ROUTING_DONE = "ROUTING_DONE"
    VERIFY_START = "VERIFY_START"
    TARGETS_HEALTHY = "TARGETS_HEALTHY"
    PROBE_OK = "PROBE_OK"
    CDN_DEPLOYED = "CDN_DEPLOYED"
    DONE = "DONE"
    ERROR = "ERROR"
    FAILURE_DETECTED = "FAILURE_DETECTED"
    DECOMMISSION_START = "DECOMMISSION_START"
    RESOURCE_REMOVED = "RESOURCE_REMOVED"
    GC_SCAN = "GC_SCAN"
    DECOMMISSION_DONE = "DECOMMISSION_DONE"


STATUS_BY_EVENT = {
    EventTypes.INIT: "queued",
    EventTypes.SPEC_LOADED: "queued",
    EventTypes.BUILD_START: "building",
    EventTypes.BUILD_LINE: "building",
    EventTypes.BUILD_DONE: "pushing",
    EventTypes.PUSH_DONE: "pushed",
    EventTypes.COMPUTE_START: "reconciling_compute",
    EventTypes.COMPUTE_DONE: "reconciling_compute",
    EventTypes.ROUTING_START: "reconciling_routing",
    EventTypes.ROUTING_DONE: "reconciling_routing",
    EventTypes.VERIFY_START: "verifying",
    EventTypes.TARGETS_HEALTHY: "verifying",
    EventTypes.PROBE_OK: "verifying",
    EventTypes.CDN_DEPLOYED: "verifying",
    EventTypes.DONE: "healthy",
    EventTypes.ERROR: "failed",
    EventTypes.FAILURE_DETECTED: "failed",
    EventTypes.DECOMMISSION_START: "decommissioning",
    EventTypes.RESOURCE_REMOVED: "decommissioning",
    EventTypes.GC_SCAN: "decommissioning",
    EventTypes.DECOMMISSION_DONE: "decommissioned",
}
