"""
Run identifiers.

Every pipeline and decommission run gets an id of the form
r-YYYYMMDD-hhmmss-xxxx (UTC). Events and resource tags carry it so one run's
output can be picked out of a project's shared event log.
"""

import re
import secrets
import string
from datetime import datetime, timezone

RUN_ID_RE = re.compile(r"r-\d{8}-\d{6}-[a-z0-9]{4}")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def new_run_id() -> str:
    """Generate a run id; ids from the same second differ in their suffix."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(4))
    return f"r-{stamp}-{suffix}"


def is_valid_run_id(run_id: str) -> bool:
    return bool(RUN_ID_RE.fullmatch(run_id))
