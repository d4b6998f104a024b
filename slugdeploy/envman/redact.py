from __future__ import annotations

import re
from typing import Any

TOKENISH = re.compile(r"(?i)(secret|token|password|apikey|api_key|credential)")
# image digests are content addresses, not secrets
HEX_LONG = re.compile(r"(?<!sha256:)\b[0-9a-f]{32,}\b", re.I)
REDACTED = "[REDACTED]"


def redact_string(s: str) -> str:
    if TOKENISH.search(s) or HEX_LONG.search(s):
        return REDACTED
    return s


def redact_data(value: Any, key: str = "") -> Any:
    # Values are redacted by their key; bare strings only when they look like raw secrets.
    if key and TOKENISH.search(key):
        return REDACTED
    if isinstance(value, dict):
        return {k: redact_data(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_data(v) for v in value]
    if isinstance(value, str) and HEX_LONG.search(value):
        return HEX_LONG.sub(REDACTED, value)
    return value
