"""
Data models for cleanup and resource management.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class FoundResource:
    """Represents a found AWS resource with tagging information."""
    service: str  # "tg", "rule", "ecs", "task-def", "ecr", "logs", "cloudfront", ...
    arn_or_id: str
    tags: Dict[str, str]
    reason: Optional[str] = None  # Why we think it belongs to this slug

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
