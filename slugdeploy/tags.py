"""
Tagging utilities for consistent resource tagging across projects.
"""

from typing import Dict, List, Optional

PROJECT_TAG = "slugdeploy"


def base_tags(slug: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Generate base tags for a project's resources.

    Args:
        slug: Project slug
        extra: Additional tags to include

    Returns:
        Dictionary of tags to apply to resources
    """
    tags = {
        "project": PROJECT_TAG,
        "slug": slug,
        "managed-by": PROJECT_TAG,
    }

    # Reserved keys always win over user tags
    if extra:
        tags = {**extra, **tags}

    return tags


def parse_user_tags(tag_strings: List[str]) -> Dict[str, str]:
    """
    Parse user-provided tag strings in format "key=value".

    Args:
        tag_strings: List of tag strings in "key=value" format

    Returns:
        Dictionary of parsed tags

    Raises:
        ValueError: If tag string format is invalid
    """
    tags = {}

    for tag_str in tag_strings:
        if "=" not in tag_str:
            raise ValueError(f"Invalid tag format: {tag_str}. Expected 'key=value'")

        key, value = tag_str.split("=", 1)
        if not key.strip() or not value.strip():
            raise ValueError(f"Invalid tag format: {tag_str}. Key and value must not be empty")

        tags[key.strip()] = value.strip()

    return tags


def ecs_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    """ECS spells tag keys in lowercase."""
    return [{"key": k, "value": v} for k, v in sorted(tags.items())]


def aws_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    """Key/Value shape used by ELBv2, ECR and the tagging API."""
    return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]
