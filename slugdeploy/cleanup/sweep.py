"""
Resource sweep utilities for finding resources still tagged with a slug.
"""

import logging
from typing import Iterable, List

from ..aws import AWS_ERRORS
from ..tags import PROJECT_TAG
from .models import FoundResource

logger = logging.getLogger(__name__)

# Deregistered task definition revisions keep their tags but cost nothing
DEFAULT_IGNORED = ("task-def",)


def list_tagged_resources(clients, slug: str) -> List[FoundResource]:
    """
    List all AWS resources tagged with project=slugdeploy and slug=<slug>.

    Args:
        clients: AWSClients for the deployment region
        slug: Project slug to search for

    Returns:
        List of found resources
    """
    found_resources = []

    paginator = clients.tagging.get_paginator("get_resources")
    for page in paginator.paginate(
        TagFilters=[
            {"Key": "project", "Values": [PROJECT_TAG]},
            {"Key": "slug", "Values": [slug]},
        ]
    ):
        for resource in page.get("ResourceTagMappingList", []):
            arn = resource["ResourceARN"]
            tags = {tag["Key"]: tag["Value"] for tag in resource.get("Tags", [])}
            found_resources.append(FoundResource(
                service=_extract_service_from_arn(arn),
                arn_or_id=arn,
                tags=tags,
                reason=f"Tagged with project={PROJECT_TAG} and slug={slug}",
            ))

    return found_resources


def _extract_service_from_arn(arn: str) -> str:
    """Extract service name from AWS ARN."""
    # ARN format: arn:partition:service:region:account-id:resource-type/resource
    parts = arn.split(":")
    if len(parts) < 6:
        return "unknown"

    service, resource = parts[2], parts[5]
    if service == "elasticloadbalancing":
        if resource.startswith("targetgroup"):
            return "tg"
        if resource.startswith("listener-rule"):
            return "rule"
        if resource.startswith("listener"):
            return "listener"
        return "alb"
    if service == "ecs":
        if resource.startswith("task-definition"):
            return "task-def"
        if resource.startswith("service"):
            return "ecs"
        return "ecs-" + resource.split("/")[0]
    return service


def find_leftovers(clients, slug: str, ignore_services: Iterable[str] = DEFAULT_IGNORED,
                   ignore_arns: Iterable[str] = ()) -> List[FoundResource]:
    """
    Report resources still tagged with the slug after teardown.

    A failing tagging API is logged and reported as an empty sweep; the
    teardown itself already succeeded by the time this runs.
    """
    ignored_services = set(ignore_services)
    ignored_arns = set(ignore_arns)
    try:
        found = list_tagged_resources(clients, slug)
    except AWS_ERRORS as e:
        logger.warning(f"Resource Groups Tagging API failed: {e}")
        return []

    leftovers = [r for r in found if r.service not in ignored_services and r.arn_or_id not in ignored_arns]
    for resource in leftovers:
        logger.warning(f"Leftover {resource.service} for {slug}: {resource.arn_or_id}")
    return leftovers
