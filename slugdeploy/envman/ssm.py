from __future__ import annotations

import logging
from typing import Dict, List

from ..aws import AWS_ERRORS
from ..config import Settings
from ..spec import ProjectSpec

logger = logging.getLogger(__name__)

GET_PARAMETERS_BATCH = 10


def ssm_path(settings: Settings, slug: str, key: str) -> str:
    return f"{settings.ssm_prefix}/{slug}/env/{key}"


def container_secrets(spec: ProjectSpec, settings: Settings) -> List[Dict[str, str]]:
    # Same-region parameters may be referenced by name instead of full ARN
    return [
        {"name": key, "valueFrom": ssm_path(settings, spec.slug, key)}
        for key in sorted(spec.env)
    ]


def missing_parameters(ssm, spec: ProjectSpec, settings: Settings) -> List[str]:
    """Return env names whose SSM parameter does not exist yet."""
    paths = {ssm_path(settings, spec.slug, key): key for key in spec.env}
    names = sorted(paths)
    missing: List[str] = []
    for i in range(0, len(names), GET_PARAMETERS_BATCH):
        batch = names[i:i + GET_PARAMETERS_BATCH]
        try:
            response = ssm.get_parameters(Names=batch, WithDecryption=False)
        except AWS_ERRORS as e:
            logger.warning(f"Could not check SSM parameters for {spec.slug}: {e}")
            raise
        missing.extend(paths[n] for n in response.get("InvalidParameters", []))
    return sorted(missing)


def delete_parameters(ssm, spec_slug: str, settings: Settings) -> int:
    # get by path, then delete in batches
    prefix = f"{settings.ssm_prefix}/{spec_slug}/env/"
    names: List[str] = []
    paginator = ssm.get_paginator("get_parameters_by_path")
    for page in paginator.paginate(Path=prefix, Recursive=True):
        names.extend(p["Name"] for p in page.get("Parameters", []))
    for i in range(0, len(names), GET_PARAMETERS_BATCH):
        ssm.delete_parameters(Names=names[i:i + GET_PARAMETERS_BATCH])
    return len(names)
