"""
Project descriptor loading and validation.

A descriptor names one deployable project. Its slug is the single key from
which every AWS resource name and URL path is derived.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from .config import Settings
from .errors import InvalidSpec, MissingField

SLUG_RE = re.compile(r"[a-z0-9-]+")
ENV_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
REQUIRED_FIELDS = ("slug", "main_file")
KNOWN_FIELDS = {
    "slug", "main_file", "cpu", "memory", "replicas", "env", "context",
    "dockerfile", "title", "authors", "description",
}

# Fargate cpu units -> allowed memory (MiB)
FARGATE_SIZES: Dict[int, List[int]] = {
    256: [512, 1024, 2048],
    512: list(range(1024, 4096 + 1, 1024)),
    1024: list(range(2048, 8192 + 1, 1024)),
    2048: list(range(4096, 16384 + 1, 1024)),
    4096: list(range(8192, 30720 + 1, 1024)),
    8192: list(range(16384, 61440 + 1, 4096)),
    16384: list(range(32768, 122880 + 1, 8192)),
}

TARGET_GROUP_NAME_MAX = 32


@dataclass(frozen=True)
class ProjectSpec:
    slug: str
    main_file: str
    cpu: int
    memory: int
    replicas: int = 1
    env: Tuple[str, ...] = ()
    context: str = "."
    dockerfile: Optional[str] = None

    # Catalog metadata for the external index page
    title: Optional[str] = None
    authors: Tuple[str, ...] = ()
    description: Optional[str] = None

    @property
    def health_path(self) -> str:
        return f"/{self.slug}/_stcore/health"

    @property
    def path_pattern(self) -> str:
        return f"/{self.slug}*"

    @property
    def image_tag(self) -> str:
        return self.slug

    @property
    def container_name(self) -> str:
        return self.slug

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "main_file": self.main_file,
            "cpu": self.cpu,
            "memory": self.memory,
            "replicas": self.replicas,
            "env": list(self.env),
            "context": self.context,
            "dockerfile": self.dockerfile,
            "title": self.title,
            "authors": list(self.authors),
            "description": self.description,
        }


@dataclass(frozen=True)
class ResourceNames:
    """AWS resource names derived from a slug and the naming prefix."""
    service: str
    task_family: str
    target_group: str
    container: str
    log_group: str
    ssm_path: str


def target_group_name(prefix: str, slug: str) -> str:
    """
    Target group names are limited to 32 chars and may not end in a hyphen.
    Names that would break either rule get a stable hash suffix instead.
    """
    name = f"{prefix}-{slug}"
    if len(name) <= TARGET_GROUP_NAME_MAX and not name.endswith("-"):
        return name
    digest = hashlib.sha1(slug.encode("utf-8")).hexdigest()[:8]
    head = name[:TARGET_GROUP_NAME_MAX - len(digest) - 1].rstrip("-")
    return f"{head}-{digest}"


def resource_names(spec: ProjectSpec, settings: Settings) -> ResourceNames:
    base = f"{settings.name_prefix}-{spec.slug}"
    return ResourceNames(
        service=base,
        task_family=base,
        target_group=target_group_name(settings.name_prefix, spec.slug),
        container=spec.container_name,
        log_group=f"{settings.log_group_prefix}/{spec.slug}",
        ssm_path=f"{settings.ssm_prefix}/{spec.slug}/env",
    )


def validate_slug(slug: Any) -> str:
    if not isinstance(slug, str) or not SLUG_RE.fullmatch(slug):
        raise InvalidSpec(
            f"Invalid slug {slug!r}: must match [a-z0-9-]+",
            hint="Use lowercase letters, digits and hyphens only",
        )
    return slug


def _int_field(data: Mapping[str, Any], name: str, default: int) -> int:
    value = data.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, str) and value.strip().isdigit():
            return int(value)
        raise InvalidSpec(f"Field '{name}' must be an integer, got {value!r}")
    return value


def _names_field(data: Mapping[str, Any], name: str) -> Tuple[str, ...]:
    value = data.get(name) or []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise InvalidSpec(f"Field '{name}' must be a list")
    return tuple(str(v) for v in value)


def spec_from_mapping(data: Mapping[str, Any], settings: Optional[Settings] = None,
                      base_dir: Optional[Path] = None) -> ProjectSpec:
    """
    Build a validated ProjectSpec from a descriptor mapping.

    Raises:
        MissingField: If slug or main_file is absent or empty
        InvalidSpec: If any value is malformed
    """
    settings = settings or Settings()
    if not isinstance(data, Mapping):
        raise InvalidSpec(f"Descriptor must be a mapping, got {type(data).__name__}")

    for name in REQUIRED_FIELDS:
        if data.get(name) in (None, ""):
            raise MissingField(name)

    unknown = sorted(set(data) - KNOWN_FIELDS)
    if unknown:
        raise InvalidSpec(f"Unknown descriptor fields: {', '.join(unknown)}")

    slug = validate_slug(data["slug"])

    main_file = str(data["main_file"])
    if Path(main_file).is_absolute() or ".." in Path(main_file).parts:
        raise InvalidSpec(f"main_file must be relative to the build context: {main_file}")

    cpu = _int_field(data, "cpu", settings.default_cpu)
    memory = _int_field(data, "memory", settings.default_memory)
    if cpu not in FARGATE_SIZES:
        raise InvalidSpec(f"Unsupported cpu {cpu}; choose one of {sorted(FARGATE_SIZES)}")
    if memory not in FARGATE_SIZES[cpu]:
        raise InvalidSpec(f"Memory {memory} is not valid with cpu {cpu}",
                          hint=f"Valid values: {FARGATE_SIZES[cpu][0]}-{FARGATE_SIZES[cpu][-1]}")

    replicas = _int_field(data, "replicas", settings.default_replicas)
    if replicas < 1:
        raise InvalidSpec(f"replicas must be >= 1, got {replicas}",
                          hint="Verification waits for healthy targets; decommission a project to stop it")

    env = _names_field(data, "env")
    for env_name in env:
        if not ENV_NAME_RE.fullmatch(env_name):
            raise InvalidSpec(f"Invalid environment variable name: {env_name!r}")
    if len(set(env)) != len(env):
        raise InvalidSpec("Duplicate environment variable names")

    context = data.get("context")
    if context is None:
        context = str(base_dir) if base_dir else "."
    elif base_dir and not Path(str(context)).is_absolute():
        context = str(base_dir / str(context))

    dockerfile = data.get("dockerfile")

    return ProjectSpec(
        slug=slug,
        main_file=main_file,
        cpu=cpu,
        memory=memory,
        replicas=replicas,
        env=env,
        context=str(context),
        dockerfile=str(dockerfile) if dockerfile else None,
        title=data.get("title"),
        authors=_names_field(data, "authors"),
        description=data.get("description"),
    )


def _read_descriptor(path: Path) -> Any:
    if not path.exists():
        raise InvalidSpec(f"Descriptor not found: {path}")
    text = path.read_text()
    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise InvalidSpec(f"Could not parse descriptor {path}: {e}") from e


SpecSource = Union[str, Path, Mapping[str, Any], ProjectSpec]


def load_spec(source: SpecSource, settings: Optional[Settings] = None) -> ProjectSpec:
    """
    Load a single project spec from a path, a mapping, or an existing spec.

    Args:
        source: Descriptor file, descriptor mapping, or ProjectSpec
        settings: Settings supplying sizing defaults

    Returns:
        Immutable ProjectSpec
    """
    if isinstance(source, ProjectSpec):
        return source
    if isinstance(source, Mapping):
        return spec_from_mapping(source, settings)

    path = Path(source)
    data = _read_descriptor(path)
    if isinstance(data, Mapping) and "projects" in data:
        raise InvalidSpec(f"{path} holds several projects; use load_specs")
    return spec_from_mapping(data, settings, base_dir=path.parent.resolve())


def load_specs(source: SpecSource, settings: Optional[Settings] = None) -> List[ProjectSpec]:
    """Load one or more specs; a file may carry a top-level 'projects' list."""
    if isinstance(source, (ProjectSpec, Mapping)) and not (
            isinstance(source, Mapping) and "projects" in source):
        return [load_spec(source, settings)]

    if isinstance(source, Mapping):
        data, base_dir = source, None
    else:
        path = Path(source)
        data, base_dir = _read_descriptor(path), path.parent.resolve()

    if isinstance(data, Mapping) and "projects" in data:
        projects = data["projects"]
        if not isinstance(projects, list):
            raise InvalidSpec("'projects' must be a list")
        return [spec_from_mapping(p, settings, base_dir=base_dir) for p in projects]
    return [spec_from_mapping(data, settings, base_dir=base_dir)]
