"""
Dockerfile template for Streamlit projects that do not ship their own.
"""

from pathlib import Path

from .config import Settings
from .spec import ProjectSpec

GENERATED_DOCKERFILE = ".slugdeploy.Dockerfile"

TEMPLATE = """\
FROM python:3.11-slim

WORKDIR /app

RUN apt-get update \\
    && apt-get install -y --no-install-recommends curl build-essential \\
    && rm -rf /var/lib/apt/lists/*

COPY requirements.txt .
RUN pip install --no-cache-dir -r requirements.txt

COPY . .

EXPOSE {port}

HEALTHCHECK CMD curl --fail http://localhost:{port}{health_path} || exit 1

ENTRYPOINT ["streamlit", "run", "{main_file}", \\
    "--server.port={port}", \\
    "--server.address=0.0.0.0", \\
    "--server.headless=true", \\
    "--server.baseUrlPath={slug}"]
"""


def render_dockerfile(spec: ProjectSpec, settings: Settings) -> str:
    """Render the Streamlit Dockerfile for a project."""
    return TEMPLATE.format(
        port=settings.container_port,
        health_path=spec.health_path,
        main_file=spec.main_file,
        slug=spec.slug,
    )


def resolve_dockerfile(spec: ProjectSpec, settings: Settings) -> Path:
    """
    Find the Dockerfile to build with.

    An explicit descriptor entry wins, then a Dockerfile in the context; otherwise
    the template is written to the context and returned.
    """
    context = Path(spec.context)
    if spec.dockerfile:
        return context / spec.dockerfile

    existing = context / "Dockerfile"
    if existing.exists():
        return existing

    generated = context / GENERATED_DOCKERFILE
    generated.write_text(render_dockerfile(spec, settings))
    return generated
