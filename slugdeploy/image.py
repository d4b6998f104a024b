"""
Image builder/publisher: docker build for the fixed platform, push to ECR.
"""

import base64
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .aws import AWS_ERRORS, AWSClients, error_code, error_message
from .config import Settings
from .dockerfile import resolve_dockerfile
from .errors import BuildFailure, PushFailure
from .obs.classify import hint_for
from .spec import ProjectSpec
from .tags import aws_tags, base_tags

logger = logging.getLogger(__name__)

TAIL_LINES = 40

LineCallback = Callable[[str], None]


@dataclass(frozen=True)
class ImageRef:
    uri: str
    digest: Optional[str] = None


def run_tool(command: List[str], log_path: Optional[Path] = None, cwd: Optional[str] = None,
             input_text: Optional[str] = None, on_line: Optional[LineCallback] = None) -> Tuple[int, List[str]]:
    """
    Run an external tool, streaming combined output into the log file.

    Returns:
        Tuple of (returncode, output lines)
    """
    process = subprocess.Popen(
        command,
        cwd=cwd,
        stdin=subprocess.PIPE if input_text is not None else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        bufsize=1,
    )

    if input_text is not None:
        process.stdin.write(input_text)
        process.stdin.close()

    output_lines: List[str] = []
    log_file = open(log_path, "a") if log_path else None
    try:
        if log_file:
            # never log the login password, only the command
            log_file.write(f"=== {' '.join(command)} ===\n")
        for line in process.stdout:
            line = line.rstrip()
            output_lines.append(line)
            if log_file:
                log_file.write(line + "\n")
                log_file.flush()
            if on_line and line.strip():
                on_line(line)
    finally:
        if log_file:
            log_file.close()

    process.wait()
    return process.returncode, output_lines


def ensure_repository(ecr, repository: str, tags: Dict[str, str]) -> str:
    """Make sure the ECR repository exists and return its URI."""
    try:
        response = ecr.describe_repositories(repositoryNames=[repository])
        return response["repositories"][0]["repositoryUri"]
    except AWS_ERRORS as e:
        if error_code(e) != "RepositoryNotFoundException":
            raise

    logger.info(f"Creating ECR repository {repository}")
    response = ecr.create_repository(
        repositoryName=repository,
        imageTagMutability="MUTABLE",
        imageScanningConfiguration={"scanOnPush": True},
        tags=aws_tags(tags),
    )
    return response["repository"]["repositoryUri"]


def registry_login(ecr, settings: Settings, log_path: Optional[Path] = None) -> None:
    """Log docker in to the registry with an ECR authorization token."""
    token = ecr.get_authorization_token()
    auth = token["authorizationData"][0]
    user, password = base64.b64decode(auth["authorizationToken"]).decode().split(":", 1)
    endpoint = settings.registry or auth["proxyEndpoint"].replace("https://", "")

    returncode, lines = run_tool(
        [settings.docker_bin, "login", "--username", user, "--password-stdin", endpoint],
        log_path=log_path,
        input_text=password,
    )
    if returncode != 0:
        tail = lines[-TAIL_LINES:]
        raise PushFailure(f"Registry login to {endpoint} failed", last_lines=tail,
                          hint=hint_for(tail, "Check AWS credentials and ECR permissions"))


def resolve_digest(ecr, repository: str, tag: str) -> Optional[str]:
    response = ecr.describe_images(repositoryName=repository, imageIds=[{"imageTag": tag}])
    details = response.get("imageDetails", [])
    return details[0].get("imageDigest") if details else None


def build_and_push(spec: ProjectSpec, settings: Settings, clients: AWSClients,
                   log_path: Optional[Path] = None, on_line: Optional[LineCallback] = None) -> ImageRef:
    """
    Build a project's image for the configured platform and push it as <registry>/<repo>:<slug>.

    Pushing an existing tag replaces it.

    Raises:
        BuildFailure: Missing context or docker build error
        PushFailure: Repository, login or push error
    """
    uri = settings.image_uri(spec.image_tag)
    context = Path(spec.context)

    if not context.is_dir():
        raise BuildFailure(f"Build context not found: {context}")
    if not (context / spec.main_file).exists():
        raise BuildFailure(f"Main file {spec.main_file} not found in {context}",
                           hint="Set main_file to the Streamlit entry script")

    dockerfile = resolve_dockerfile(spec, settings)
    if not dockerfile.exists():
        raise BuildFailure(f"Dockerfile not found: {dockerfile}")

    build_cmd = [
        settings.docker_bin, "build",
        "--platform", settings.platform,
        "-f", str(dockerfile),
        "-t", uri,
        ".",
    ]
    logger.info(f"Building {uri} for {settings.platform}")
    try:
        returncode, lines = run_tool(build_cmd, log_path=log_path, cwd=str(context), on_line=on_line)
    except FileNotFoundError as e:
        raise BuildFailure(f"Could not run {settings.docker_bin}: {e}",
                           hint="Install Docker or set docker_bin") from e
    if returncode != 0:
        tail = lines[-TAIL_LINES:]
        raise BuildFailure(f"docker build exited with {returncode}", last_lines=tail,
                           hint=hint_for(tail, "See build.log for the full output"))

    ecr = clients.ecr
    try:
        ensure_repository(ecr, settings.repository, base_tags(spec.slug))
        registry_login(ecr, settings, log_path=log_path)
    except AWS_ERRORS as e:
        raise PushFailure(f"Registry unavailable: {error_message(e)}",
                          hint=hint_for([error_message(e)])) from e

    logger.info(f"Pushing {uri}")
    returncode, lines = run_tool([settings.docker_bin, "push", uri], log_path=log_path, on_line=on_line)
    if returncode != 0:
        tail = lines[-TAIL_LINES:]
        raise PushFailure(f"docker push exited with {returncode}", last_lines=tail,
                          hint=hint_for(tail, "Check network access to the registry"))

    try:
        digest = resolve_digest(ecr, settings.repository, spec.image_tag)
    except AWS_ERRORS as e:
        raise PushFailure(f"Pushed image not found in registry: {error_message(e)}") from e

    logger.info(f"Published {uri} ({digest})")
    return ImageRef(uri=uri, digest=digest)
