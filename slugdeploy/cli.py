"""
Click CLI interface for slugdeploy.
"""

import json
import logging
import sys
from typing import Any, Dict, List, Optional

import click

from .config import Settings, load_settings
from .dockerfile import render_dockerfile
from .errors import ConfigError, DeployError, InvalidSpec, StateError
from .events import tail_events
from .orchestrator import PipelineResult, decommission, deploy_batch, list_projects, status
from .spec import ProjectSpec, load_spec, load_specs, resource_names
from .tags import parse_user_tags

LOG_LEVELS = {0: logging.WARNING, 1: logging.INFO}


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Settings YAML file")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug)")
@click.option("--json", "output_json", is_flag=True, help="Output machine-readable JSON")
@click.pass_context
def main(ctx, config_path: Optional[str], verbose: int, output_json: bool):
    """
    slugdeploy - build, route and verify slug-keyed Streamlit apps on ECS Fargate.
    """
    logging.basicConfig(
        level=LOG_LEVELS.get(verbose, logging.DEBUG),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["json"] = output_json


def _settings(ctx) -> Settings:
    if "settings" not in ctx.obj:
        try:
            ctx.obj["settings"] = load_settings(ctx.obj.get("config_path"))
        except ConfigError as e:
            click.echo(f"Configuration error: {e}", err=True)
            sys.exit(1)
    return ctx.obj["settings"]


def _json_output(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _error_line(error: DeployError) -> str:
    line = f"[{error.stage}] {error.message}"
    if error.hint:
        line += f"\n    💡 {error.hint}"
    return line


def _print_result(result: PipelineResult, settings: Settings) -> None:
    if result.ok:
        click.echo(f"✅ {result.slug}: healthy at {settings.public_url(result.slug)}")
        return
    click.echo(f"❌ {result.slug or '<invalid descriptor>'}: failed {_error_line(result.error)}")
    for line in getattr(result.error, "last_lines", [])[-5:]:
        click.echo(f"    | {line}")


def _expand(descriptors: List[str], settings: Settings) -> List[Any]:
    """Descriptor files may hold several projects; flatten them into specs."""
    sources: List[Any] = []
    for descriptor in descriptors:
        try:
            sources.extend(load_specs(descriptor, settings))
        except InvalidSpec:
            # deploy_batch reports it against this descriptor
            sources.append(descriptor)
    return sources


@main.command("validate")
@click.argument("descriptors", nargs=-1, required=True)
@click.pass_context
def validate_cmd(ctx, descriptors):
    """
    Validate descriptors and show the names derived from each slug.
    """
    settings = _settings(ctx)
    report: List[Dict[str, Any]] = []
    failed = False

    for descriptor in descriptors:
        try:
            specs = load_specs(descriptor, settings)
        except InvalidSpec as e:
            failed = True
            report.append({"descriptor": descriptor, "valid": False, "error": e.to_dict()})
            continue
        for spec in specs:
            names = resource_names(spec, settings)
            report.append({
                "descriptor": descriptor,
                "valid": True,
                "slug": spec.slug,
                "service": names.service,
                "target_group": names.target_group,
                "health_path": spec.health_path,
                "path_pattern": spec.path_pattern,
                "log_group": names.log_group,
            })

    if ctx.obj["json"]:
        _json_output(report)
    else:
        for entry in report:
            if entry["valid"]:
                click.echo(f"✅ {entry['slug']}: service {entry['service']}, "
                           f"target group {entry['target_group']}, path {entry['path_pattern']}")
            else:
                click.echo(f"❌ {entry['descriptor']}: {entry['error']['message']}")

    sys.exit(1 if failed else 0)


@main.command("deploy")
@click.argument("descriptors", nargs=-1, required=True)
@click.option("--parallel", type=int, help="Pipelines to run at once (default: max_workers)")
@click.option("--force-rollout", is_flag=True, help="Force a new ECS deployment")
@click.option("--tag", "tags", multiple=True, help="Tags in format 'key=value' (repeatable)")
@click.pass_context
def deploy_cmd(ctx, descriptors, parallel: Optional[int], force_rollout: bool, tags: tuple):
    """
    Build, publish, route and verify one or more projects.
    """
    settings = _settings(ctx)

    user_tags = None
    if tags:
        try:
            user_tags = parse_user_tags(list(tags))
        except ValueError as e:
            click.echo(f"Invalid tag format: {e}", err=True)
            sys.exit(1)

    sources = _expand(list(descriptors), settings)
    try:
        results = deploy_batch(sources, settings, max_workers=parallel,
                               force_rollout=force_rollout, extra_tags=user_tags)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nDeployment cancelled by user", err=True)
        sys.exit(1)

    if ctx.obj["json"]:
        _json_output([r.to_dict() for r in results])
    else:
        for result in results:
            _print_result(result, settings)

    sys.exit(0 if results and all(r.ok for r in results) else 1)


@main.command("status")
@click.argument("slug")
@click.pass_context
def status_cmd(ctx, slug: str):
    """
    Show a project's deployment record and derived status.
    """
    settings = _settings(ctx)
    try:
        result = status(slug, settings)
    except (StateError, ValueError) as e:
        click.echo(f"Unknown project: {slug} ({e})", err=True)
        sys.exit(1)

    if ctx.obj["json"]:
        _json_output(result)
        return

    click.echo(f"🆔 Slug: {slug}")
    click.echo(f"📊 Status: {result['status'].upper()} - {result['message']}")
    if result.get("public_url"):
        click.echo(f"🌐 Public URL: {result['public_url']}")
    state = result.get("state") or {}
    for key in ("image_uri", "task_definition_arn", "target_group_arn", "rule_arn", "behavior_id",
                "last_verified_healthy"):
        if state.get(key):
            click.echo(f"  • {key}: {state[key]}")
    if result.get("links"):
        click.echo("📋 Links:")
        for name, url in result["links"].items():
            click.echo(f"  • {name}: {url}")
    if result.get("failure_hint"):
        click.echo(f"💡 Hint: {result['failure_hint']}")


@main.command("events")
@click.argument("slug")
@click.option("--follow", "-f", is_flag=True, help="Follow events in real-time")
@click.pass_context
def events_cmd(ctx, slug: str, follow: bool):
    """
    Print a project's event log.
    """
    settings = _settings(ctx)
    try:
        for event in tail_events(slug, follow=follow, home=settings.home):
            if ctx.obj["json"]:
                print(json.dumps(event), flush=True)
            else:
                data = event.get("data", {})
                detail = data.get("message") or data.get("line") or ""
                click.echo(f"[{event.get('ts')}] {event.get('type')} {detail}".rstrip())
    except ValueError as e:
        click.echo(str(e), err=True)
        sys.exit(1)


@main.command("list")
@click.pass_context
def list_cmd(ctx):
    """
    List all projects with a deployment record.
    """
    settings = _settings(ctx)
    slugs = list_projects(settings)

    if ctx.obj["json"]:
        _json_output([status(slug, settings) for slug in slugs])
        return

    if not slugs:
        click.echo("No projects found")
        return
    for slug in slugs:
        click.echo(f"  • {slug}: {status(slug, settings)['status']}")


@main.command("decommission")
@click.argument("slug")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation")
@click.option("--purge-secrets", is_flag=True, help="Also delete the project's SSM parameters")
@click.option("--purge-logs", is_flag=True, help="Also delete the project's log group")
@click.pass_context
def decommission_cmd(ctx, slug: str, yes: bool, purge_secrets: bool, purge_logs: bool):
    """
    Remove a project's routing, service, target group, task definitions and image.
    """
    settings = _settings(ctx)

    if not yes and not click.confirm(f"Are you sure you want to decommission {slug}?"):
        click.echo("Decommission cancelled")
        return

    try:
        result = decommission(slug, settings, purge_secrets=purge_secrets, purge_logs=purge_logs)
    except StateError as e:
        click.echo(f"❌ {e.message}", err=True)
        sys.exit(1)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    if ctx.obj["json"]:
        _json_output(result.to_dict())
    elif result.ok:
        click.echo(f"✅ {slug} decommissioned: {', '.join(result.removed) or 'nothing left to remove'}")
        for leftover in result.leftovers:
            click.echo(f"  ⚠️  still tagged: {leftover['service']} {leftover['arn_or_id']}")
    else:
        click.echo(f"❌ {slug}: {_error_line(result.error)}")

    sys.exit(0 if result.ok else 1)


@main.command("dockerfile")
@click.argument("descriptor")
@click.pass_context
def dockerfile_cmd(ctx, descriptor: str):
    """
    Print the Dockerfile generated for a project.
    """
    settings = _settings(ctx)
    try:
        spec: ProjectSpec = load_spec(descriptor, settings)
    except InvalidSpec as e:
        click.echo(f"❌ {e.message}", err=True)
        sys.exit(1)
    click.echo(render_dockerfile(spec, settings), nl=False)


@main.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", default=7000, help="Port to bind to")
@click.pass_context
def serve(ctx, host: str, port: int):
    """
    Start the REST API server.
    """
    import uvicorn
    from .api import create_app

    settings = _settings(ctx)
    click.echo(f"Starting slugdeploy API server on {host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port)


if __name__ == "__main__":
    main()
