"""Main FastAPI application for the slugdeploy REST API."""

import threading
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config import Settings, load_settings
from ..errors import ConfigError, DeployError, InvalidSpec, StateError
from ..events import read_events
from ..ids import new_run_id
from ..orchestrator import check_settings, decommission, deploy, list_projects, status
from ..spec import load_spec


# Pydantic models
class DeployRequest(BaseModel):
    # slug and main_file stay optional here so the descriptor loader reports them
    slug: Optional[str] = None
    main_file: Optional[str] = None
    cpu: Optional[int] = None
    memory: Optional[int] = None
    replicas: Optional[int] = None
    env: List[str] = Field(default_factory=list)
    context: Optional[str] = None
    dockerfile: Optional[str] = None
    title: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    force_rollout: bool = False
    tags: Dict[str, str] = Field(default_factory=dict)

    def descriptor(self) -> Dict[str, Any]:
        fields = ("slug", "main_file", "cpu", "memory", "replicas", "env", "context",
                  "dockerfile", "title", "authors", "description")
        values = {name: getattr(self, name) for name in fields}
        return {k: v for k, v in values.items() if v not in (None, [])}


class DeployResponse(BaseModel):
    slug: str
    run_id: str
    message: str = "Deployment started"


class ProjectsResponse(BaseModel):
    projects: List[str]


class DecommissionRequest(BaseModel):
    purge_secrets: bool = False
    purge_logs: bool = False


class DecommissionResponse(BaseModel):
    ok: bool
    slug: str
    run_id: str
    removed: List[str]
    leftovers: List[Dict[str, Any]]


def _error(status_code: int, code: str, message: str, hint: Optional[str] = None) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message, "hint": hint})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Settings to use; loaded from file/env on first request when omitted
    """
    app = FastAPI(
        title="slugdeploy API",
        description="Build, route and verify slug-keyed apps on ECS Fargate",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    # slugs with a pipeline in flight in this process
    app.state.running = set()
    app.state.running_lock = threading.Lock()

    def get_settings() -> Settings:
        if app.state.settings is None:
            try:
                app.state.settings = load_settings()
            except ConfigError as e:
                raise _error(503, "not_configured", str(e), "Fix the slugdeploy settings file or environment")
        return app.state.settings

    def run_pipeline(spec, run_id: str, force_rollout: bool, tags: Dict[str, str]) -> None:
        try:
            deploy(spec, get_settings(), force_rollout=force_rollout, extra_tags=tags or None, run_id=run_id)
        finally:
            with app.state.running_lock:
                app.state.running.discard(spec.slug)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"message": "slugdeploy API is running", "version": __version__}

    @app.get("/projects", response_model=ProjectsResponse)
    def get_projects():
        """List slugs with a deployment record."""
        return ProjectsResponse(projects=list_projects(get_settings()))

    @app.post("/deploy", response_model=DeployResponse, status_code=202)
    def deploy_endpoint(request: DeployRequest, background_tasks: BackgroundTasks):
        """Validate a descriptor and run its pipeline in the background."""
        settings = get_settings()
        try:
            spec = load_spec(request.descriptor(), settings)
        except InvalidSpec as e:
            raise _error(422, "invalid_spec", e.message, e.hint)
        try:
            check_settings(settings)
        except ConfigError as e:
            raise _error(503, "not_configured", str(e), "Set the missing settings and restart the server")

        with app.state.running_lock:
            if spec.slug in app.state.running:
                raise _error(409, "deploy_in_progress", f"A pipeline for {spec.slug} is already running",
                             "Wait for it to finish, then retry")
            app.state.running.add(spec.slug)

        run_id = new_run_id()
        background_tasks.add_task(run_pipeline, spec, run_id, request.force_rollout, request.tags)
        return DeployResponse(slug=spec.slug, run_id=run_id)

    @app.get("/projects/{slug}/status")
    def get_status(slug: str):
        """Get a project's record and derived status."""
        try:
            return status(slug, get_settings())
        except (StateError, ValueError):
            raise _error(404, "project_not_found", f"Project {slug} not found", "Check the slug")

    @app.get("/projects/{slug}/events")
    def get_events(slug: str, run_id: Optional[str] = None):
        """Get a project's events, optionally for one run."""
        try:
            events = read_events(slug, get_settings().home, run_id=run_id)
        except ValueError:
            events = []
        if not events:
            raise _error(404, "project_not_found", f"No events for {slug}", "Check the slug")
        return {"slug": slug, "events": events}

    @app.post("/projects/{slug}/decommission", response_model=DecommissionResponse)
    def decommission_endpoint(slug: str, request: Optional[DecommissionRequest] = None):
        """Tear a project down."""
        request = request or DecommissionRequest()
        try:
            result = decommission(slug, get_settings(), purge_secrets=request.purge_secrets,
                                  purge_logs=request.purge_logs)
        except (StateError, ValueError):
            raise _error(404, "project_not_found", f"Project {slug} not found", "Check the slug")
        except ConfigError as e:
            raise _error(503, "not_configured", str(e))
        if result.error:
            raise _error(500, "decommission_failed", result.error.message,
                         f"Removed so far: {', '.join(result.removed) or 'nothing'}")
        return DecommissionResponse(ok=True, slug=slug, run_id=result.run_id,
                                    removed=result.removed, leftovers=result.leftovers)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Custom HTTP exception handler."""
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        return JSONResponse(status_code=422, content={"error": {
            "code": "invalid_request",
            "message": f"{location}: {first.get('msg', 'invalid value')}" if location else "Invalid request body",
            "hint": "Check the descriptor fields and their types",
        }})

    @app.exception_handler(DeployError)
    async def deploy_error_handler(request: Request, exc: DeployError):
        return JSONResponse(status_code=500, content={"error": {
            "code": exc.stage, "message": exc.message, "hint": exc.hint,
        }})

    return app


app = create_app()
