import logging
import uuid
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from release_controller.config import SETTINGS
from release_controller.controller import ControllerSettings, ProjectReconciler
from release_controller.errors import NotFoundError, ReconcileError
from release_controller.events import EventRecorder
from release_controller.models import (
    Deployment,
    DeploymentStatusUpdate,
    ObjectMeta,
    Project,
    ProjectApply,
    ReconcileResponse,
)
from release_controller.observability import log_event, request_id_ctx
from release_controller.release_index import ReleaseIndex
from release_controller.store import build_object_store, update_with_conflict_retry


app = FastAPI(title="Release Controller API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
store = build_object_store(SETTINGS.ddb_table, SETTINGS.db_path)
recorder = EventRecorder(store)
controller = ProjectReconciler(store, recorder, ControllerSettings.from_settings(SETTINGS))
index = ReleaseIndex(store)
logger = logging.getLogger("relctl.api")

logger.info("config.store loaded backend=%s", "dynamodb" if SETTINGS.ddb_table else "sqlite")

if SETTINGS.lambda_enabled:
    try:
        from mangum import Mangum

        handler = Mangum(app)
    except ImportError:
        handler = None


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    request_id = request_id_ctx.get() or str(uuid.uuid4())
    payload = {
        "code": code,
        "message": message,
        "request_id": request_id,
    }
    return JSONResponse(status_code=status_code, content=payload)


@app.exception_handler(ReconcileError)
async def reconcile_error_handler(request: Request, exc: ReconcileError):
    return error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    return error_response(exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in error.get("loc") or ()) for error in exc.errors()]
    message = "Invalid request"
    if fields:
        message = f"Invalid request: {', '.join(fields)}"
    return error_response(400, "INVALID_REQUEST", message)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


def project_payload(project: Project) -> dict:
    return project.model_dump(mode="json")


@app.get("/v1/health")
def health():
    return {"status": "ok"}


@app.put("/v1/projects/{namespace}/{name}")
def apply_project(namespace: str, name: str, body: ProjectApply):
    try:
        existing = store.get(Project, namespace, name)
    except NotFoundError:
        created = store.create(
            Project(metadata=ObjectMeta(name=name, namespace=namespace, labels=body.labels), spec=body.spec)
        )
        log_event("project.created", namespace=namespace, project=name, policy=created.policy)
        return JSONResponse(status_code=201, content=project_payload(created))

    def mutate(current: Project) -> None:
        if current.spec != body.spec:
            current.metadata.generation += 1
        current.spec = body.spec
        current.metadata.labels = body.labels

    updated = update_with_conflict_retry(
        store,
        existing,
        mutate,
        max_attempts=SETTINGS.conflict_max_attempts,
        retry_delay=SETTINGS.conflict_retry_delay_seconds,
    )
    log_event("project.updated", namespace=namespace, project=name, generation=updated.metadata.generation)
    return project_payload(updated)


@app.get("/v1/projects/{namespace}/{name}")
def get_project(namespace: str, name: str):
    return project_payload(store.get(Project, namespace, name))


@app.delete("/v1/projects/{namespace}/{name}")
def delete_project(namespace: str, name: str):
    deleted = controller.delete_project(namespace, name)
    return {"deleted": True, "deployments_deleted": deleted}


@app.post("/v1/projects/{namespace}/{name}/reconcile")
def reconcile_project(namespace: str, name: str):
    store.get(Project, namespace, name)
    result = controller.reconcile(namespace, name)
    response = ReconcileResponse(
        requeueAfter=result.requeue_after,
        ready=result.ready,
        error=result.error.message if result.error else None,
    )
    return response.model_dump()


@app.get("/v1/projects/{namespace}/{name}/deployments")
def list_project_deployments(namespace: str, name: str):
    project = store.get(Project, namespace, name)
    return [info.model_dump(mode="json") for info in index.list_versions_with_info(project)]


@app.get("/v1/projects/{namespace}/{name}/versions")
def get_version_mapping(namespace: str, name: str):
    project = store.get(Project, namespace, name)
    return {"versions": index.build_index(project)}


@app.put("/v1/deployments/{namespace}/{name}/status")
def update_deployment_status(namespace: str, name: str, body: DeploymentStatusUpdate):
    """Mirror backend-reported state onto a Deployment."""
    changes = body.model_dump(exclude_unset=True)
    deployment = store.get(Deployment, namespace, name)

    def mutate(current: Deployment) -> None:
        for key, value in changes.items():
            setattr(current.status, key, value)

    updated = update_with_conflict_retry(
        store,
        deployment,
        mutate,
        max_attempts=SETTINGS.conflict_max_attempts,
        retry_delay=SETTINGS.conflict_retry_delay_seconds,
    )
    log_event(
        "deployment.status_mirrored",
        namespace=namespace,
        deployment=name,
        state=updated.status.state,
    )
    return updated.model_dump(mode="json")


@app.get("/v1/events")
def list_events(
    limit: int = Query(50, ge=1, le=500),
    namespace: Optional[str] = None,
    name: Optional[str] = None,
):
    return store.list_events(limit=limit, namespace=namespace, name=name)
