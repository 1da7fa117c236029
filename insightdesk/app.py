from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from insightdesk.application import get_services
from insightdesk.core.logging import get_logger
from insightdesk.domain.errors import (
    AssistantUnavailableError,
    BackendUnavailableError,
    DuplicateIdError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
    WorkspaceError,
)
from insightdesk.routes import account, resources, workspace

LOGGER = get_logger(__name__)

STATUS_BY_ERROR = [
    (NotFoundError, 404),
    (QuotaExceededError, 429),
    (ValidationError, 400),
    (DuplicateIdError, 409),
    (BackendUnavailableError, 503),
    (AssistantUnavailableError, 502),
]


def status_for(exc: WorkspaceError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app() -> FastAPI:
    app = FastAPI(title="Insightdesk Workspace API", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_services().settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkspaceError)
    async def handle_workspace_error(request: Request, exc: WorkspaceError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body") or "body"
        translated = ValidationError(field, error.get("msg", "invalid request"))
        return JSONResponse(status_code=400, content=translated.to_dict())

    app.include_router(workspace.router, prefix="/api")
    app.include_router(resources.router, prefix="/api")
    app.include_router(account.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Insightdesk Workspace API",
                "docs": "/docs",
                "health": "/api/workspaces",
            }
        )

    return app


app = create_app()
