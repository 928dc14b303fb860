import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from assemblychat.api.routes import chats, health
from assemblychat.logging import configure_logging
from assemblychat.pipeline.orchestrator import PipelineError
from assemblychat.storage.repo import ChatNotFoundError

configure_logging()

logger = structlog.get_logger()

app = FastAPI(
    title="Assembly Chat API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url=None,
)


def _with_request_id(request: Request, response: JSONResponse) -> JSONResponse:
    response.headers["X-Request-ID"] = getattr(
        request.state, "request_id", request.headers.get("X-Request-ID", "")
    )
    return response


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Attach a request ID to every log entry and echo it in X-Request-ID."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Report malformed input as 400 with the single ``{"error": ...}`` shape."""
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        messages.append(f"{loc}: {err['msg']}")
    return _with_request_id(
        request, JSONResponse(status_code=400, content={"error": "; ".join(messages)})
    )


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError) -> JSONResponse:
    logger.warning(
        "pipeline_request_failed",
        path=request.url.path,
        status=exc.status_code,
        stage=exc.stage.value if exc.stage else None,
    )
    return _with_request_id(
        request, JSONResponse(status_code=exc.status_code, content={"error": exc.message})
    )


@app.exception_handler(ChatNotFoundError)
async def not_found_exception_handler(request: Request, exc: ChatNotFoundError) -> JSONResponse:
    return _with_request_id(
        request, JSONResponse(status_code=404, content={"error": "Chat not found"})
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the traceback; return a generic 500 without internal details."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return _with_request_id(
        request,
        JSONResponse(status_code=500, content={"error": "An unexpected error occurred"}),
    )


app.include_router(health.router)
app.include_router(chats.router, prefix="/api")
