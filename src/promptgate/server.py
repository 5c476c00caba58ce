import logging
import uuid
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .catalog import StaticCatalog, find_catalog, load_catalog
from .config import Settings
from .crypto import AesGcmDecryptor
from .errors import ErrorCode, GatewayError, UnauthorizedError
from .metrics import PROM_CONTENT_TYPE, MetricsRegistry
from .orchestrator import CompletionOrchestrator
from .providers import AdapterRegistry
from .traces import JsonlTraceStore, TraceRecorder
from .types import ChatCompletionRequest
from .upstream import build_client

logger = logging.getLogger(__name__)

SSE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def build_orchestrator(settings: Settings) -> CompletionOrchestrator:
    if not settings.encryption_key:
        raise RuntimeError("GATEWAY_ENCRYPTION_KEY is not set")
    catalog = load_catalog(find_catalog(settings.config_dir))
    logger.info(
        "catalog.loaded path=%s providers=%d models=%d",
        catalog.path,
        len(catalog.providers),
        len(catalog.models),
    )
    return CompletionOrchestrator(
        catalog,
        AesGcmDecryptor(settings.encryption_key),
        TraceRecorder(JsonlTraceStore(settings.trace_dir)),
        client=build_client(
            timeout=settings.upstream_timeout,
            idle_timeout=settings.stream_idle_timeout,
        ),
        adapters=AdapterRegistry(),
        metrics=MetricsRegistry(),
        queue_size=settings.stream_queue_size,
        trace_partial_on_cancel=settings.trace_partial_on_cancel,
    )


def _validation_details(exc: RequestValidationError) -> list[dict[str, str]]:
    details: list[dict[str, str]] = []
    for error in exc.errors():
        location = [str(item) for item in error.get("loc", ()) if item != "body"]
        details.append(
            {"path": ".".join(location), "message": str(error.get("msg", "invalid value"))}
        )
    return details


async def _read_chat_request(request: Request) -> ChatCompletionRequest:
    # Parsed after the identity dependency so unauthenticated calls get 401.
    try:
        payload = await request.json()
    except ValueError as exc:
        raise RequestValidationError(
            [{"loc": ("body",), "msg": "Invalid JSON body", "type": "json_invalid"}]
        ) from exc
    try:
        return ChatCompletionRequest.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def _make_user_dependency(settings: Settings):
    def require_user(request: Request) -> str:
        if settings.inbound_api_keys:
            candidate = request.headers.get("x-api-key") or _bearer_token(request)
            user_id = settings.inbound_api_keys.get(candidate or "")
            if user_id:
                return user_id
        user_id = (request.headers.get(settings.user_header) or "").strip()
        if user_id:
            return user_id
        raise UnauthorizedError("Authentication required")

    return require_user


def create_app(
    settings: Settings | None = None,
    orchestrator: CompletionOrchestrator | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    owns_orchestrator = orchestrator is None
    gateway = orchestrator or build_orchestrator(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if owns_orchestrator:
            await gateway.client.aclose()

    app = FastAPI(title="promptgate", lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = gateway

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        error = GatewayError(
            "Invalid request payload",
            status_code=400,
            code=ErrorCode.VALIDATION_ERROR,
            details=_validation_details(exc),
        )
        return JSONResponse(error.to_body(), status_code=error.status_code)

    require_user = _make_user_dependency(settings)

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        catalog = gateway.catalog
        payload: dict[str, Any] = {"status": "ok"}
        if isinstance(catalog, StaticCatalog):
            payload["providers"] = len(catalog.providers)
            payload["models"] = len(catalog.models)
        return payload

    @app.get("/metrics")
    async def metrics_endpoint() -> Response:
        return Response(gateway.metrics.render(), media_type=PROM_CONTENT_TYPE)

    @app.post("/chat/completions")
    async def chat_completions(request: Request, user_id: str = Depends(require_user)):
        body = await _read_chat_request(request)
        req_id = uuid.uuid4().hex
        resolved = gateway.resolve(user_id, str(body.model_id))
        if not body.stream:
            result = await gateway.complete(user_id, body, resolved, req_id=req_id)
            return JSONResponse(result.to_body(), headers={"x-request-id": req_id})
        frames = gateway.stream(
            user_id,
            body,
            resolved,
            is_disconnected=request.is_disconnected,
            req_id=req_id,
        )
        return StreamingResponse(
            frames,
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "x-request-id": req_id},
        )

    return app


@lru_cache(maxsize=1)
def get_app() -> FastAPI:
    return create_app()


def __getattr__(name: str) -> Any:
    if name == "app":
        return get_app()
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
