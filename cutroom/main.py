"""FastAPI application entry point for Cutroom.

Exposes the pipeline, stage, queue, agent and payout operations over HTTP.
Components are built once in the application lifespan and kept on
``app.state.services``; tests pass their own repository, registry and
rate limiter to create_app().

Error mapping:
- ValidationError / request validation -> 400
- PermissionDeniedError -> 403
- NotFoundError -> 404
- ConflictError, OrderingViolationError, InvalidStateError -> 409
- RateLimitExceeded -> 429 with Retry-After
- HandlerNotImplementedError -> 501
- DatabaseError -> 503
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cutroom import __version__
from cutroom.config import CutroomSettings, get_settings
from cutroom.executor import StageExecutor
from cutroom.metrics import CutroomMetrics, generate_metrics_output
from cutroom.payouts import calculate_payouts
from cutroom.queue import MAX_BATCH_CLAIM, WorkQueue
from cutroom.rate_limit import (
    RateLimiter,
    RateLimitExceeded,
    agent_rate_limit_key,
    ip_rate_limit_key,
)
from cutroom.reporting import ReportingService
from cutroom.stages import StageRegistry, build_stage_registry
from cutroom.stages.base import HandlerNotImplementedError
from cutroom.state.machine import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    OrderingViolationError,
    PermissionDeniedError,
    PipelineError,
    PipelineRepository,
    PipelineStateMachine,
    ValidationError,
)
from cutroom.state.memory import InMemoryPipelineRepository
from cutroom.state.models import PipelineStatus, StageName
from cutroom.state.repository import DatabaseError, PostgresPipelineRepository


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


ERROR_STATUS_CODES = {
    ValidationError: 400,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    OrderingViolationError: 409,
    InvalidStateError: 409,
}


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: CutroomSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Cutroom configuration:")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url, 13)}")
    logger.info(f"  DB Pool Size: {settings.db_min_pool_size}-{settings.db_max_pool_size}")
    logger.info(f"  OpenAI API Key: {_redact_secret(settings.openai_api_key)}")
    logger.info(f"  OpenAI Model: {settings.openai_model}")
    logger.info(f"  ElevenLabs API Key: {_redact_secret(settings.elevenlabs_api_key)}")
    logger.info(f"  ElevenLabs Voice: {settings.elevenlabs_voice_id}")
    logger.info(f"  Pexels API Key: {_redact_secret(settings.pexels_api_key)}")
    logger.info(f"  Media Base URL: {settings.media_base_url}")
    logger.info(f"  Media Dir: {settings.media_dir}")
    logger.info(f"  Rate Limiting: {settings.rate_limit_enabled}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


@dataclass
class CutroomServices:
    """Everything a request handler needs, built once per application."""

    settings: CutroomSettings
    repository: PipelineRepository
    machine: PipelineStateMachine
    registry: StageRegistry
    executor: StageExecutor
    queue: WorkQueue
    reporting: ReportingService
    rate_limiter: RateLimiter
    metrics: CutroomMetrics


def build_services(
    settings: CutroomSettings,
    repository: PipelineRepository,
    registry: StageRegistry,
    rate_limiter: Optional[RateLimiter] = None,
    metrics: Optional[CutroomMetrics] = None,
) -> CutroomServices:
    """Wire the state machine, executor, queue and reporting together."""
    metrics = metrics or CutroomMetrics()
    machine = PipelineStateMachine(repository, metrics=metrics)
    executor = StageExecutor(machine, registry, metrics=metrics)
    return CutroomServices(
        settings=settings,
        repository=repository,
        machine=machine,
        registry=registry,
        executor=executor,
        queue=WorkQueue(machine, executor),
        reporting=ReportingService(repository),
        rate_limiter=rate_limiter
        or RateLimiter(enabled=settings.rate_limit_enabled),
        metrics=metrics,
    )


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------


class ApiModel(BaseModel):
    """Request body accepting camelCase or snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreatePipelineRequest(ApiModel):
    topic: str = Field(..., min_length=1)
    description: Optional[str] = None


class ClaimRequest(ApiModel):
    agent_id: str = Field(..., min_length=1)
    agent_name: Optional[str] = None


class BatchClaimRequest(ClaimRequest):
    stage_ids: List[str] = Field(..., min_length=1, max_length=MAX_BATCH_CLAIM)


class ExecuteRequest(ApiModel):
    agent_id: str = Field(..., min_length=1)
    input: Optional[Dict[str, Any]] = None
    config: Optional[Dict[str, Any]] = None
    dry_run: bool = False


class CompleteRequest(ApiModel):
    agent_id: Optional[str] = None
    output: Any = None
    artifacts: List[str] = Field(default_factory=list)


class FailRequest(ApiModel):
    agent_id: Optional[str] = None
    error: str = ""


class QueueClaimRequest(ClaimRequest):
    capabilities: List[StageName] = Field(..., min_length=1)
    auto_execute: bool = False
    input: Optional[Dict[str, Any]] = None
    config: Optional[Dict[str, Any]] = None
    dry_run: bool = False


class PayoutAttribution(ApiModel):
    agent_id: str
    percentage: float = Field(..., ge=0, le=100)


class PayoutRequest(ApiModel):
    total_amount: float = Field(..., ge=0)
    pipeline_id: Optional[str] = None
    attributions: Optional[List[PayoutAttribution]] = None


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------


def get_services(request: Request) -> CutroomServices:
    return request.app.state.services


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def enforce_general_limit(
    request: Request, services: CutroomServices = Depends(get_services)
) -> None:
    services.rate_limiter.enforce(
        ip_rate_limit_key(_client_ip(request), "general"), "general"
    )


async def _require_claimant(
    services: CutroomServices, stage_id: str, agent_id: Optional[str]
) -> None:
    if agent_id is None:
        return
    stage = await services.machine.get_stage(stage_id)
    if stage.agent_id is not None and stage.agent_id != agent_id:
        raise PermissionDeniedError(stage_id, agent_id)


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------

router = APIRouter(prefix="/api", dependencies=[Depends(enforce_general_limit)])


@router.get("/pipelines")
async def list_pipelines(
    status: Optional[PipelineStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    services: CutroomServices = Depends(get_services),
):
    details = await services.machine.list_pipelines(limit=limit, status=status)
    return {"pipelines": details, "count": len(details)}


@router.post("/pipelines", status_code=201)
async def create_pipeline(
    body: CreatePipelineRequest,
    request: Request,
    services: CutroomServices = Depends(get_services),
):
    services.rate_limiter.enforce(
        ip_rate_limit_key(_client_ip(request), "create_pipeline"), "create_pipeline"
    )
    return await services.machine.create_pipeline(body.topic, body.description)


@router.get("/pipelines/{pipeline_id}")
async def get_pipeline(
    pipeline_id: str, services: CutroomServices = Depends(get_services)
):
    return await services.machine.get_pipeline(pipeline_id)


@router.post("/pipelines/{pipeline_id}/start")
async def start_pipeline(
    pipeline_id: str, services: CutroomServices = Depends(get_services)
):
    return await services.machine.start_pipeline(pipeline_id)


@router.get("/stages/available")
async def available_stages(
    stage_name: Optional[StageName] = Query(None, alias="stageName"),
    services: CutroomServices = Depends(get_services),
):
    stages = await services.queue.get_available_stages(stage_name)
    return {"stages": stages, "count": len(stages)}


@router.post("/stages/batch-claim")
async def batch_claim(
    body: BatchClaimRequest, services: CutroomServices = Depends(get_services)
):
    services.rate_limiter.enforce(agent_rate_limit_key(body.agent_id, "claim"), "claim")
    batch = await services.queue.batch_claim(
        body.agent_id, body.agent_name or body.agent_id, body.stage_ids
    )
    return {
        "results": batch.results,
        "claimed": batch.claimed,
        "failed": batch.failed,
    }


@router.post("/stages/{stage_id}/claim")
async def claim_stage(
    stage_id: str,
    body: ClaimRequest,
    services: CutroomServices = Depends(get_services),
):
    services.rate_limiter.enforce(agent_rate_limit_key(body.agent_id, "claim"), "claim")
    return await services.machine.claim_stage_by_id(
        stage_id, body.agent_id, body.agent_name or body.agent_id
    )


@router.post("/stages/{stage_id}/execute")
async def execute_stage(
    stage_id: str,
    body: ExecuteRequest,
    services: CutroomServices = Depends(get_services),
):
    services.rate_limiter.enforce(
        agent_rate_limit_key(body.agent_id, "execute"), "execute"
    )
    return await services.executor.execute(
        stage_id,
        body.agent_id,
        input=body.input,
        config=body.config,
        dry_run=body.dry_run,
    )


@router.post("/stages/{stage_id}/complete")
async def complete_stage(
    stage_id: str,
    body: CompleteRequest,
    services: CutroomServices = Depends(get_services),
):
    await _require_claimant(services, stage_id, body.agent_id)
    return await services.machine.complete_stage(stage_id, body.output, body.artifacts)


@router.post("/stages/{stage_id}/fail")
async def fail_stage(
    stage_id: str,
    body: FailRequest,
    services: CutroomServices = Depends(get_services),
):
    await _require_claimant(services, stage_id, body.agent_id)
    return await services.machine.fail_stage(stage_id, body.error)


@router.post("/stages/{stage_id}/skip")
async def skip_stage(stage_id: str, services: CutroomServices = Depends(get_services)):
    return await services.machine.skip_stage(stage_id)


@router.get("/queue")
async def queue_summary(services: CutroomServices = Depends(get_services)):
    return await services.queue.summarize()


@router.post("/queue/claim")
async def queue_claim(
    body: QueueClaimRequest, services: CutroomServices = Depends(get_services)
):
    services.rate_limiter.enforce(agent_rate_limit_key(body.agent_id, "claim"), "claim")
    result = await services.queue.claim_next(
        body.agent_id,
        body.agent_name or body.agent_id,
        body.capabilities,
        auto_execute=body.auto_execute,
        input=body.input,
        config=body.config,
        dry_run=body.dry_run,
    )
    if result is None:
        return {"claimed": False, "message": "No matching stages available"}
    return {"claimed": True, **result.model_dump(mode="json")}


@router.get("/agents/{agent_id}")
async def agent_profile(agent_id: str, services: CutroomServices = Depends(get_services)):
    return await services.reporting.get_agent_profile(agent_id)


@router.post("/payouts")
async def payouts(body: PayoutRequest, services: CutroomServices = Depends(get_services)):
    if body.pipeline_id is not None:
        detail = await services.machine.get_pipeline(body.pipeline_id)
        attributions: List[Any] = detail.attributions
    elif body.attributions is not None:
        attributions = body.attributions
    else:
        raise ValidationError("Either pipelineId or attributions is required")
    return {
        "total_amount": body.total_amount,
        "payouts": calculate_payouts(attributions, body.total_amount),
    }


@router.get("/stats")
async def stats(services: CutroomServices = Depends(get_services)):
    return await services.reporting.get_system_stats()


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------


def _error_response(status_code: int, exc: Exception, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": str(exc), "type": type(exc).__name__, **extra},
    )


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        status_code = ERROR_STATUS_CODES.get(type(exc), 400)
        logger.warning(
            "Request rejected",
            extra={
                "path": request.url.path,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        return _error_response(status_code, exc)

    @app.exception_handler(HandlerNotImplementedError)
    async def handler_missing(request: Request, exc: HandlerNotImplementedError):
        return _error_response(501, exc, stage=exc.stage_name.value)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limited(request: Request, exc: RateLimitExceeded):
        request.app.state.services.metrics.record_rate_limited(exc.action)
        response = _error_response(
            429, exc, retry_after=exc.result.retry_after
        )
        response.headers["Retry-After"] = str(exc.result.retry_after)
        return response

    @app.exception_handler(RequestValidationError)
    async def request_invalid(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request",
                "type": "ValidationError",
                "details": [
                    {"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()
                ],
            },
        )

    @app.exception_handler(DatabaseError)
    async def store_unavailable(request: Request, exc: DatabaseError):
        logger.error(
            "Store error",
            extra={"path": request.url.path, "error": str(exc)},
        )
        return _error_response(503, exc)


def create_app(
    settings: Optional[CutroomSettings] = None,
    repository: Optional[PipelineRepository] = None,
    rate_limiter: Optional[RateLimiter] = None,
    registry: Optional[StageRegistry] = None,
    metrics: Optional[CutroomMetrics] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Anything not passed in is built from settings at startup: a Postgres
    repository when a database URL is configured (in-memory otherwise) and
    the default stage registry.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        logging.getLogger().setLevel(cfg.log_level)
        logger.info("Cutroom starting up...")
        _log_configuration(cfg)

        owned_repository: Optional[PostgresPipelineRepository] = None
        repo = repository
        if repo is None:
            if cfg.database_url:
                owned_repository = PostgresPipelineRepository(
                    cfg.database_url,
                    min_pool_size=cfg.db_min_pool_size,
                    max_pool_size=cfg.db_max_pool_size,
                )
                await owned_repository.connect()
                repo = owned_repository
            else:
                logger.warning("No database configured, using in-memory store")
                repo = InMemoryPipelineRepository()

        stage_registry = registry or build_stage_registry(cfg)
        app.state.services = build_services(
            cfg, repo, stage_registry, rate_limiter=rate_limiter, metrics=metrics
        )
        logger.info("Cutroom started successfully")

        yield

        logger.info("Cutroom shutting down...")
        await stage_registry.close()
        if owned_repository is not None:
            await owned_repository.disconnect()
        logger.info("Cutroom shutdown complete")

    app = FastAPI(
        title="Cutroom",
        description="Collaborative short-form video production pipeline for agents",
        version=__version__,
        lifespan=lifespan,
    )
    _register_exception_handlers(app)

    @app.get("/health")
    async def health(request: Request):
        """Liveness probe that also reports store health."""
        services: CutroomServices = request.app.state.services
        try:
            store_ok = await services.repository.health_check()
        except Exception as e:
            logger.warning("Store health check failed", extra={"error": str(e)})
            store_ok = False

        body = {
            "status": "healthy" if store_ok else "degraded",
            "version": __version__,
            "dependencies": {"store": "healthy" if store_ok else "unhealthy"},
        }
        return JSONResponse(status_code=200 if store_ok else 503, content=body)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        """Prometheus metrics endpoint."""
        services: CutroomServices = request.app.state.services
        return Response(
            content=generate_metrics_output(services.metrics.registry),
            media_type=CONTENT_TYPE_LATEST,
        )

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "cutroom.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
