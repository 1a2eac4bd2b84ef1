"""Pipedrive Deal-Flow Lead Times - Main Server"""
from fastapi import FastAPI, APIRouter, HTTPException, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
import logging
from dataclasses import dataclass
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, Union
from datetime import datetime, timedelta, timezone

from config import Settings, settings
from crm_adapters import CRMAdapter, create_adapter
from flow.aggregator import compute_all_metrics, compute_metric, compute_metric_detail, parse_period
from flow.cache import MetricResultCache, metric_cache_key
from flow.errors import (
    DuplicateMetricError, MetricNotFoundError, MetricValidationError, StoreError, SyncError,
)
from flow.metric_config import (
    InMemoryMetricConfigStore, MetricConfigStore, SupabaseMetricConfigStore,
    generate_metric_key, validate_metric_definition,
)
from flow.models import MetricDefinition, StageRef, Thresholds
from flow.segment_store import InMemorySegmentStore, SegmentStore, SupabaseSegmentStore
from flow.sync_history import InMemorySyncHistoryStore, SupabaseSyncHistoryStore, SyncHistoryStore
from sync_engine import (
    DealFlowSyncEngine, SyncInProgressError, SyncOptions, get_active_syncs, is_sync_active,
    run_sync_exclusive, start_incremental_sync_loop, stop_all_syncs,
)
from flow.retry import ExponentialBackoffPolicy
from sync_status import SyncMode, SyncRunStatus

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Deal Flow - Pipedrive Stage Lead Times")
api_router = APIRouter(prefix="/api")

# A "running" history row older than this was left behind by a killed process
STALE_RUN_SECONDS = 3600
STALE_RUN_GRACE_SECONDS = 600


# ============ Services ============

@dataclass
class FlowServices:
    segments: SegmentStore
    metrics: MetricConfigStore
    history: SyncHistoryStore
    cache: MetricResultCache
    adapter: Optional[CRMAdapter] = None

    def engine(self) -> DealFlowSyncEngine:
        if self.adapter is None:
            raise SyncError("Pipedrive is not configured (PIPEDRIVE_API_TOKEN missing)")
        return DealFlowSyncEngine(
            adapter=self.adapter,
            store=self.segments,
            history=self.history,
            retry_policy=ExponentialBackoffPolicy(base_seconds=1.0, max_seconds=10.0),
            cache=self.cache,
        )


def build_services(cfg: Settings) -> FlowServices:
    """Pick Supabase-backed stores when configured, in-memory otherwise (dev only)."""
    cache = MetricResultCache(ttl=cfg.metrics_cache_ttl, stale_ttl=cfg.metrics_cache_stale_ttl)

    adapter = None
    if cfg.pipedrive_api_token:
        adapter = create_adapter(
            "pipedrive",
            {"api_token": cfg.pipedrive_api_token},
            {"base_url": cfg.pipedrive_base_url},
        )
    else:
        logger.warning("PIPEDRIVE_API_TOKEN not set — sync endpoints are disabled")

    if cfg.use_supabase:
        from supabase import create_client
        client = create_client(cfg.supabase_url, cfg.supabase_service_key)
        logger.info("Using Supabase stores")
        return FlowServices(
            segments=SupabaseSegmentStore(client),
            metrics=SupabaseMetricConfigStore(client, cache=cache),
            history=SupabaseSyncHistoryStore(client),
            cache=cache,
            adapter=adapter,
        )

    logger.warning("SUPABASE_URL / SUPABASE_SERVICE_KEY not set — using in-memory stores")
    return FlowServices(
        segments=InMemorySegmentStore(),
        metrics=InMemoryMetricConfigStore(cache=cache),
        history=InMemorySyncHistoryStore(),
        cache=cache,
        adapter=adapter,
    )


_services: Optional[FlowServices] = None


def get_settings() -> Settings:
    return settings


def get_services() -> FlowServices:
    global _services
    if _services is None:
        _services = build_services(settings)
    return _services


# ============ Pydantic Models ============

class MetricConfigCreate(BaseModel):
    metric_key: Optional[str] = None
    display_title: str
    start_stage: StageRef
    end_stage: StageRef
    thresholds: Thresholds = Field(default_factory=Thresholds)
    comment: Optional[str] = None
    sort_order: int = 0
    is_active: bool = True

class MetricConfigUpdate(BaseModel):
    display_title: str
    start_stage: StageRef
    end_stage: StageRef
    thresholds: Thresholds = Field(default_factory=Thresholds)
    comment: Optional[str] = None
    sort_order: int = 0
    is_active: bool = True

class CommentUpdate(BaseModel):
    comment: Optional[str] = Field(default=None, max_length=2000)

class ReorderRequest(BaseModel):
    order: Dict[str, int]

class TriggerSyncRequest(BaseModel):
    mode: str = SyncMode.INCREMENTAL
    batch_size: Optional[int] = Field(default=None, ge=1, le=500)
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)

class WebhookRequest(BaseModel):
    deal_id: Union[int, str]

    @field_validator("deal_id")
    @classmethod
    def _positive_deal_id(cls, v):
        try:
            v = int(v)
        except (TypeError, ValueError):
            raise ValueError("deal_id must be a valid positive number")
        if v <= 0:
            raise ValueError("deal_id must be a valid positive number")
        return v


# ============ Error Mapping ============

@app.exception_handler(MetricValidationError)
async def _metric_validation_error(request: Request, exc: MetricValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "errors": exc.errors, "warnings": exc.warnings},
    )

@app.exception_handler(MetricNotFoundError)
async def _metric_not_found(request: Request, exc: MetricNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(DuplicateMetricError)
async def _duplicate_metric(request: Request, exc: DuplicateMetricError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(SyncInProgressError)
async def _sync_in_progress(request: Request, exc: SyncInProgressError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(SyncError)
async def _sync_error(request: Request, exc: SyncError):
    logger.error(f"Sync failed: {exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})

@app.exception_handler(StoreError)
async def _store_error(request: Request, exc: StoreError):
    logger.error(f"Store error: {exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# ============ Auth ============

async def verify_cron_auth(
    authorization: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
):
    """Bearer CRON_SECRET. Open in development, or (with a warning) when no secret is set."""
    if cfg.is_development:
        return
    if not cfg.cron_secret:
        logger.warning("CRON_SECRET not configured - cron endpoints are unprotected")
        return
    if authorization != f"Bearer {cfg.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


async def verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None),
    cfg: Settings = Depends(get_settings),
):
    if not cfg.webhook_secret:
        logger.error("WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=503, detail="Webhook not configured")
    if x_webhook_secret != cfg.webhook_secret:
        logger.error("Invalid webhook secret")
        raise HTTPException(status_code=403, detail="Forbidden")


def _period_days(period: Optional[str]) -> Optional[int]:
    try:
        return parse_period(period)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


# ============ Flow Metrics ============

@api_router.get("/flow/metrics")
async def get_flow_metrics(
    period: Optional[str] = Query(None),
    services: FlowServices = Depends(get_services),
):
    period_days = _period_days(period)
    metrics = await services.metrics.get_active()

    async def _cached(metric: MetricDefinition):
        return await services.cache.get_or_compute(
            metric_cache_key(metric.metric_key, period_days),
            lambda: compute_metric(services.segments, metric, period_days),
        )

    summaries = await compute_all_metrics(services.segments, metrics, period_days, compute=_cached)
    return {
        "period_days": period_days,
        "metrics": [s.model_dump() for s in summaries],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@api_router.get("/flow/metrics/{metric_key}")
async def get_flow_metric_detail(
    metric_key: str,
    period: Optional[str] = Query(None),
    services: FlowServices = Depends(get_services),
):
    period_days = _period_days(period)
    metric = await services.metrics.get_by_key(metric_key)
    if metric is None:
        raise MetricNotFoundError(metric_key)

    detail = await services.cache.get_or_compute(
        f"{metric_cache_key(metric_key, period_days)}:detail",
        lambda: compute_metric_detail(services.segments, metric, period_days),
    )
    return {
        "metric": metric.model_dump(),
        "summary": detail.summary.model_dump(),
        "deals": detail.deals,
    }


@api_router.get("/flow/deals/{deal_id}/segments")
async def get_deal_segments(deal_id: int, services: FlowServices = Depends(get_services)):
    segments = await services.segments.segments_for_deal(deal_id)
    return {"deal_id": deal_id, "segments": [s.to_row() for s in segments]}


# ============ Metric Configuration (admin) ============

@api_router.get("/admin/flow-metrics-config")
async def list_metric_configs(services: FlowServices = Depends(get_services)):
    metrics = await services.metrics.find_all()
    return {"metrics": [m.model_dump() for m in metrics], "count": len(metrics)}


@api_router.post("/admin/flow-metrics-config", status_code=201)
async def create_metric_config(
    request: MetricConfigCreate,
    services: FlowServices = Depends(get_services),
):
    data = request.model_dump()
    if not data.get("metric_key"):
        data["metric_key"] = generate_metric_key(request.display_title)
    metric = MetricDefinition(**data)
    created = await services.metrics.create(metric)
    return {
        "metric": created.model_dump(),
        "warnings": validate_metric_definition(created).warnings,
    }


@api_router.get("/admin/flow-metrics-config/{metric_key}")
async def get_metric_config(metric_key: str, services: FlowServices = Depends(get_services)):
    metric = await services.metrics.get_by_key(metric_key)
    if metric is None:
        raise MetricNotFoundError(metric_key)
    return {"metric": metric.model_dump()}


@api_router.put("/admin/flow-metrics-config/{metric_key}")
async def update_metric_config(
    metric_key: str,
    request: MetricConfigUpdate,
    services: FlowServices = Depends(get_services),
):
    metric = MetricDefinition(metric_key=metric_key, **request.model_dump())
    updated = await services.metrics.update(metric_key, metric)
    return {
        "metric": updated.model_dump(),
        "warnings": validate_metric_definition(updated).warnings,
    }


@api_router.delete("/admin/flow-metrics-config/{metric_key}")
async def delete_metric_config(metric_key: str, services: FlowServices = Depends(get_services)):
    await services.metrics.delete(metric_key)
    return {"success": True, "metric_key": metric_key}


@api_router.patch("/admin/flow-metrics-config/{metric_key}/comment")
async def update_metric_comment(
    metric_key: str,
    request: CommentUpdate,
    services: FlowServices = Depends(get_services),
):
    updated = await services.metrics.update_comment(metric_key, request.comment)
    return {"metric": updated.model_dump()}


@api_router.post("/admin/flow-metrics-config/reorder")
async def reorder_metric_configs(
    request: ReorderRequest,
    services: FlowServices = Depends(get_services),
):
    metrics = await services.metrics.reorder(request.order)
    return {"metrics": [m.model_dump() for m in metrics]}


# ============ Sync ============

def _sync_options(cfg: Settings, mode: str, **overrides) -> SyncOptions:
    batch_size = cfg.sync_incremental_batch_size if mode == SyncMode.INCREMENTAL else cfg.sync_batch_size
    values = {
        "mode": mode,
        "batch_size": batch_size,
        "max_retries": cfg.sync_max_retries,
        "concurrency": cfg.sync_concurrency,
        "window_hours": cfg.sync_window_hours,
        "deadline_seconds": cfg.sync_deadline_seconds or None,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return SyncOptions(**values)


async def _run_sync(services: FlowServices, options: SyncOptions) -> Dict[str, Any]:
    run = await run_sync_exclusive(services.engine(), options)
    return {
        "success": True,
        "summary": run.model_dump(mode="json"),
        "success_rate": run.success_rate,
    }


@api_router.get("/cron/sync-deal-flow", dependencies=[Depends(verify_cron_auth)])
async def cron_full_sync(
    services: FlowServices = Depends(get_services),
    cfg: Settings = Depends(get_settings),
):
    logger.info("Cron: full deal-flow sync requested")
    return await _run_sync(services, _sync_options(cfg, SyncMode.FULL))


@api_router.get("/cron/sync-deal-flow-incremental", dependencies=[Depends(verify_cron_auth)])
async def cron_incremental_sync(
    services: FlowServices = Depends(get_services),
    cfg: Settings = Depends(get_settings),
):
    logger.info("Cron: incremental deal-flow sync requested")
    return await _run_sync(services, _sync_options(cfg, SyncMode.INCREMENTAL))


@api_router.post("/admin/trigger-sync", dependencies=[Depends(verify_cron_auth)])
async def trigger_sync(
    request: TriggerSyncRequest,
    services: FlowServices = Depends(get_services),
    cfg: Settings = Depends(get_settings),
):
    if request.mode not in (SyncMode.FULL, SyncMode.INCREMENTAL):
        raise HTTPException(status_code=422, detail="mode must be 'full' or 'incremental'")
    logger.info(f"Admin: manual {request.mode} sync triggered")
    options = _sync_options(
        cfg, request.mode, batch_size=request.batch_size, max_retries=request.max_retries,
    )
    return await _run_sync(services, options)


def _is_live_run(run, cfg: Settings, now: datetime) -> bool:
    if run.status != SyncRunStatus.RUNNING or run.started_at is None:
        return False
    limit = (cfg.sync_deadline_seconds or STALE_RUN_SECONDS) + STALE_RUN_GRACE_SECONDS
    return now - run.started_at < timedelta(seconds=limit)


@api_router.get("/admin/sync-status", dependencies=[Depends(verify_cron_auth)])
async def get_sync_status(
    services: FlowServices = Depends(get_services),
    cfg: Settings = Depends(get_settings),
):
    now = datetime.now(timezone.utc)
    recent = await services.history.recent(10)
    last_completed = next((r for r in recent if r.status == SyncRunStatus.COMPLETED), None)
    running = next((r for r in recent if _is_live_run(r, cfg, now)), None)
    completed = sum(1 for r in recent if r.status == SyncRunStatus.COMPLETED)
    failed = sum(1 for r in recent if r.status == SyncRunStatus.FAILED)

    data_age_hours = None
    if last_completed and last_completed.completed_at:
        delta = now - last_completed.completed_at
        data_age_hours = int(delta.total_seconds() // 3600)

    return {
        "current_status": {
            "is_running": is_sync_active() or running is not None,
            "last_sync_time": last_completed.completed_at.isoformat() if last_completed and last_completed.completed_at else None,
            "data_age_hours": data_age_hours,
            "active": get_active_syncs(),
        },
        "statistics": {
            "recent_runs": len(recent),
            "successful_runs": completed,
            "failed_runs": failed,
            "success_rate": round(completed / len(recent) * 100, 1) if recent else 0.0,
        },
        "recent_syncs": [r.model_dump(mode="json") for r in recent],
    }


@api_router.get("/admin/crm-connection", dependencies=[Depends(verify_cron_auth)])
async def check_crm_connection(services: FlowServices = Depends(get_services)):
    if services.adapter is None:
        return {"ok": False, "message": "Pipedrive is not configured (PIPEDRIVE_API_TOKEN missing)"}
    return await services.adapter.test_connection()


@api_router.post("/pipedrive/webhook", dependencies=[Depends(verify_webhook_secret)])
async def pipedrive_webhook(
    request: WebhookRequest,
    services: FlowServices = Depends(get_services),
    cfg: Settings = Depends(get_settings),
):
    logger.info(f"Webhook received for deal {request.deal_id}")
    options = _sync_options(cfg, SyncMode.SINGLE, deal_ids=[request.deal_id])
    run = await run_sync_exclusive(services.engine(), options)
    if run.failed_deals:
        return {
            "success": False,
            "deal_id": request.deal_id,
            "error": run.failed_deals[0].error,
        }
    return {
        "success": True,
        "deal_id": request.deal_id,
        "segments_inserted": run.segments_inserted,
        "segments_updated": run.segments_updated,
    }


# ============ Health Check ============

@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Include router and add middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=settings.cors_origins.split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    services = get_services()
    if settings.sync_loop_interval_seconds > 0 and services.adapter is not None:
        await start_incremental_sync_loop(
            services.engine,
            _sync_options(settings, SyncMode.INCREMENTAL),
            interval=settings.sync_loop_interval_seconds,
        )
    logger.info("Deal-flow service started")


@app.on_event("shutdown")
async def shutdown():
    stop_all_syncs()
