from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from filterhours.core.config import Settings, get_settings
from filterhours.core.logging import configure_logging
from filterhours.db.models import WorkerRun
from filterhours.db.session import build_engine, build_session_factory, check_db_connection, init_schema
from filterhours.dependencies import get_db
from filterhours.repositories.worker_runs import get_latest_worker_runs
from filterhours.services.daily_summary import DailySummaryService
from filterhours.services.filter_prediction import FilterPredictionService
from filterhours.services.filter_usage import FilterUsageService
from filterhours.services.heartbeat import DeviceHeartbeatService
from filterhours.services.hourly_summary import HourlySummaryService
from filterhours.services.region_aggregation import RegionAggregationService
from filterhours.services.region_sync import RegionSyncClient
from filterhours.services.runtime_validator import RuntimeValidatorService
from filterhours.services.scheduler import WorkerScheduler
from filterhours.services.session_stitcher import SessionStitcherService


def _build_scheduler(
    settings: Settings,
    *,
    stitcher: SessionStitcherService,
    daily_summary: DailySummaryService,
    region_aggregation: RegionAggregationService,
    runtime_validator: RuntimeValidatorService,
    hourly_summary: HourlySummaryService,
    heartbeat: DeviceHeartbeatService,
    filter_prediction: FilterPredictionService,
) -> WorkerScheduler:
    scheduler = WorkerScheduler()
    scheduler.register(
        "session_stitcher",
        interval_seconds=settings.stitcher_interval_seconds,
        run=stitcher.run_once,
    )
    scheduler.register(
        "daily_summary",
        interval_seconds=settings.summary_interval_seconds,
        run=daily_summary.run_once,
    )
    scheduler.register(
        "region_aggregation",
        interval_seconds=settings.region_interval_seconds,
        run=region_aggregation.run_once,
    )
    scheduler.register(
        "runtime_validator",
        interval_seconds=settings.validator_interval_seconds,
        run=runtime_validator.run_once,
    )
    scheduler.register(
        "hourly_summary",
        interval_seconds=settings.hourly_summary_interval_seconds,
        run=hourly_summary.run_once,
    )
    scheduler.register(
        "device_heartbeat",
        interval_seconds=settings.heartbeat_interval_seconds,
        run=heartbeat.run_once,
    )
    scheduler.register(
        "filter_prediction",
        interval_seconds=settings.prediction_interval_seconds,
        run=filter_prediction.run_once,
    )
    return scheduler


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_settings = settings or get_settings()
        configure_logging(app_settings.log_level)
        engine = build_engine(app_settings)
        if app_settings.create_schema_on_startup:
            init_schema(engine)
        session_factory = build_session_factory(engine)

        filter_usage_service = FilterUsageService(settings=app_settings, session_factory=session_factory)
        stitcher_service = SessionStitcherService(
            settings=app_settings,
            session_factory=session_factory,
            filter_usage=filter_usage_service,
        )
        daily_summary_service = DailySummaryService(settings=app_settings, session_factory=session_factory)
        region_aggregation_service = RegionAggregationService(
            settings=app_settings,
            session_factory=session_factory,
            sync_client=RegionSyncClient.from_settings(app_settings),
        )
        runtime_validator_service = RuntimeValidatorService(
            settings=app_settings,
            session_factory=session_factory,
        )
        hourly_summary_service = HourlySummaryService(settings=app_settings, session_factory=session_factory)
        heartbeat_service = DeviceHeartbeatService(settings=app_settings, session_factory=session_factory)
        filter_prediction_service = FilterPredictionService(settings=app_settings, session_factory=session_factory)
        scheduler = _build_scheduler(
            app_settings,
            stitcher=stitcher_service,
            daily_summary=daily_summary_service,
            region_aggregation=region_aggregation_service,
            runtime_validator=runtime_validator_service,
            hourly_summary=hourly_summary_service,
            heartbeat=heartbeat_service,
            filter_prediction=filter_prediction_service,
        )

        app.state.settings = app_settings
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.filter_usage_service = filter_usage_service
        app.state.session_stitcher_service = stitcher_service
        app.state.daily_summary_service = daily_summary_service
        app.state.region_aggregation_service = region_aggregation_service
        app.state.runtime_validator_service = runtime_validator_service
        app.state.hourly_summary_service = hourly_summary_service
        app.state.heartbeat_service = heartbeat_service
        app.state.filter_prediction_service = filter_prediction_service
        app.state.scheduler = scheduler

        if app_settings.scheduler_enabled:
            scheduler.start()
        try:
            yield
        finally:
            scheduler.stop()
            engine.dispose()

    app = FastAPI(title="filterhours", lifespan=lifespan)

    @app.get("/health")
    def health():
        return {"status": "ok", "service": "filterhours"}

    @app.get("/status")
    def status(request: Request, db: Session = Depends(get_db)):
        db_ok, db_error = check_db_connection(db)
        scheduler: WorkerScheduler | None = getattr(request.app.state, "scheduler", None)
        latest_runs = get_latest_worker_runs(db) if db_ok else {}
        return {
            "status": "ok" if db_ok else "degraded",
            "database": {"ok": db_ok, "error": db_error},
            "scheduler": scheduler.get_status_snapshot() if scheduler is not None else None,
            "worker_runs": {name: _worker_run_to_dict(run) for name, run in sorted(latest_runs.items())},
        }

    return app


def _worker_run_to_dict(run: WorkerRun) -> dict[str, object]:
    return {
        "id": run.id,
        "worker_name": run.worker_name,
        "status": run.status,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "duration_seconds": run.duration_seconds,
        "devices_processed": run.devices_processed,
        "details_json": run.details_json,
        "error_text": run.error_text,
    }


app = create_app()
