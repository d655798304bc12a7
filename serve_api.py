#!/usr/bin/env python
"""FastAPI service for statlake: site stats, chart data and dump imports.

Rollup sweeps run on a BackgroundScheduler (hourly at :00, daily at 02:00,
monthly on the 1st at 03:00). Import jobs run on the same scheduler's
thread pool, so an import never blocks a request.
"""
from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from pydantic import BaseModel
from pathlib import Path
from typing import Optional
import logging
import os

from statlake_core.aggregation import RollupEngine
from statlake_core.cache import StatsCache, get_cache
from statlake_core.config import AnalyticsConfig, load_config
from statlake_core.database_utils import connect
from statlake_core.exceptions import FileProcessingError, ImportJobError, StatlakeError
from statlake_core.importer import ImportCoordinator
from statlake_core.jobs import JobQueue, SchedulerJobQueue
from statlake_core.scheduler import register_sweeps
from statlake_core.stats import cached_chart_data, cached_site_stats

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


class ImportRequest(BaseModel):
    file_path: str
    dry_run: bool = False


def create_app(
    config: Optional[AnalyticsConfig] = None,
    queue: Optional[JobQueue] = None,
    cache: Optional[StatsCache] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Build the app; tests pass an inline queue and ``start_scheduler=False``."""
    config = config or load_config()
    cache = cache if cache is not None else get_cache()
    conn = connect(config.database)
    engine = RollupEngine(conn, config, cache=cache)

    app = FastAPI(
        title="Statlake Analytics API",
        description="Site statistics served from hourly, daily and monthly rollups",
        version=VERSION,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o for o in os.getenv('STATLAKE_CORS_ORIGINS', '').split(',') if o],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.state.config = config
    app.state.engine = engine
    app.state.scheduler = None
    app.state.queue = queue
    app.state.coordinator = ImportCoordinator(conn, queue, config) if queue is not None else None

    @app.on_event("startup")
    async def startup_event():
        """Start the sweep scheduler and the import queue."""
        logger.info("Starting Statlake API service...")
        if app.state.queue is None:
            scheduler = BackgroundScheduler(
                executors={'default': ThreadPoolExecutor(config.jobs.max_workers)},
                timezone='UTC',
            )
            app.state.queue = SchedulerJobQueue(scheduler)
            app.state.coordinator = ImportCoordinator(conn, app.state.queue, config)
            app.state.scheduler = scheduler
        if start_scheduler and app.state.scheduler is not None:
            register_sweeps(app.state.scheduler, engine)
            app.state.scheduler.start()
            logger.info("Scheduler started")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Clean up on shutdown."""
        logger.info("Shutting down Statlake API service...")
        if app.state.scheduler is not None and app.state.scheduler.running:
            app.state.scheduler.shutdown()
        conn.close()

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "service": "Statlake Analytics API",
            "version": VERSION,
            "endpoints": {
                "/api/health": "Health check endpoint",
                "/api/sites/{site_id}/stats": "Totals, top pages and top referrers for a date range",
                "/api/sites/{site_id}/chart": "Page views and unique visitors per bucket",
                "/api/imports": "Submit an Umami SQL dump for import (POST)",
                "/api/imports/{job_id}": "Import job status and progress",
            },
        }

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint for monitoring."""
        db_exists = config.database == ":memory:" or Path(config.database).exists()
        scheduler_running = bool(app.state.scheduler is not None and app.state.scheduler.running)
        return {
            "status": "healthy" if db_exists else "degraded",
            "database_exists": db_exists,
            "scheduler_running": scheduler_running,
            "rollups": engine.status(),
        }

    def _site_or_404(site_id: int) -> None:
        if engine.sites.get(site_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown site {site_id}")

    @app.get("/api/sites/{site_id}/stats")
    def get_stats(
        site_id: int,
        response: Response,
        start: str = Query(..., description="First bucket (YYYY-MM-DD, or YYYY-MM for monthly)"),
        end: str = Query(..., description="Last bucket, inclusive"),
        period: str = Query("daily", description="hourly, daily or monthly"),
    ):
        _site_or_404(site_id)
        try:
            data = cached_site_stats(cache, conn, site_id, start, end, period, config)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        response.headers["Cache-Control"] = "private, max-age=60"
        return data

    @app.get("/api/sites/{site_id}/chart")
    def get_chart(
        site_id: int,
        start: str = Query(...),
        end: str = Query(...),
        period: str = Query("daily"),
    ):
        _site_or_404(site_id)
        try:
            return cached_chart_data(cache, conn, site_id, start, end, period, config)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.post("/api/imports", status_code=202)
    def submit_import(request: ImportRequest):
        """Queue an import of a dump already on the server's disk."""
        try:
            job_id = app.state.coordinator.submit(request.file_path, dry_run=request.dry_run)
        except FileProcessingError as e:
            raise HTTPException(status_code=400, detail=str(e))
        logger.info(f"Import job {job_id} submitted via API for {request.file_path}")
        return app.state.coordinator.status(job_id)

    @app.get("/api/imports/{job_id}")
    def get_import(job_id: int):
        try:
            return app.state.coordinator.status(job_id)
        except ImportJobError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/api/aggregate/{granularity}")
    def trigger_aggregation(granularity: str):
        """Run one sweep now (admin use)."""
        runners = {
            'hourly': engine.run_hourly,
            'daily': engine.run_daily,
            'monthly': engine.run_monthly,
        }
        if granularity not in runners:
            raise HTTPException(status_code=404, detail=f"Unknown granularity {granularity}")
        logger.info(f"Manual {granularity} sweep triggered via API")
        try:
            return runners[granularity]()
        except StatlakeError as e:
            raise HTTPException(status_code=500, detail=str(e))

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    port = int(os.getenv('PORT', '8001'))
    host = os.getenv('HOST', '0.0.0.0')

    logger.info(f"Starting server on {host}:{port}")
    uvicorn.run(create_app(), host=host, port=port, log_level="info")
