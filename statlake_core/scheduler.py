"""Cron registration of the rollup sweeps.

Each granularity is its own job with ``max_instances=1`` and ``coalesce=True``,
so at most one run per granularity is ever in flight.
"""
from __future__ import annotations
import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .aggregation import RollupEngine

logger = logging.getLogger(__name__)

SWEEPS = {
    'analytics_hourly': dict(minute=0),
    'analytics_daily': dict(hour=2, minute=0),
    'analytics_monthly': dict(day=1, hour=3, minute=0),
}


def _guarded(name: str, func):
    def run():
        try:
            func()
        except Exception as e:
            # keep the scheduler alive; the next tick retries
            logger.error(f"Scheduled {name} failed: {e}", exc_info=True)
    run.__name__ = name
    return run


def register_sweeps(scheduler: BackgroundScheduler, engine: RollupEngine) -> None:
    runners = {
        'analytics_hourly': engine.run_hourly,
        'analytics_daily': engine.run_daily,
        'analytics_monthly': engine.run_monthly,
    }
    for job_id, trigger_args in SWEEPS.items():
        scheduler.add_job(
            _guarded(job_id, runners[job_id]),
            'cron',
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **trigger_args,
        )
        logger.info(f"Scheduled {job_id} ({trigger_args})")
