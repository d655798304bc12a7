"""Statlake core: analytics rollups and bulk Umami dump imports on DuckDB."""

from .aggregation import RollupEngine
from .buckets import BucketKey, Granularity
from .cache import StatsCache, get_cache
from .config import AnalyticsConfig, ImportStatus, load_config
from .database_utils import connect
from .importer import ImportCoordinator
from .jobs import InlineJobQueue, SchedulerJobQueue
from .scheduler import register_sweeps

__version__ = "0.1.0"

__all__ = [
    "RollupEngine",
    "BucketKey",
    "Granularity",
    "StatsCache",
    "get_cache",
    "AnalyticsConfig",
    "ImportStatus",
    "load_config",
    "connect",
    "ImportCoordinator",
    "InlineJobQueue",
    "SchedulerJobQueue",
    "register_sweeps",
]
