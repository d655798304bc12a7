"""Tests for the job queues and the sweep scheduler registration."""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from statlake_core.config import JobConfig
from statlake_core.jobs import InlineJobQueue, RetryPolicy, SchedulerJobQueue
from statlake_core.scheduler import SWEEPS, _guarded, register_sweeps


class Flaky:
    """Callable failing a set number of times before succeeding."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f'failure {self.calls}')
        return args, kwargs


class TestRetryPolicy:
    """Backoff schedule."""

    def test_delays(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3, 5)] == [60.0, 300.0, 600.0, 600.0]

    def test_no_backoff(self):
        assert RetryPolicy(backoff=()).delay_for(1) == 0.0

    def test_from_config(self):
        policy = RetryPolicy.from_config(JobConfig(tries=5, backoff=[1, 2]), timeout=30)
        assert (policy.tries, tuple(policy.backoff), policy.timeout) == (5, (1, 2), 30)


class TestInlineJobQueue:
    """Synchronous execution used by the CLI and tests."""

    def test_retries_until_success(self):
        queue = InlineJobQueue()
        func = Flaky(failures=2)
        failures = []
        queue.enqueue('task', func, 1, key='v', on_failure=failures.append)
        assert func.calls == 3
        assert failures == []
        assert queue.delays == [('task', 0), ('task', 60.0), ('task', 300.0)]

    def test_permanent_failure_calls_handler_once(self):
        queue = InlineJobQueue()
        failures = []
        queue.enqueue('task', Flaky(failures=10), retry=RetryPolicy(tries=2, backoff=(1,)),
                      on_failure=failures.append)
        assert len(failures) == 1
        assert str(failures[0]) == 'failure 2'

    def test_deferred_tasks_run_in_chosen_order(self):
        queue = InlineJobQueue(defer=True)
        seen = []
        for name in ('a', 'b', 'c'):
            queue.enqueue(name, seen.append, name)
        assert seen == []
        assert queue.run_pending(order=lambda tasks: list(reversed(tasks))) == 3
        assert seen == ['c', 'b', 'a']

    def test_tasks_enqueued_while_running_are_deferred(self):
        queue = InlineJobQueue(defer=True)
        seen = []

        def parent():
            seen.append('parent')
            queue.enqueue('child', seen.append, 'child')

        queue.enqueue('parent', parent)
        assert queue.run_pending() == 2
        assert seen == ['parent', 'child']


class TestSchedulerJobQueue:
    """APScheduler-backed queue."""

    def test_enqueue_adds_one_shot_job(self):
        scheduler = BackgroundScheduler(timezone='UTC')
        queue = SchedulerJobQueue(scheduler)
        queue.enqueue('import:1', print, delay=5)
        jobs = scheduler.get_jobs()
        assert len(jobs) == 1
        assert isinstance(jobs[0].trigger, DateTrigger)
        assert jobs[0].id.startswith('import:1:1:')

    def test_owned_scheduler_lifecycle(self):
        queue = SchedulerJobQueue(max_workers=2)
        queue.start()
        try:
            assert queue.scheduler.running
        finally:
            queue.shutdown(wait=False)
        assert not queue.scheduler.running


class TestSweepScheduling:
    """Cron registration of the rollup sweeps."""

    def test_register_sweeps(self, engine):
        scheduler = BackgroundScheduler(timezone='UTC')
        register_sweeps(scheduler, engine)
        jobs = {job.id: job for job in scheduler.get_jobs()}
        assert set(jobs) == set(SWEEPS)
        for job in jobs.values():
            assert isinstance(job.trigger, CronTrigger)
            assert job.max_instances == 1
            assert job.coalesce is True

    def test_register_twice_replaces(self, engine):
        scheduler = BackgroundScheduler(timezone='UTC')
        scheduler.start(paused=True)
        try:
            register_sweeps(scheduler, engine)
            register_sweeps(scheduler, engine)
            assert len(scheduler.get_jobs()) == len(SWEEPS)
        finally:
            scheduler.shutdown(wait=False)

    def test_guarded_swallows_errors(self):
        def boom():
            raise RuntimeError('boom')

        runner = _guarded('analytics_hourly', boom)
        runner()
        assert runner.__name__ == 'analytics_hourly'
