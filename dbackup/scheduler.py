"""
Cron scheduling of backup jobs.

Manages:
- One timing loop per scheduled backup job
- A global limit on concurrently running backups
- An optional retention loop on its own cron schedule

Each loop runs in its own worker thread and only ever touches its own cron
cursor. The semaphore is the only state shared between loops.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger

from dbackup.backup.executor import BackupExecutor
from dbackup.backup.retention import RetentionManager, enforce_retention_policies
from dbackup.history import HistoryStore
from dbackup.models import BackupConfig, BackupJob, ConfigError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 2

# Crontab day-of-week numbering, 0 and 7 are both Sunday
_WEEKDAY_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


class CronError(Exception):
    """Raised when a schedule expression is invalid or has no future fire time."""
    pass


def parse_schedule(expression: str, timezone=None) -> CronTrigger:
    """
    Parse a cron expression into an APScheduler trigger.

    Accepted forms:
    - 5 fields: minute hour day month day_of_week (standard crontab)
    - 6 fields: second minute hour day month day_of_week
    - 7 fields: second minute hour day month day_of_week year

    Day-of-week values always use crontab numbering (0 or 7 is Sunday, 1 is
    Monday) or names. "?" is accepted as "*" in every form.

    Args:
        expression: Cron expression
        timezone: Timezone name or tzinfo (default: local timezone)

    Raises:
        CronError: If the expression cannot be parsed
    """
    fields = (expression or '').split()

    if len(fields) not in (5, 6, 7):
        raise CronError(
            f"Invalid cron expression '{expression}': expected 5, 6 or 7 fields, got {len(fields)}"
        )

    # Quartz-style "no specific value"
    fields = ['*' if value == '?' else value for value in fields]
    if len(fields) == 5:
        fields = ['0'] + fields

    second, minute, hour, day, month, day_of_week = fields[:6]
    year = fields[6] if len(fields) == 7 else None

    try:
        return CronTrigger(
            year=year,
            month=month,
            day=day,
            day_of_week=_crontab_weekdays(day_of_week),
            hour=hour,
            minute=minute,
            second=second,
            timezone=timezone
        )
    except (ValueError, TypeError) as e:
        raise CronError(f"Invalid cron expression '{expression}': {e}")


def _crontab_weekdays(field: str) -> str:
    """
    Translate a crontab day-of-week field into APScheduler day names.

    Crontab counts 0 (and 7) as Sunday, APScheduler counts 0 as Monday, so
    every numeric value, range and step is expanded into explicit names.

    Raises:
        CronError: If a value is out of range or not understood
    """
    if field == '*':
        return field

    names = []
    for item in field.lower().split(','):
        base, _, step_text = item.partition('/')

        try:
            step = int(step_text) if step_text else 1
        except ValueError:
            raise CronError(f"Invalid day-of-week step '{step_text}'")
        if step < 1:
            raise CronError(f"Invalid day-of-week step '{step_text}'")

        if base == '*':
            first, last = 0, 6
        elif '-' in base:
            start, _, end = base.partition('-')
            first, last = _crontab_weekday(start), _crontab_weekday(end)
            if last == 0:
                last = 7  # "5-0" style ranges end on Sunday
            if first > last:
                raise CronError(f"Invalid day-of-week range '{base}'")
        else:
            first = _crontab_weekday(base)
            # "n/step" runs from n to the end of the week
            last = 6 if step_text else first

        for value in range(first, last + 1, step):
            name = _WEEKDAY_NAMES[value % 7]
            if name not in names:
                names.append(name)

    return ','.join(names)


def _crontab_weekday(token: str) -> int:
    if token in _WEEKDAY_NAMES:
        return _WEEKDAY_NAMES.index(token)
    if token.isdigit() and int(token) <= 7:
        return int(token)
    raise CronError(f"Invalid day-of-week value '{token}'")


def next_fire_time(trigger: CronTrigger, after: datetime) -> Optional[datetime]:
    """Return the first fire time strictly after ``after`` (None if exhausted)."""
    return trigger.get_next_fire_time(None, after + timedelta(microseconds=1))


class BackupScheduler:
    """
    Runs every scheduled backup job on its cron schedule.

    A job's runs are strictly sequential. Across all jobs at most
    ``max_concurrent`` runs are in progress; a loop whose fire time has come
    waits for a free permit for as long as it takes.
    """

    def __init__(
        self,
        config: BackupConfig,
        max_concurrent: Optional[int] = None,
        temp_dir: Optional[str] = None,
        history: Optional[HistoryStore] = None,
        timezone=None,
        runner: Optional[Callable[[BackupJob], str]] = None
    ):
        """
        Initialize the scheduler.

        Args:
            config: Loaded configuration (read-only)
            max_concurrent: Permit pool size (default: settings.max_concurrent, then 2)
            temp_dir: Parent directory for scratch directories
            history: Optional run history store
            timezone: Timezone for cron evaluation (default: local timezone)
            runner: Callable executing one job and returning its location
                (default: BackupExecutor)
        """
        self.config = config
        self.max_concurrent = max_concurrent or config.settings.max_concurrent or DEFAULT_MAX_CONCURRENT
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.temp_dir = temp_dir
        self.history = history
        self.timezone = timezone
        self.semaphore = threading.BoundedSemaphore(self.max_concurrent)

        self._runner = runner or self._execute
        self._stop_event = threading.Event()
        self._pool = None
        self._loops: List[Tuple[str, object]] = []

    @property
    def running(self) -> bool:
        return self._pool is not None and not self._stop_event.is_set()

    def start(self) -> int:
        """
        Spawn one loop per scheduled job (plus the retention loop if configured).

        Returns:
            Number of loops started
        """
        if self._pool is not None:
            raise RuntimeError("Scheduler already started")

        jobs = self.config.scheduled_backups()
        retention_schedule = self.config.settings.retention.schedule

        if not jobs and not retention_schedule:
            logger.warning("No scheduled backups found in configuration")
            return 0

        logger.info(f"Starting backup scheduler with {self.max_concurrent} concurrent slots")
        logger.info(f"Found {len(jobs)} scheduled backup(s)")

        loop_count = len(jobs) + (1 if retention_schedule else 0)
        self._pool = ThreadPoolExecutor(max_workers=loop_count, thread_name_prefix='dbackup')

        for job in jobs:
            logger.info(f"  - '{job.name}' scheduled for: {job.schedule}")
            self._loops.append((job.name, self._pool.submit(self._job_loop, job)))

        if retention_schedule:
            logger.info(f"  - retention scheduled for: {retention_schedule}")
            self._loops.append(('retention', self._pool.submit(self._retention_loop, retention_schedule)))

        return loop_count

    def run(self):
        """Start all loops and block until they have all finished (see stop())."""
        if self.start():
            self.wait()

    def wait(self):
        """Join all loops, reporting the ones that ended with an error."""
        futures = {future: name for name, future in self._loops}

        for future in as_completed(futures):
            name = futures[future]
            try:
                future.result()
            except CronError as e:
                logger.error(f"Schedule for '{name}' disabled: {e}")
            except Exception:
                logger.exception(f"Scheduler loop for '{name}' crashed")

        if self._pool is not None:
            self._pool.shutdown(wait=True)

    def stop(self, wait: bool = True):
        """
        Stop all loops.

        Sleeping loops wake up immediately, in-flight dumps are cancelled
        (their producer processes get terminated) and loops blocked on a
        permit exit as soon as they obtain it.
        """
        logger.info("Stopping backup scheduler")
        self._stop_event.set()

        if wait and self._pool is not None:
            self._pool.shutdown(wait=True)

    def _fire_times(self, trigger: CronTrigger, label: str) -> Iterator[datetime]:
        """Yield each fire time once it is reached, until the scheduler stops."""
        previous = None

        while not self._stop_event.is_set():
            now = datetime.now(trigger.timezone)
            after = now if previous is None or now > previous else previous

            next_run = next_fire_time(trigger, after)
            if next_run is None:
                raise CronError(f"Could not calculate next run time for '{label}'")

            delay = max((next_run - now).total_seconds(), 0)
            logger.info(f"Next run for '{label}': {next_run:%Y-%m-%d %H:%M:%S} (in {delay:.0f}s)")

            if self._stop_event.wait(delay):
                return

            previous = next_run
            yield next_run

    def _job_loop(self, job: BackupJob):
        trigger = parse_schedule(job.schedule, self.timezone)
        logger.info(f"Scheduled backup '{job.name}' initialized with cron: {job.schedule}")

        for _ in self._fire_times(trigger, job.name):
            self.semaphore.acquire()
            try:
                if self._stop_event.is_set():
                    break
                self._run_scheduled(job)
            finally:
                self.semaphore.release()

        logger.info(f"Scheduled backup '{job.name}' stopped")

    def _run_scheduled(self, job: BackupJob):
        try:
            job.connection.validate()
        except ConfigError as e:
            logger.error(f"Connection validation failed for '{job.name}': {e}")
            return

        logger.info(f"Starting scheduled backup: {job.name}")

        try:
            location = self._runner(job)
        except Exception as e:
            logger.error(f"Scheduled backup '{job.name}' failed: {e}")
            return

        logger.info(f"Scheduled backup '{job.name}' completed: {location}")

    def _execute(self, job: BackupJob) -> str:
        """Default runner: execute the job, then apply retention if configured to."""
        executor = BackupExecutor(
            job,
            self.config.storages,
            binaries=self.config.settings.binary,
            temp_dir=self.temp_dir,
            history=self.history,
            cancel_event=self._stop_event
        )
        location = executor.execute()

        if self.config.settings.retention.after_backup and job.retention:
            try:
                RetentionManager(self.config).enforce_job_policy(job, storage=executor.storage)
            except Exception as e:
                logger.error(f"Retention after backup '{job.name}' failed: {e}")

        return location

    def _retention_loop(self, schedule: str):
        trigger = parse_schedule(schedule, self.timezone)

        for _ in self._fire_times(trigger, 'retention'):
            try:
                enforce_retention_policies(self.config)
            except Exception:
                logger.exception("Retention pass failed")
