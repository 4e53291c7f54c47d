"""
Dump pipelines.

Supports:
- BasicDump: single-file dump streamed through gzip (.dump.gz / .sql.gz)
- ParallelDump: directory-format pg_dump with N workers, packed as .dir.tar.gz

The dump producer (pg_dump, mysqldump) is an external process. Passwords are
handed over through the environment, never on the command line.
"""

import logging
import os
import shutil
import subprocess
import threading
from datetime import datetime
from typing import List, Optional, Tuple, Union

from dbackup.models import BackupJob, BackupMode, BinarySettings, ConnectionConfig, DatabaseDriver
from .compression import (
    CompressionError,
    StreamCancelled,
    archive_directory,
    build_filename,
    format_timestamp,
    stream_to_gzip,
)

logger = logging.getLogger(__name__)

# Keep the tail of stderr, that is where pg_dump reports the actual failure
STDERR_EXCERPT_CHARS = 4000

PROCESS_POLL_INTERVAL = 0.5

DEFAULT_EXECUTABLES = {
    DatabaseDriver.POSTGRESQL: 'pg_dump',
    DatabaseDriver.MYSQL: 'mysqldump',
}

PASSWORD_ENV_VARS = {
    DatabaseDriver.POSTGRESQL: 'PGPASSWORD',
    DatabaseDriver.MYSQL: 'MYSQL_PWD',
}


class ProducerError(Exception):
    """Raised when the dump producer cannot deliver a dump."""
    pass


class ProducerSpawnFailed(ProducerError):
    pass


class ProducerExecutionFailed(ProducerError):
    """The producer ran but exited with a non-zero status."""

    def __init__(self, program: str, exit_status: int, stderr: str = ''):
        self.program = program
        self.exit_status = exit_status
        self.stderr = stderr
        message = f"{program} failed with exit status {exit_status}"
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class DumpCancelled(ProducerError):
    pass


class UnsupportedDumpMode(ProducerError):
    pass


class DumpPipeline:
    """
    Base class for dump modes.

    Subclasses implement run() and return the artifact path inside
    scratch_dir together with the filename it should be delivered as.
    """

    suffix = ''

    def __init__(self, driver: DatabaseDriver, executable: str, parallel_jobs: int = 2):
        self.driver = driver
        self.executable = executable
        self.parallel_jobs = parallel_jobs

    def run(
        self,
        connection: ConnectionConfig,
        scratch_dir: str,
        filename_prefix: str,
        timestamp: Union[datetime, str, None] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Tuple[str, str]:
        raise NotImplementedError

    def _connection_args(self, connection: ConnectionConfig) -> List[str]:
        if self.driver == DatabaseDriver.MYSQL:
            return [
                '--host', connection.host,
                '--port', str(connection.port),
                '--user', connection.username,
            ]

        return [
            '--host', connection.host,
            '--port', str(connection.port),
            '--username', connection.username,
            '--dbname', connection.database,
        ]

    def _environment(self, connection: ConnectionConfig) -> dict:
        env = os.environ.copy()
        if connection.password:
            env[PASSWORD_ENV_VARS[self.driver]] = connection.password
        return env

    def _spawn(self, args: List[str], env: dict, stdout, stderr) -> subprocess.Popen:
        logger.debug(f"Spawning dump producer: {' '.join(args)}")
        try:
            return subprocess.Popen(args, stdout=stdout, stderr=stderr, env=env)
        except OSError as e:
            raise ProducerSpawnFailed(f"Failed to spawn {self.executable}: {e}")

    def _wait(self, process: subprocess.Popen, cancel_event: Optional[threading.Event]) -> int:
        """Wait for the producer, terminating it if cancel_event gets set."""
        while True:
            try:
                return process.wait(timeout=PROCESS_POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    _terminate(process)

    def _watch(self, process: subprocess.Popen, cancel_event: Optional[threading.Event]):
        """
        Terminate the producer as soon as cancel_event is set.

        A blocked read on the producer's stdout only returns once the process
        exits, so cancellation has to come from another thread.
        """
        if cancel_event is None:
            return None

        def watcher():
            while process.poll() is None:
                if cancel_event.wait(PROCESS_POLL_INTERVAL):
                    _terminate(process)
                    return

        thread = threading.Thread(target=watcher, name=f'dump-watch-{process.pid}', daemon=True)
        thread.start()
        return thread

    def _check_exit(self, exit_status: int, stderr_path: str, cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise DumpCancelled(f"{self.executable} was cancelled")

        if exit_status != 0:
            stderr = _read_stderr(stderr_path)
            if stderr:
                logger.warning(f"{self.executable} stderr: {stderr}")
            raise ProducerExecutionFailed(self.executable, exit_status, stderr)


class BasicDump(DumpPipeline):
    """
    Single-file dump.

    pg_dump writes a custom-format archive (-Fc, maximum compression, no
    owner/ACL statements) to stdout; mysqldump writes plain SQL. Either way
    the stream goes through gzip into one file.
    """

    @property
    def suffix(self):
        return '.sql.gz' if self.driver == DatabaseDriver.MYSQL else '.dump.gz'

    def build_command(self, connection: ConnectionConfig) -> List[str]:
        args = [self.executable] + self._connection_args(connection)

        if self.driver == DatabaseDriver.MYSQL:
            args += ['--single-transaction', '--routines', '--triggers', connection.database]
        else:
            args += ['-Fc', '--compress=9', '--no-owner', '--no-acl', '--verbose']

        return args

    def run(self, connection, scratch_dir, filename_prefix, timestamp=None, cancel_event=None):
        if not isinstance(timestamp, str):
            timestamp = format_timestamp(timestamp)

        filename = build_filename(filename_prefix, timestamp, self.suffix)
        artifact_path = os.path.join(scratch_dir, filename)
        stderr_path = os.path.join(scratch_dir, 'producer.stderr')

        logger.info(f"Dumping {connection.database} (basic mode) to {artifact_path}")

        with open(stderr_path, 'wb') as stderr_file:
            process = self._spawn(
                self.build_command(connection),
                self._environment(connection),
                stdout=subprocess.PIPE,
                stderr=stderr_file
            )
            self._watch(process, cancel_event)

            try:
                size = stream_to_gzip(process.stdout, artifact_path, cancel_event)
            except (StreamCancelled, CompressionError) as e:
                _terminate(process)
                process.wait()
                if isinstance(e, StreamCancelled):
                    raise DumpCancelled(f"{self.executable} was cancelled")
                raise
            finally:
                process.stdout.close()

            exit_status = self._wait(process, cancel_event)

        try:
            self._check_exit(exit_status, stderr_path, cancel_event)
        except ProducerError:
            if os.path.exists(artifact_path):
                os.remove(artifact_path)
            raise

        logger.debug(f"Compressed {size} bytes from {self.executable}")
        return artifact_path, filename


class ParallelDump(DumpPipeline):
    """
    Directory-format pg_dump with parallel workers.

    The producer writes into a fresh subdirectory of scratch_dir, which is
    then packed into a single .dir.tar.gz and removed.
    """

    suffix = '.dir.tar.gz'

    def build_command(self, connection: ConnectionConfig, output_dir: str) -> List[str]:
        return [self.executable] + self._connection_args(connection) + [
            '-Fd',
            '-j', str(self.parallel_jobs),
            '-f', output_dir,
            '--no-owner',
            '--no-acl',
            '--verbose',
        ]

    def run(self, connection, scratch_dir, filename_prefix, timestamp=None, cancel_event=None):
        if not isinstance(timestamp, str):
            timestamp = format_timestamp(timestamp)

        basename = build_filename(filename_prefix, timestamp, '')
        dump_dir = os.path.join(scratch_dir, basename)
        filename = basename + self.suffix
        artifact_path = os.path.join(scratch_dir, filename)
        stderr_path = os.path.join(scratch_dir, 'producer.stderr')

        logger.info(
            f"Dumping {connection.database} (parallel mode, {self.parallel_jobs} jobs) to {dump_dir}"
        )

        try:
            with open(stderr_path, 'wb') as stderr_file:
                process = self._spawn(
                    self.build_command(connection, dump_dir),
                    self._environment(connection),
                    stdout=subprocess.DEVNULL,
                    stderr=stderr_file
                )
                exit_status = self._wait(process, cancel_event)

            self._check_exit(exit_status, stderr_path, cancel_event)

            logger.info(f"Archiving directory dump to {artifact_path}")
            archive_directory(dump_dir, artifact_path)

        finally:
            _remove_tree(dump_dir)

        return artifact_path, filename


def resolve_executable(job: BackupJob, binaries: Optional[BinarySettings] = None) -> str:
    """
    Pick the producer executable for a job.

    Order: the job's binary_path, the global settings.binary entry for its
    driver, then the bare tool name (looked up on PATH at spawn time).
    """
    if job.binary_path:
        return job.binary_path

    if binaries is not None:
        configured = binaries.mysqldump if job.driver == DatabaseDriver.MYSQL else binaries.pg_dump
        if configured:
            return configured

    return DEFAULT_EXECUTABLES[job.driver]


def create_pipeline(job: BackupJob, binaries: Optional[BinarySettings] = None) -> DumpPipeline:
    """
    Factory function to create the dump pipeline for a job's mode.

    Raises:
        UnsupportedDumpMode: If the mode is not available for the job's driver
    """
    executable = resolve_executable(job, binaries)

    if job.mode == BackupMode.BASIC:
        return BasicDump(job.driver, executable, job.parallel_jobs)

    if job.mode == BackupMode.PARALLEL:
        if job.driver != DatabaseDriver.POSTGRESQL:
            raise UnsupportedDumpMode(
                f"Parallel mode is only supported for postgresql (backup '{job.name}' uses {job.driver.value})"
            )
        return ParallelDump(job.driver, executable, job.parallel_jobs)

    raise UnsupportedDumpMode(f"Invalid backup mode: {job.mode}")


def _terminate(process: subprocess.Popen):
    if process.poll() is None:
        try:
            process.terminate()
        except ProcessLookupError:
            # Exited between poll() and terminate()
            return


def _read_stderr(path: str) -> str:
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError:
        return ''
    return data.decode('utf-8', errors='replace')[-STDERR_EXCERPT_CHARS:].strip()


def _remove_tree(path: str):
    if os.path.exists(path):
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning(f"Failed to remove intermediate dump directory {path}: {e}")
