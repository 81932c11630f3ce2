"""Remote sync engine: runs the resolved mapping set over one session.

A run walks ``connecting -> (listing -> transferring -> verifying)*`` and
ends in ``success``, ``partial_failure`` or ``error``:

* a failed connect ends the run in ``error`` before any file is touched;
* a failure of one file is recorded and the run moves on;
* a lost session ends the run in ``error`` and the remaining mappings are
  reported ``not_attempted``.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable

from ai_toolbox.adapters.base import RemoteTransport
from ai_toolbox.config import SSHConnection, SSHSyncConfig
from ai_toolbox.errors import (
    AlreadyRunningError,
    CancelledError,
    IoError,
    RemoteConnectionError,
    ValidationError,
)
from ai_toolbox.events import EventBus, SyncCompleted, SyncPhase, SyncProgress, SyncWarning
from ai_toolbox.fileio import atomic_write, file_lock
from ai_toolbox.mappings import Direction, ResolvedOperation, resolve, stat_local

logger = logging.getLogger("ai_toolbox.sync")

TransportFactory = Callable[[SSHConnection], RemoteTransport]
Observer = Callable[[object], None]


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    ERROR = "error"


# Reasons attached to skipped / not_attempted outcomes.
DISABLED = "disabled"
LOCAL_MISSING = "local_missing"
REMOTE_MISSING = "remote_missing"
BOTH_MISSING = "both_missing"
CANCELLED = "cancelled"
CONNECTION_FAILED = "connection_failed"
CONNECTION_LOST = "connection_lost"


@dataclass(frozen=True)
class MappingOutcome:
    mapping_id: str
    status: OutcomeStatus
    reason: str | None = None
    # "push" or "pull": what actually happened, for bidirectional mappings too.
    detail: str | None = None
    bytes_transferred: int = 0


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one run. Never changes after the run returns it."""

    run_id: str
    status: RunStatus
    outcomes: tuple[MappingOutcome, ...]
    warnings: tuple[SyncWarning, ...]
    error: str | None
    started_at: str
    finished_at: str

    @property
    def durable_status(self) -> str:
        """``success`` or ``error``; partial failures count as errors."""
        return "success" if self.status is RunStatus.SUCCESS else "error"

    def ids(self, status: OutcomeStatus) -> list[str]:
        return [o.mapping_id for o in self.outcomes if o.status is status]

    def outcome(self, mapping_id: str) -> MappingOutcome | None:
        for o in self.outcomes:
            if o.mapping_id == mapping_id:
                return o
        return None

    @property
    def succeeded(self) -> list[str]:
        return self.ids(OutcomeStatus.SUCCEEDED)

    @property
    def skipped(self) -> list[str]:
        return self.ids(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> list[str]:
        return self.ids(OutcomeStatus.FAILED)

    @property
    def not_attempted(self) -> list[str]:
        return self.ids(OutcomeStatus.NOT_ATTEMPTED)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Run:
    """Per-run bookkeeping: outcomes, warnings and event delivery."""

    def __init__(self, engine: SyncEngine, observer: Observer | None, cancel: threading.Event | None):
        self.id = uuid.uuid4().hex
        self.engine = engine
        self.observer = observer
        self.cancel = cancel
        self.started_at = _now()
        self.outcomes: dict[str, MappingOutcome] = {}
        self.warnings: list[SyncWarning] = []
        self.error: str | None = None

    def emit(self, event: object) -> None:
        if isinstance(event, SyncProgress):
            self.engine._progress = event
        if self.observer is not None:
            self.observer(event)
        if self.engine.bus is not None:
            self.engine.bus.publish(event)

    def progress(self, phase: SyncPhase, mapping_id: str | None = None, done: int = 0, total: int | None = None) -> None:
        self.emit(SyncProgress(self.id, phase, mapping_id, done, total))

    def warn(self, mapping_id: str, message: str) -> None:
        warning = SyncWarning(self.id, mapping_id, message)
        self.warnings.append(warning)
        logger.warning("%s: %s", mapping_id, message)
        self.emit(warning)

    def record(self, mapping_id: str, status: OutcomeStatus, reason: str | None = None, **kwargs) -> None:
        self.outcomes[mapping_id] = MappingOutcome(mapping_id, status, reason, **kwargs)

    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def check_cancel(self) -> None:
        if self.cancelled():
            raise CancelledError("Sync cancelled")


class SyncEngine:
    """Executes sync runs, one at a time per remote target."""

    def __init__(self, transport_factory: TransportFactory, bus: EventBus | None = None):
        self.transport_factory = transport_factory
        self.bus = bus
        self.last_result: SyncResult | None = None
        self._progress: SyncProgress | None = None
        self._locks_guard = threading.Lock()
        self._run_locks: dict[str, threading.Lock] = {}

    @property
    def status(self) -> str:
        """``idle`` before the first run, then the last run's durable status."""
        if self.last_result is None:
            return "idle"
        return self.last_result.durable_status

    @property
    def progress(self) -> SyncProgress | None:
        """The latest progress of the run in flight; None between runs."""
        return self._progress

    def _run_lock(self, connection: SSHConnection) -> threading.Lock:
        key = f"{connection.target}:{connection.port}"
        with self._locks_guard:
            lock = self._run_locks.get(key)
            if lock is None:
                lock = self._run_locks[key] = threading.Lock()
            return lock

    def sync(
        self,
        config: SSHSyncConfig,
        module_filter: str | None = None,
        observer: Observer | None = None,
        cancel: threading.Event | None = None,
        home: Path | None = None,
        environ: dict[str, str] | None = None,
    ) -> SyncResult:
        """Run every enabled mapping (of ``module_filter`` when given).

        Raises ValidationError for an unusable config and
        AlreadyRunningError while another run targets the same host.
        Everything that goes wrong once the run started is in the result.
        """
        connection = config.active_connection()
        if connection is None:
            raise ValidationError("No active SSH connection configured")

        lock = self._run_lock(connection)
        if not lock.acquire(blocking=False):
            raise AlreadyRunningError(f"A sync to {connection.target} is already running")
        try:
            run = _Run(self, observer, cancel)
            result = self._run(run, config, connection, module_filter, home, environ)
            self.last_result = result
        finally:
            self._progress = None
            lock.release()

        logger.info(
            "Sync %s finished: %s (%d succeeded, %d skipped, %d failed)",
            result.run_id,
            result.status.value,
            len(result.succeeded),
            len(result.skipped),
            len(result.failed),
        )
        run.emit(SyncCompleted(result.run_id, result))
        return result

    def _run(
        self,
        run: _Run,
        config: SSHSyncConfig,
        connection: SSHConnection,
        module_filter: str | None,
        home: Path | None,
        environ: dict[str, str] | None,
    ) -> SyncResult:
        order = [m.id for m in config.file_mappings if module_filter is None or m.module == module_filter]
        resolution = resolve(config.file_mappings, module_filter, config.allowed_roots, home, environ)
        for mapping in resolution.disabled:
            run.record(mapping.id, OutcomeStatus.SKIPPED, DISABLED)
        operations = resolution.operations

        run.progress(SyncPhase.CONNECTING)
        transport = self.transport_factory(connection)
        try:
            transport.connect()
        except RemoteConnectionError as e:
            logger.error("Cannot connect to %s: %s", connection.target, e)
            run.error = str(e)
            for op in operations:
                run.record(op.mapping_id, OutcomeStatus.NOT_ATTEMPTED, CONNECTION_FAILED)
            return self._finish(run, order)

        try:
            for index, op in enumerate(operations):
                if run.cancelled():
                    run.error = "Sync cancelled"
                    self._abandon(run, operations[index:], CANCELLED)
                    break
                try:
                    self._sync_one(run, transport, op)
                except CancelledError:
                    run.error = "Sync cancelled"
                    run.record(op.mapping_id, OutcomeStatus.FAILED, CANCELLED)
                    self._abandon(run, operations[index + 1 :], CANCELLED)
                    break
                except RemoteConnectionError as e:
                    logger.error("Lost connection during %s: %s", op.mapping_id, e)
                    run.error = str(e)
                    run.record(op.mapping_id, OutcomeStatus.FAILED, CONNECTION_LOST)
                    self._abandon(run, operations[index + 1 :], CONNECTION_LOST)
                    break
                except IoError as e:
                    logger.warning("Mapping %s failed: %s", op.mapping_id, e)
                    run.record(op.mapping_id, OutcomeStatus.FAILED, str(e))
        finally:
            transport.close()

        return self._finish(run, order)

    @staticmethod
    def _abandon(run: _Run, operations: list[ResolvedOperation], reason: str) -> None:
        for op in operations:
            run.record(op.mapping_id, OutcomeStatus.NOT_ATTEMPTED, reason)

    @staticmethod
    def _finish(run: _Run, order: list[str]) -> SyncResult:
        outcomes = tuple(run.outcomes[i] for i in order if i in run.outcomes)
        if run.error is not None:
            status = RunStatus.ERROR
        elif any(o.status is OutcomeStatus.FAILED for o in outcomes):
            status = RunStatus.PARTIAL_FAILURE
        else:
            status = RunStatus.SUCCESS
        return SyncResult(
            run_id=run.id,
            status=status,
            outcomes=outcomes,
            warnings=tuple(run.warnings),
            error=run.error,
            started_at=run.started_at,
            finished_at=_now(),
        )

    # -- one mapping ---------------------------------------------------

    def _sync_one(self, run: _Run, transport: RemoteTransport, op: ResolvedOperation) -> None:
        run.progress(SyncPhase.LISTING, op.mapping_id)
        local = stat_local(op.local_path)

        if op.direction is Direction.PUSH:
            if local is None:
                run.record(op.mapping_id, OutcomeStatus.SKIPPED, LOCAL_MISSING)
                return
            action = "push"
        elif op.direction is Direction.PULL:
            remote = transport.stat(op.remote_path)
            if remote is None:
                run.record(op.mapping_id, OutcomeStatus.SKIPPED, REMOTE_MISSING)
                return
            action = "pull"
        else:
            remote = transport.stat(op.remote_path)
            if local is None and remote is None:
                run.record(op.mapping_id, OutcomeStatus.SKIPPED, BOTH_MISSING)
                return
            if remote is None:
                action = "push"
            elif local is None:
                action = "pull"
            elif int(local.mtime) == int(remote.mtime):
                run.warn(op.mapping_id, "files had identical timestamps; kept the local copy")
                action = "push"
            else:
                action = "push" if local.mtime > remote.mtime else "pull"

        if action == "push":
            size = self._push(run, transport, op)
        else:
            size = self._pull(run, transport, op)
        run.record(op.mapping_id, OutcomeStatus.SUCCEEDED, detail=action, bytes_transferred=size)
        logger.debug("%s: %s %d bytes", op.mapping_id, action, size)

    def _reporter(self, run: _Run, mapping_id: str, sent: list[int]) -> Callable[[int, int], None]:
        def report(done: int, total: int) -> None:
            sent.append(done)
            run.progress(SyncPhase.TRANSFERRING, mapping_id, done, total)
            run.check_cancel()

        return report

    def _push(self, run: _Run, transport: RemoteTransport, op: ResolvedOperation) -> int:
        with file_lock(op.local_path):
            try:
                data = op.local_path.read_bytes()
                mtime = op.local_path.stat().st_mtime
            except OSError as e:
                raise IoError(f"Cannot read local file: {e.strerror or e}", str(op.local_path)) from e

        sent: list[int] = []
        transport.write_file(op.remote_path, data, mtime=mtime, progress=self._reporter(run, op.mapping_id, sent))
        if not sent:
            run.progress(SyncPhase.TRANSFERRING, op.mapping_id, len(data), len(data))

        run.progress(SyncPhase.VERIFYING, op.mapping_id)
        remote = transport.stat(op.remote_path)
        if remote is None or remote.size != len(data):
            got = "missing" if remote is None else f"{remote.size} bytes"
            raise IoError(f"Verification failed: expected {len(data)} bytes, remote has {got}", op.remote_path)
        return len(data)

    def _pull(self, run: _Run, transport: RemoteTransport, op: ResolvedOperation) -> int:
        remote = transport.stat(op.remote_path)
        if remote is None:
            raise IoError("Remote file disappeared", op.remote_path)

        sent: list[int] = []
        data = transport.read_file(op.remote_path, progress=self._reporter(run, op.mapping_id, sent))
        if not sent:
            run.progress(SyncPhase.TRANSFERRING, op.mapping_id, len(data), len(data))
        run.check_cancel()

        with file_lock(op.local_path):
            atomic_write(op.local_path, data, mtime=remote.mtime)

        run.progress(SyncPhase.VERIFYING, op.mapping_id)
        local = stat_local(op.local_path)
        if local is None or local.size != len(data):
            raise IoError("Verification failed: local size does not match", str(op.local_path))
        return len(data)
