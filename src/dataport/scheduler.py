"""Sync scheduler: owns the ``idle → syncing → {idle, error}`` state machine.

Entry into ``syncing`` is a compare-and-set on the persisted
:class:`~dataport.models.SyncState`, taken under the dataset's file lock, so
at most one resync per dataset runs at a time across every thread and every
process sharing the workspace.  A claim records its owner (``host:pid``) and
a lease; a ``syncing`` state whose owner has died or whose lease has run out
is stale and may be recovered or taken over.
"""

from __future__ import annotations

import os
import socket
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable

from dataport.errors import (
    AlreadySyncingError,
    AuthExpiredError,
    DatasetNotFoundError,
    DataportError,
    SourceFormatError,
    SourceUnavailableError,
    ValidationError,
)
from dataport.logging.events import (
    SYNC_AUTH_EXPIRED,
    SYNC_INTERRUPTED,
    SYNC_SOURCE_FORMAT,
    SYNC_SOURCE_UNAVAILABLE,
    EventLevel,
    EventType,
    emit,
    make_dataset_event,
    make_sync_event,
)
from dataport.models import Dataset, SourceKind, SyncState, SyncStatus
from dataport.registry import DatasetRegistry

INTERRUPTED_REASON = "sync interrupted"

_HOST = socket.gethostname()


def process_owner() -> str:
    """Owner tag recorded with a ``syncing`` claim by this process."""
    return f"{_HOST}:{os.getpid()}"


def _pid_running(pid: int) -> bool:
    if pid <= 0:
        return False
    if pid == os.getpid():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


def holder_alive(state: SyncState, now: datetime) -> bool:
    """Whether the process that claimed *state* may still be running it.

    An expired lease is always stale.  On this host the owner pid is checked
    directly; a claim from another host is trusted until its lease runs out.
    Claims without an owner predate ownership tracking and are stale.
    """
    if state.lease_expires_at is not None and state.lease_expires_at <= now:
        return False
    host, _, pid = (state.owner or "").rpartition(":")
    if not host or not pid.isdigit():
        return False
    if host != _HOST:
        return state.lease_expires_at is not None
    return _pid_running(int(pid))


def _error_code(exc: Exception) -> str:
    if isinstance(exc, AuthExpiredError):
        return SYNC_AUTH_EXPIRED
    if isinstance(exc, SourceUnavailableError):
        return SYNC_SOURCE_UNAVAILABLE
    if isinstance(exc, SourceFormatError):
        return SYNC_SOURCE_FORMAT
    return getattr(exc, "code", "sync_error")


class SyncScheduler:
    """Runs resyncs for live datasets, on demand or periodically."""

    def __init__(
        self,
        registry: DatasetRegistry,
        *,
        interval_seconds: float | None = None,
        lease_seconds: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            registry: Registry whose datasets are synced.
            interval_seconds: Age after which a live dataset is due; defaults
                to the workspace ``sync_interval_seconds``.
            lease_seconds: How long a claim stays valid without its owner
                finishing; defaults to the workspace ``sync_lease_seconds``.
            clock: Returns the current time; defaults to the registry clock.
        """
        self.registry = registry
        config = registry.config
        self.interval_seconds = float(
            interval_seconds if interval_seconds is not None else config["sync_interval_seconds"]
        )
        self.lease_seconds = float(
            lease_seconds if lease_seconds is not None else config.get("sync_lease_seconds", 600)
        )
        self.clock = clock or registry.clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _holder_alive(self, state: SyncState) -> bool:
        return holder_alive(state, self.clock())

    def is_syncing(self, dataset_id: str) -> bool:
        """Whether a live sync currently holds *dataset_id*."""
        state = self.registry.get_dataset(dataset_id).sync
        return state.status == SyncStatus.syncing and self._holder_alive(state)

    # ------------------------------------------------------------------
    # On-demand sync
    # ------------------------------------------------------------------

    def resync_dataset(self, dataset_id: str) -> Dataset:
        """Re-fetch one live dataset under the sync state machine.

        On success the dataset returns to ``idle`` with ``last_synced_at``
        set.  On failure it moves to ``error`` with the failure reason while
        its previous rows and schema stay readable, and the error is
        re-raised.

        Raises:
            AlreadySyncingError: Another sync of this dataset is running.
            DatasetNotFoundError: Unknown id, or deleted mid-sync.
            ValidationError: The dataset is a static upload, or the source
                returned no rows.
            SourceUnavailableError: Network, timeout or auth failure.
            SourceFormatError: Unparseable source content.
        """
        record = self.registry.get_dataset(dataset_id)
        if record.source.kind != SourceKind.live_sheet:
            raise ValidationError(
                f"Dataset {dataset_id!r} is a static upload and cannot be re-synced"
            )

        sync_id = uuid.uuid4().hex
        now = self.clock()
        claim = SyncState(
            status=SyncStatus.syncing,
            updated_at=now,
            sync_id=sync_id,
            owner=process_owner(),
            lease_expires_at=now + timedelta(seconds=self.lease_seconds),
        )
        try:
            self.registry.claim_sync(dataset_id, claim, holder_alive=self._holder_alive)
        except AlreadySyncingError:
            emit(make_dataset_event(
                EventType.sync_rejected, EventLevel.warning,
                "Sync already in progress",
                dataset_id=dataset_id, org_id=record.org_id,
                error_code=AlreadySyncingError.code,
            ))
            raise

        emit(make_sync_event(
            EventType.sync_started, EventLevel.info,
            f"Sync started for dataset {record.name!r}",
            dataset_id=dataset_id, sync_id=sync_id,
        ))
        try:
            self.registry.resync_dataset(dataset_id, sync_id=sync_id)
        except Exception as exc:
            self._fail(dataset_id, sync_id, exc)
            raise
        now = self.clock()
        committed = self.registry.finish_sync(
            dataset_id,
            sync_id,
            SyncState(status=SyncStatus.idle, updated_at=now, sync_id=sync_id),
            synced_at=now,
        ) or self.registry.get_dataset(dataset_id)
        emit(make_sync_event(
            EventType.sync_completed, EventLevel.info,
            f"Sync completed with {committed.row_count} rows",
            dataset_id=dataset_id, sync_id=sync_id,
            extra={"row_count": committed.row_count, "schema_id": committed.schema_id},
        ))
        return committed

    def _fail(self, dataset_id: str, sync_id: str, exc: Exception) -> None:
        reason = str(exc)
        emit(make_sync_event(
            EventType.sync_failed, EventLevel.error, reason,
            dataset_id=dataset_id, sync_id=sync_id, error_code=_error_code(exc),
        ))
        if isinstance(exc, DatasetNotFoundError):
            return
        try:
            self.registry.finish_sync(
                dataset_id,
                sync_id,
                SyncState(
                    status=SyncStatus.error, reason=reason,
                    updated_at=self.clock(), sync_id=sync_id,
                ),
            )
        except DatasetNotFoundError:
            pass

    # ------------------------------------------------------------------
    # Periodic sync
    # ------------------------------------------------------------------

    def due_datasets(self) -> list[Dataset]:
        """Live datasets whose last sync is older than the interval."""
        cutoff = self.clock() - timedelta(seconds=self.interval_seconds)
        return [
            d
            for d in self.registry.list_datasets()
            if d.source.kind == SourceKind.live_sheet
            and (d.last_synced_at is None or d.last_synced_at <= cutoff)
        ]

    def run_due(self) -> dict[str, str]:
        """Sync every due dataset once.

        Failures are recorded on the dataset and in the event log; they do
        not stop the remaining syncs.

        Returns:
            Mapping of dataset id to ``"idle"``, ``"error"`` or ``"skipped"``.
        """
        outcome: dict[str, str] = {}
        for record in self.due_datasets():
            try:
                self.resync_dataset(record.id)
            except AlreadySyncingError:
                outcome[record.id] = "skipped"
            except DataportError:
                outcome[record.id] = SyncStatus.error.value
            else:
                outcome[record.id] = SyncStatus.idle.value
        return outcome

    def start(self, poll_seconds: float = 60.0) -> None:
        """Run :meth:`run_due` every *poll_seconds* on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(poll_seconds,), name="dataport-sync", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self, poll_seconds: float) -> None:
        while not self._stop.is_set():
            self.run_due()
            self._stop.wait(poll_seconds)

    # ------------------------------------------------------------------
    # Startup recovery
    # ------------------------------------------------------------------

    def recover_interrupted(self) -> list[str]:
        """Move datasets whose ``syncing`` claim is stale to ``error``.

        A claim is stale when its owning process is gone or its lease has
        expired; syncs still running in this or another live process are
        left alone.

        Returns:
            Ids of the recovered datasets.
        """
        recovered: list[str] = []
        for record in self.registry.list_datasets():
            state = record.sync
            if state.status != SyncStatus.syncing or self._holder_alive(state):
                continue
            try:
                after = self.registry.finish_sync(
                    record.id,
                    state.sync_id,
                    SyncState(
                        status=SyncStatus.error,
                        reason=INTERRUPTED_REASON,
                        updated_at=self.clock(),
                        sync_id=state.sync_id,
                    ),
                )
            except DatasetNotFoundError:
                continue
            if after is None:
                # Re-claimed or finished meanwhile
                continue
            emit(make_sync_event(
                EventType.sync_failed, EventLevel.warning,
                "Sync interrupted by a previous shutdown",
                dataset_id=record.id, sync_id=state.sync_id or uuid.uuid4().hex,
                error_code=SYNC_INTERRUPTED,
                extra={"owner": state.owner},
            ))
            recovered.append(record.id)
        return recovered
