"""
Sync drainer: moves queued submissions into the authoritative store.

One drainer per device. Entries are processed strictly one after another; a
cancellation request is honoured between entries, never in the middle of one.
Replays are safe because the submission store is idempotent per local_id,
and a submission is stamped processed only after the post-commit engines run.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional

from .media import MediaMaterializer
from .offline_queue import OfflineQueue
from .schema import SYNC_FAILED, SYNC_SYNCING, FieldResponse, PendingSubmission, Submission
from .stores import SubmissionStore
from ..util.logging import logger

SKIP_ALREADY_RUNNING = "already_running"
SKIP_OFFLINE = "offline"


class NetworkStatus(ABC):
    """Source of truth for connectivity."""

    @abstractmethod
    def is_online(self) -> bool:
        pass


class StaticNetworkStatus(NetworkStatus):

    def __init__(self, online: bool = True):
        self.online = online

    def is_online(self) -> bool:
        return self.online


class ConnectivityBus(NetworkStatus):
    """Publish/subscribe channel for connectivity changes.

    Remembers the last published state so it can also serve as the drainer's
    network source.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._subscribers: List[Callable[[bool], None]] = []
        self._lock = threading.Lock()

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, online: bool):
        self._online = online
        with self._lock:
            subscribers = list(self._subscribers)

        logger.log_operation("connectivity.change", "online" if online else "offline")
        for callback in subscribers:
            try:
                callback(online)
            except Exception as e:
                logger.error(f"Connectivity subscriber failed: {e}")


@dataclass
class SyncStatus:
    is_syncing: bool = False
    pending_count: int = 0
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class DrainResult:
    committed: int = 0
    failed: int = 0
    skipped_reason: Optional[str] = None


CommitCallback = Callable[[Submission, List[FieldResponse]], object]


class SyncDrainer:
    """Drains the offline queue into the submission store."""

    def __init__(self, queue: OfflineQueue, materializer: MediaMaterializer, submission_store: SubmissionStore,
                 on_committed: CommitCallback = None, network: NetworkStatus = None,
                 bus: ConnectivityBus = None, now: Callable[[], datetime] = datetime.now):
        self.queue = queue
        self.materializer = materializer
        self.submission_store = submission_store
        self.on_committed = on_committed
        self.network = network or bus or StaticNetworkStatus(True)
        self.now = now

        self._drain_lock = threading.Lock()
        self._cancel = threading.Event()
        self._status = SyncStatus(pending_count=queue.count_pending())
        self._listeners: List[Callable[[SyncStatus], None]] = []

        if bus is not None:
            bus.subscribe(self._on_connectivity)

    @property
    def status(self) -> SyncStatus:
        return replace(self._status)

    def subscribe_status(self, listener: Callable[[SyncStatus], None]) -> Callable[[], None]:
        """Register a listener; it is called immediately and on every change."""
        self._listeners.append(listener)
        listener(self.status)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def cancel(self):
        """Stop the running cycle once the in-flight entry finishes."""
        self._cancel.set()

    def drain(self) -> DrainResult:
        if not self.network.is_online():
            logger.log_drain_cycle(0, 0, "skipped", {"reason": SKIP_OFFLINE})
            return DrainResult(skipped_reason=SKIP_OFFLINE)

        if not self._drain_lock.acquire(blocking=False):
            logger.log_drain_cycle(0, 0, "skipped", {"reason": SKIP_ALREADY_RUNNING})
            return DrainResult(skipped_reason=SKIP_ALREADY_RUNNING)

        self._cancel.clear()
        result = DrainResult()
        try:
            self._update_status(is_syncing=True)
            self.queue.recover_interrupted()
            for entry in self.queue.list_drainable():
                if self._cancel.is_set():
                    logger.log_drain_cycle(result.committed, result.failed, "cancelled")
                    break
                if self._drain_entry(entry):
                    result.committed += 1
                else:
                    result.failed += 1
        finally:
            self._drain_lock.release()
            self._update_status(
                is_syncing=False,
                pending_count=self.queue.count_pending(),
                last_sync_at=self.now() if result.committed else self._status.last_sync_at,
            )

        logger.log_drain_cycle(result.committed, result.failed)
        return result

    def _drain_entry(self, entry: PendingSubmission) -> bool:
        try:
            self.queue.mark_status(entry.local_id, SYNC_SYNCING)

            media = self.materializer.materialize(entry.responses, name_prefix=entry.local_id)
            submission = Submission(
                id=None,
                local_id=entry.local_id,
                template_id=entry.template_id,
                store_id=entry.store_id,
                sector_id=entry.sector_id,
                user_id=entry.user_id,
                created_at=entry.created_at,
                completed_at=self.now(),
                media_complete=media.all_uploaded,
            )
            commit = self.submission_store.commit(submission, media.responses, entry.sections)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.log_sync_entry(entry.local_id, "failed", error=message)
            try:
                self.queue.mark_status(entry.local_id, SYNC_FAILED, message)
            except Exception as mark_error:
                logger.error(f"Could not mark {entry.local_id} as failed: {mark_error}")
            self._update_status(last_error=message)
            return False

        submission = commit.submission
        if not commit.duplicate:
            logger.log_sync_entry(entry.local_id, "committed", submission.id)
            if not self._process_committed(entry, submission, media.responses):
                return True
        elif submission.processed_at is None:
            # Committed by a cycle that died before the engines finished
            logger.log_sync_entry(entry.local_id, "replayed", submission.id)
            responses = self.submission_store.list_responses(submission.id)
            if not self._process_committed(entry, submission, responses):
                return True
        else:
            logger.log_sync_entry(entry.local_id, "duplicate", submission.id)

        try:
            self.queue.remove(entry.local_id)
        except Exception as e:
            # Left queued; the next drain replays it as a duplicate
            logger.log_queue_operation("remove", entry.local_id, "failed", {"error": str(e)[:200]})
        return True

    def _process_committed(self, entry: PendingSubmission, submission: Submission,
                           responses: List[FieldResponse]) -> bool:
        """Run the post-commit callback and stamp the submission as processed.

        On failure the entry stays queued as failed; the next cycle replays it
        and, since the submission is not stamped, runs the callback again.
        """
        if self.on_committed is not None:
            try:
                self.on_committed(submission, responses)
            except Exception as e:
                message = f"post-commit processing failed: {e}"[:200]
                logger.log_operation("sync.post_commit", "failed", {
                    "submission_id": submission.id, "error": message,
                })
                try:
                    self.queue.mark_status(entry.local_id, SYNC_FAILED, message)
                except Exception as mark_error:
                    logger.error(f"Could not mark {entry.local_id} as failed: {mark_error}")
                self._update_status(last_error=message)
                return False

        try:
            self.submission_store.mark_processed(submission.id, self.now())
        except Exception as e:
            # Unstamped; a later replay reruns the engines, which skip what exists
            logger.log_operation("sync.mark_processed", "failed", {
                "submission_id": submission.id, "error": str(e)[:200],
            })
        return True

    def _on_connectivity(self, online: bool):
        if online:
            self.drain()
        else:
            self.cancel()

    def _update_status(self, **changes):
        self._status = replace(self._status, **changes)
        snapshot = self.status
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Sync status listener failed: {e}")
