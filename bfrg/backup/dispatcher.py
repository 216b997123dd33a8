"""
Replication of the working set to every configured destination.

Planning happens once per run, before any destination is touched: tools are
probed and the destination list is rewritten (sync falls back to remote copy
when rsync is missing but ssh is present, classes without a usable tool are
dropped after escalation). Dispatch then walks the plan class by class,
sequentially, except the cloud class, which runs through a bounded worker
pool of ``cloud_tasks`` slots.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from bfrg.models import Destination, DestinationClass, WorkingSet
from bfrg.utils.tools import Toolbox
from .guard import GuardedExec, RunContext
from .storage import (
    Storage, StorageError, LocalStorage, ScpStorage, SftpStorage,
    RsyncStorage, RcloneStorage, S3Storage, is_s3_address
)


logger = logging.getLogger(__name__)


CLASS_ORDER = (
    DestinationClass.LOCAL,
    DestinationClass.SYNC_COPY,
    DestinationClass.REMOTE_COPY,
    DestinationClass.CLOUD_COPY,
)


@dataclass
class PlannedTransfer:
    """One destination bound to the handler that will serve it"""
    destination: Destination
    storage: Storage

    def __str__(self):
        return f'{self.destination} via {self.storage.name}'


@dataclass
class DispatchPlan:
    """Destination list after tool probing and fallback rewriting"""
    transfers: List[PlannedTransfer] = field(default_factory=list)
    dropped: List[Destination] = field(default_factory=list)

    def for_class(self, kind: DestinationClass) -> List[PlannedTransfer]:
        return [t for t in self.transfers if t.destination.kind is kind]


def create_storage(name: str, guard: GuardedExec, toolbox: Toolbox) -> Storage:
    """
    Factory function to create a storage handler.

    Args:
        name: 'local', 'scp', 'sftp', 'rsync', 'rclone' or 's3'
        guard: Guarded executor of the run
        toolbox: Tool lookups

    Raises:
        ValueError: If name is invalid
    """
    if name == 'local':
        return LocalStorage(guard, use_rsync=toolbox.available('rsync'))
    elif name == 'scp':
        return ScpStorage(guard)
    elif name == 'sftp':
        return SftpStorage(guard)
    elif name == 'rsync':
        return RsyncStorage(guard)
    elif name == 'rclone':
        return RcloneStorage(guard)
    elif name == 's3':
        return S3Storage(guard)
    else:
        raise ValueError(f"Invalid storage type: {name}")


class TargetDispatcher:
    """Plans and runs the per-class transfers of one run."""

    def __init__(self, context: RunContext, guard: GuardedExec, toolbox: Toolbox,
                 storages: Optional[Dict[str, Storage]] = None):
        """
        Args:
            context: Run context (config, interrupt flag)
            guard: Guarded executor of the run
            toolbox: Tool lookups
            storages: Handlers by name, overriding the default ones
        """
        self.context = context
        self.guard = guard
        self.toolbox = toolbox
        self.storages = dict(storages or {})
        self.max_workers = context.config.cloud_tasks
        self.attempted: List[str] = []
        self._attempted_lock = threading.Lock()

    def _storage(self, name: str) -> Storage:
        if name not in self.storages:
            self.storages[name] = create_storage(name, self.guard, self.toolbox)
        return self.storages[name]

    def plan(self) -> DispatchPlan:
        """
        Probe tools once and bind every destination to a handler.

        Raises:
            BackupAborted: When a disabled class is escalated and the policy aborts
        """
        plan = DispatchPlan()
        destinations = self.context.config.destinations()
        kinds = {d.kind for d in destinations}

        if DestinationClass.LOCAL in kinds and not self.toolbox.available('rsync'):
            logger.info("rsync not found, local targets are copied file by file")

        if DestinationClass.SYNC_COPY in kinds and not self.toolbox.available('rsync'):
            if self.toolbox.available('ssh'):
                logger.warning("rsync not found, using scp for sync targets")
                destinations = [
                    Destination(DestinationClass.REMOTE_COPY, d.address)
                    if d.kind is DestinationClass.SYNC_COPY else d
                    for d in destinations
                ]
            else:
                dropped = [d for d in destinations if d.kind is DestinationClass.SYNC_COPY]
                self.guard.recover("rsync and ssh not found, skip sync targets")
                plan.dropped.extend(dropped)
                destinations = [d for d in destinations if d.kind is not DestinationClass.SYNC_COPY]

        remote_storage = 'scp'
        if any(d.kind is DestinationClass.REMOTE_COPY for d in destinations) and not self.toolbox.available('scp'):
            logger.warning("scp not found, using sftp for remote targets")
            remote_storage = 'sftp'

        rclone_targets = [
            d for d in destinations
            if d.kind is DestinationClass.CLOUD_COPY and not is_s3_address(d.address)
        ]
        if rclone_targets and not self.toolbox.available('rclone'):
            self.guard.recover("rclone not found, skip cloud targets")
            plan.dropped.extend(rclone_targets)
            destinations = [d for d in destinations if d not in rclone_targets]

        for destination in sorted(destinations, key=lambda d: CLASS_ORDER.index(d.kind)):
            if destination.kind is DestinationClass.LOCAL:
                name = 'local'
            elif destination.kind is DestinationClass.SYNC_COPY:
                name = 'rsync'
            elif destination.kind is DestinationClass.REMOTE_COPY:
                name = remote_storage
            elif is_s3_address(destination.address):
                name = 's3'
            else:
                name = 'rclone'
            plan.transfers.append(PlannedTransfer(destination, self._storage(name)))

        for transfer in plan.transfers:
            logger.info(f"planned {transfer}")
        return plan

    def dispatch(self, working_set: WorkingSet, plan: DispatchPlan) -> Dict[str, bool]:
        """
        Replicate the working set to every planned destination.

        Returns:
            Outcome per destination, in the order transfers were started

        Raises:
            BackupAborted: When escalation answers abort; no further
                destination is started
            RunInterrupted: When a signal was received
        """
        results = {}
        for kind in CLASS_ORDER:
            transfers = plan.for_class(kind)
            if not transfers:
                continue
            logger.info(f"processing {kind.value} targets")
            if kind is DestinationClass.CLOUD_COPY:
                results.update(self._dispatch_parallel(transfers, working_set))
            else:
                for transfer in transfers:
                    self.context.check_interrupted()
                    self._mark_attempted(transfer)
                    results[str(transfer.destination)] = self._run_unit(transfer, working_set, verify=False)
        return results

    def _dispatch_parallel(self, transfers: List[PlannedTransfer], working_set: WorkingSet) -> Dict[str, bool]:
        """
        Bounded-parallel dispatch: a slot is taken before each submit and
        handed back when the unit finishes, so at most max_workers units run.
        The pool is drained before returning.
        """
        slots = threading.BoundedSemaphore(self.max_workers)
        futures = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='bfrg-cloud') as executor:
            for transfer in transfers:
                slots.acquire()
                if self.context.interrupted.is_set() or self._has_failed(futures):
                    slots.release()
                    logger.warning("not starting further cloud transfers")
                    break
                self._mark_attempted(transfer)
                future = executor.submit(self._run_unit, transfer, working_set, True)
                future.add_done_callback(lambda _f: slots.release())
                futures[future] = transfer

            wait(futures)

        results = {}
        failure = None
        for future, transfer in futures.items():
            error = future.exception()
            if error is not None:
                failure = failure or error
                results[str(transfer.destination)] = False
            else:
                results[str(transfer.destination)] = future.result()

        if failure is not None:
            raise failure
        self.context.check_interrupted()
        return results

    def _has_failed(self, futures) -> bool:
        return any(f.done() and f.exception() is not None for f in futures)

    def _mark_attempted(self, transfer: PlannedTransfer):
        with self._attempted_lock:
            self.attempted.append(str(transfer.destination))

    def _run_unit(self, transfer: PlannedTransfer, working_set: WorkingSet, verify: bool) -> bool:
        """Transfer, then verify for the cloud class."""
        address = transfer.destination.address
        logger.info(f"copying to {transfer}")
        try:
            ok = transfer.storage.transfer(working_set, address)
            if ok and verify:
                ok = transfer.storage.verify(working_set, address)
        except StorageError as e:
            logger.error(f"transfer to {transfer.destination} failed: {e}")
            self.guard.recover(f"transfer to {transfer.destination} failed")
            return False

        if ok:
            logger.info(f"{transfer.destination} done")
        return ok
