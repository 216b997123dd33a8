"""
Backup executor - orchestrates one complete run.

Workflow:
1. Validate the configuration and every source (before any side effect)
2. Preflight the essential tools
3. Acquire the working set
4. Plan the destinations (tool probing, fallback rewriting)
5. Build the encrypted artifact (+ recovery data, + self-replication)
6. Replicate to every destination
7. Enforce retention on local destinations
8. Release the working set (always) and flush filesystem buffers
"""

import os
import signal
import logging
import threading
import time
from datetime import datetime
from typing import Dict, Optional

from bfrg.config import RunConfig
from bfrg.errors import BackupError, BackupAborted, FatalError, RunInterrupted
from bfrg.models import RunRecord
from bfrg.utils.tools import Toolbox
from .guard import GuardedExec, RunContext
from .workspace import WorkspaceManager
from .sources import validate_sources
from .compression import ArchivePipeline, generate_archive_filename
from .redundancy import RedundancyStage
from .dispatcher import TargetDispatcher
from .retention import RetentionManager
from .storage import Storage


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one run.
    """

    def __init__(self, config: RunConfig, toolbox: Optional[Toolbox] = None, prompt=None,
                 runner=None, popen=None, storages: Optional[Dict[str, Storage]] = None,
                 epoch: Optional[int] = None):
        """
        Initialize backup executor.

        Args:
            config: Resolved run configuration
            toolbox: Tool lookups (defaults to $PATH)
            prompt: Answer source for interactive escalation
            runner: subprocess.run compatible callable
            popen: subprocess.Popen compatible callable
            storages: Storage handlers by name, overriding the default ones
            epoch: Run timestamp (defaults to now)
        """
        self.config = config
        self.epoch = epoch if epoch is not None else int(time.time())
        self.toolbox = toolbox or Toolbox()
        self.context = RunContext(config, self.epoch, prompt=prompt)
        self.guard = GuardedExec(self.context, runner=runner, popen=popen)
        self.workspace = WorkspaceManager(self.guard, self.toolbox, config.safe_tmp, config.safe_delete)
        self.redundancy = RedundancyStage(self.guard, self.toolbox, config.data_redundancy)
        self.pipeline = ArchivePipeline(config, self.guard, self.toolbox, self.redundancy)
        self.dispatcher = TargetDispatcher(self.context, self.guard, self.toolbox, storages)
        self.retention = RetentionManager(config.keep_days)
        self.record = None

    def execute(self) -> RunRecord:
        """
        Execute the run.

        Every failure is caught and recorded; the working set is released on
        every exit path.

        Returns:
            RunRecord with the outcome and exit code
        """
        self.record = RunRecord(epoch=self.epoch)
        logger.info(f"Starting backup run {self.epoch}")

        previous_handlers = self._install_signal_handlers()
        try:
            self._execute_workflow()
            self.record.status = 'success'
            logger.info("Backup completed successfully")

        except RunInterrupted as e:
            self.record.status = 'interrupted'
            self.record.error_message = str(e)
            logger.error(f"Backup interrupted: {e}")

        except BackupAborted as e:
            self.record.status = 'aborted'
            self.record.error_message = str(e)
            logger.error(f"Backup aborted: {e}")

        except FatalError as e:
            self.record.status = 'failed'
            self.record.error_message = str(e)
            self.record.failure_status = e.exit_status
            logger.error(f"Backup failed: {e}")

        except BackupError as e:
            self.record.status = 'failed'
            self.record.error_message = str(e)
            logger.error(f"Backup failed: {e}")

        except Exception as e:
            self.record.status = 'failed'
            self.record.error_message = str(e)
            logger.exception(f"Backup failed: {e}")

        finally:
            self._restore_signal_handlers(previous_handlers)
            self.record.attempted = list(self.dispatcher.attempted)
            self.record.error_count = self.context.ledger.count
            self.record.completed_at = datetime.now()
            self._flush()
            self._summary()

        return self.record

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        self.config.validate()
        sources = validate_sources(self.config.source_paths)
        self.pipeline.preflight()

        archive_name = generate_archive_filename(
            self.config.archive_prefix, self.config.compressor_cmd, self.epoch
        )

        with self.workspace.scoped(self.epoch, archive_name) as working_set:
            plan = self.dispatcher.plan()
            self.redundancy.probe()

            self.record.artifact = os.path.basename(self.pipeline.build(working_set, sources))

            self.dispatcher.dispatch(working_set, plan)

            if self.config.archive_cleanup and self.config.local_targets:
                self.context.check_interrupted()
                self.retention.enforce(self.config.local_targets)
            else:
                logger.info("archive cleanup disabled, skipping")

    def _install_signal_handlers(self):
        """Route SIGINT/SIGTERM to the run context; only possible in the main thread."""
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, self.context.interrupt)
        return previous

    def _restore_signal_handlers(self, previous):
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _flush(self):
        logger.info("syncing filesystem buffers")
        try:
            os.sync()
        except OSError as e:
            logger.warning(f"sync failed: {e}")

    def _summary(self):
        record = self.record
        logger.info(f"run {record.epoch} finished with status {record.status}")
        if record.attempted:
            logger.info(f"destinations attempted: {', '.join(record.attempted)}")
        if record.error_count:
            logger.warning(f"total error count: {record.error_count}")
        logger.info(f"exit code {record.exit_code}")


def execute_backup(config: RunConfig, **kwargs) -> RunRecord:
    """
    Execute one backup run.

    Args:
        config: Resolved run configuration
        **kwargs: Passed through to BackupExecutor

    Returns:
        RunRecord with execution results
    """
    executor = BackupExecutor(config, **kwargs)
    return executor.execute()
