"""
Scoped lifecycle of the run's temporary working set.

Layout::

    <safe_tmp>/<random>/            temp root, removed on release
        excludes.list               compiled exclude patterns
        <archive_name>              compressed, unencrypted intermediate
        <epoch>/                    epoch directory, replicated to every target
            <archive_name>.gpg
            <archive_name>.gpg.par2 ...
"""

import os
import logging
import tempfile
from contextlib import contextmanager

from bfrg.errors import FatalError
from bfrg.models import WorkingSet
from bfrg.utils.tools import Toolbox
from .guard import GuardedExec, Tier


logger = logging.getLogger(__name__)


class WorkspaceError(FatalError):
    """Raised when the temporary working set cannot be created."""
    pass


class WorkspaceManager:
    """
    Creates and tears down the working set of a run.

    Teardown is best effort: every deletion failure is logged and never
    escalated, so cleanup cannot become a second failure path.
    """

    def __init__(self, guard: GuardedExec, toolbox: Toolbox, safe_tmp: str, secure_delete: bool = True):
        """
        Args:
            guard: Guarded executor of the run
            toolbox: Tool lookups (shred)
            safe_tmp: Base directory for the temp root
            secure_delete: Overwrite files before removing them
        """
        self.guard = guard
        self.toolbox = toolbox
        self.safe_tmp = safe_tmp
        self.secure_delete = secure_delete

    def acquire(self, epoch: int, archive_name: str) -> WorkingSet:
        """
        Create the temp root and its epoch directory.

        Raises:
            WorkspaceError: If either directory cannot be created
        """
        logger.info(f"creating temporary directory at {self.safe_tmp}")
        try:
            root = tempfile.mkdtemp(prefix='bfrg_', dir=self.safe_tmp)
        except OSError as e:
            logger.error(f"could not create a temporary directory at {self.safe_tmp}")
            raise WorkspaceError(f"could not create a temporary directory at {self.safe_tmp}: {e}")
        logger.info(f"{root} created")

        working_set = WorkingSet(root=root, epoch=epoch, archive_name=archive_name)
        try:
            os.makedirs(working_set.working_dir)
        except OSError as e:
            self.release(working_set)
            raise WorkspaceError(f"could not create {working_set.working_dir}: {e}")
        return working_set

    @contextmanager
    def scoped(self, epoch: int, archive_name: str):
        """Working set that is released on every exit path."""
        working_set = self.acquire(epoch, archive_name)
        try:
            yield working_set
        finally:
            self.release(working_set)

    def release(self, working_set: WorkingSet):
        """Delete the working set; safe to call more than once."""
        if working_set is None or working_set.released:
            return
        working_set.released = True

        root = working_set.root
        if not os.path.isdir(root):
            logger.info(f"{root} already removed")
            return

        logger.info('deleting temporary files')
        for path in self._files(root):
            self._delete_file(path)

        # Now-empty directories, deepest first
        for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
            logger.info(f"removing {dirpath}")
            try:
                os.rmdir(dirpath)
            except OSError as e:
                logger.warning(f"could not remove {dirpath}: {e}")

    def _files(self, root: str):
        """Regular files at most two levels below root."""
        found = []
        for dirpath, dirnames, filenames in os.walk(root):
            depth = 0 if dirpath == root else os.path.relpath(dirpath, root).count(os.sep) + 1
            if depth >= 1:
                dirnames[:] = []
            for name in filenames:
                path = os.path.join(dirpath, name)
                if os.path.isfile(path) and not os.path.islink(path):
                    found.append(path)
        return found

    def _delete_file(self, path: str):
        if self.secure_delete:
            if self.toolbox.available('shred'):
                logger.info(f"shredding {path}")
                self.guard.invoke(['shred', path], tier=Tier.LOG_ONLY)
            else:
                logger.warning(f"shred not available, {path} is removed without overwrite")
        logger.info(f"removing {path}")
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"could not remove {path}: {e}")
