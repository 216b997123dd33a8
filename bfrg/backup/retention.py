"""
Retention policy enforcement for local destinations.

Only immediate subdirectories named with a 10-digit epoch are managed;
anything else at a destination is left alone. The age filter is blunt: when
every archive directory at a destination is past the window, all of them are
removed (a warning is logged first).
"""

import os
import re
import shutil
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Sequence


logger = logging.getLogger(__name__)

EPOCH_DIR = re.compile(r'^[0-9]{10}$')


class RetentionManager:
    """
    Removes archive directories older than ``keep_days`` from local targets.

    Deletion failures are logged and skipped.
    """

    def __init__(self, keep_days: int):
        self.keep_days = keep_days

    def candidates(self, target: str) -> List[str]:
        """
        Archive directories at a target that are past the retention window.

        Args:
            target: Local destination path

        Returns:
            Full paths of the expired epoch directories, sorted by name
        """
        cutoff = datetime.now() - timedelta(days=self.keep_days)
        expired = []
        for name in sorted(self._archive_dirs(target)):
            path = os.path.join(target, name)
            try:
                modified = datetime.fromtimestamp(os.path.getmtime(path))
            except OSError as e:
                logger.warning(f"could not read modification time of {path}: {e}")
                continue
            if modified < cutoff:
                expired.append(path)
        return expired

    def cleanup(self, target: str) -> int:
        """
        Enforce the retention window on one local target.

        Returns:
            Number of archive directories removed
        """
        if not os.path.isdir(target):
            logger.warning(f"{target} does not exist, skipping retention")
            return 0

        logger.info(f"cleaning up old archives at {target} (older than {self.keep_days} days)")
        expired = self.candidates(target)
        if expired and len(expired) == len(self._archive_dirs(target)):
            logger.warning(f"every archive at {target} is older than {self.keep_days} days, all will be removed")

        deleted_count = 0
        for path in expired:
            logger.info(f"removing {path}")
            try:
                shutil.rmtree(path)
                deleted_count += 1
            except OSError as e:
                logger.error(f"Failed to remove {path}: {e}")

        return deleted_count

    def enforce(self, targets: Sequence[str]) -> Dict[str, int]:
        """
        Enforce retention on every local target.

        Returns:
            Dict mapping each target to the number of directories removed
        """
        summary = {}
        for target in targets:
            summary[target] = self.cleanup(target)
        logger.info(f"retention enforcement complete, removed {sum(summary.values())} archive(s)")
        return summary

    def _archive_dirs(self, target: str) -> List[str]:
        try:
            entries = os.listdir(target)
        except OSError as e:
            logger.error(f"could not list {target}: {e}")
            return []
        return [
            name for name in entries
            if EPOCH_DIR.match(name) and os.path.isdir(os.path.join(target, name))
            and not os.path.islink(os.path.join(target, name))
        ]
