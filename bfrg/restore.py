"""
Companion restore tool.

Consumes an artifact produced by a backup run: optional verification and
repair from the par2 sidecars, then decrypt | decompress | unpack into a
destination directory.
"""

import os
import time
import logging
from typing import List, Optional

from bfrg.config import RunConfig
from bfrg.errors import FatalError
from bfrg.backup.guard import GuardedExec, RunContext, Tier
from bfrg.backup.compression import compressor_for_archive
from bfrg.utils.tools import Toolbox


logger = logging.getLogger(__name__)


class RestoreError(FatalError):
    """Raised when an artifact cannot be read, decrypted or unpacked."""
    pass


class RestoreExecutor:
    """Restores one encrypted artifact into a directory."""

    REPAIR_TOOL = 'par2'

    def __init__(self, config: RunConfig, toolbox: Optional[Toolbox] = None,
                 runner=None, popen=None):
        self.config = config
        self.toolbox = toolbox or Toolbox()
        self.context = RunContext(config, int(time.time()))
        self.guard = GuardedExec(self.context, runner=runner, popen=popen)

    def restore(self, artifact: str, destination: str) -> str:
        """
        Restore an artifact.

        Args:
            artifact: Path of the ``.gpg`` artifact
            destination: Directory to unpack into (created if missing)

        Returns:
            The destination directory

        Raises:
            RestoreError: If the artifact is unreadable or any stage fails
        """
        if not os.path.isfile(artifact) or not os.access(artifact, os.R_OK):
            raise RestoreError(f"cannot read file {artifact}")

        compressor = compressor_for_archive(os.path.basename(artifact))
        if compressor is None:
            raise RestoreError(f"cannot derive the compressor of {artifact}")

        self.toolbox.ensure(['gpg', compressor, 'tar'])
        self.verify_repair(artifact)

        try:
            os.makedirs(destination, exist_ok=True)
        except OSError as e:
            raise RestoreError(f"could not create {destination}: {e}")

        logger.info("attempting file decryption and unpacking")
        try:
            self.guard.pipe(
                [
                    self.decrypt_command(artifact),
                    [compressor, '-d'],
                    ['tar', '-x', '-C', destination],
                ],
                os.devnull,
                tier=Tier.ABORT
            )
        except FatalError as e:
            raise RestoreError(f"restore of {artifact} failed: {e}", exit_status=e.exit_status) from e

        logger.info(f"restored {artifact} into {destination}")
        return destination

    def verify_repair(self, artifact: str) -> bool:
        """Best-effort par2 verification and repair; never fails the restore."""
        if not self.toolbox.available(self.REPAIR_TOOL):
            logger.info(f"{self.REPAIR_TOOL} not found, skipping verification")
            return False
        if not os.path.exists(f'{artifact}.par2'):
            logger.info(f"no recovery data next to {artifact}, skipping verification")
            return False
        logger.info("attempting file verification")
        return self.guard.invoke([self.REPAIR_TOOL, 'repair', '--', f'{artifact}.par2'], tier=Tier.LOG_ONLY)

    def decrypt_command(self, artifact: str) -> List[str]:
        cmd = ['gpg', '-q']
        if self.config.passphrase_file:
            cmd += [
                '--batch', '--pinentry-mode', 'loopback',
                '--passphrase-file', self.config.passphrase_file
            ]
        cmd += ['--decrypt', artifact]
        return cmd


def restore_archive(config: RunConfig, artifact: str, destination: str, **kwargs) -> str:
    """Restore an artifact with a fresh RestoreExecutor."""
    return RestoreExecutor(config, **kwargs).restore(artifact, destination)
