"""
Archive pipeline.

Steps, strictly sequential:
1. Validate every source path (fatal)
2. Compile the exclude list
3. tar | compressor into the temp root (fatal on the first non-zero status)
4. Symmetric encryption into the epoch directory (fatal)
5. Recovery data, when redundancy is enabled (recoverable)
6. Self-replication of this package (recoverable)

Encryption is the last content-transforming step, so recovery data and the
self-replicated copy sit next to exactly what leaves the workspace.
"""

import os
import shlex
import logging
import zipfile
from pathlib import Path
from typing import List, Optional

import bfrg
from bfrg.config import RunConfig
from bfrg.errors import FatalError
from bfrg.models import WorkingSet
from bfrg.utils.tools import Toolbox
from .guard import GuardedExec, Tier
from .redundancy import RedundancyStage
from .sources import validate_sources, compile_exclude_file
from .storage import safe_copy_file


logger = logging.getLogger(__name__)


class CompressionError(FatalError):
    """Raised when the container, compression or encryption step fails."""
    pass


# Compressor command -> archive extension
EXTENSION_MAP = {
    'xz': 'tar.xz',
    'gzip': 'tar.gz',
    'pigz': 'tar.gz',
    'bzip2': 'tar.bz2',
    'pbzip2': 'tar.bz2',
    'zstd': 'tar.zst',
    'lz4': 'tar.lz4',
}


def generate_archive_filename(prefix: str, compressor_cmd: str, epoch: int) -> str:
    """
    Generate the archive filename of a run.

    Format: {prefix}_{epoch}.{ext}

    Raises:
        ValueError: If the compressor is not supported
    """
    if compressor_cmd not in EXTENSION_MAP:
        raise ValueError(
            f"Invalid compressor: {compressor_cmd}. "
            f"Valid options: {list(EXTENSION_MAP.keys())}"
        )

    # Sanitize prefix (replace spaces and special chars with underscores)
    safe_prefix = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in prefix
    )
    return f"{safe_prefix}_{epoch}.{EXTENSION_MAP[compressor_cmd]}"


def compressor_for_archive(filename: str) -> Optional[str]:
    """
    Compressor command able to decompress an archive, from its extension.

    Handles the encrypted ``.gpg`` suffix and multi-part extensions like
    ``.tar.xz``.
    """
    name = filename[:-4] if filename.endswith('.gpg') else filename
    for cmd, extension in EXTENSION_MAP.items():
        if name.endswith('.' + extension):
            return cmd
    return None


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")


class ArchivePipeline:
    """Builds the single encrypted artifact of a run inside its working set."""

    def __init__(self, config: RunConfig, guard: GuardedExec, toolbox: Toolbox,
                 redundancy: Optional[RedundancyStage] = None):
        self.config = config
        self.guard = guard
        self.toolbox = toolbox
        self.redundancy = redundancy

    def preflight(self):
        """
        Require the container, compressor and cipher tools.

        Raises:
            FatalError: If one of them is missing
        """
        self.toolbox.ensure(['tar', self.config.compressor_cmd, 'gpg'])

    def build(self, working_set: WorkingSet, sources: Optional[List[str]] = None) -> str:
        """
        Run every pipeline step.

        Args:
            working_set: Working set to build into
            sources: Source paths already validated by the caller; checked
                here when omitted

        Returns:
            Path of the encrypted artifact

        Raises:
            SourceError: If a source path is unusable
            CompressionError: If the container, compressor or cipher fails
        """
        if sources is None:
            sources = validate_sources(self.config.source_paths)
        compile_exclude_file(self.config.exclude_list, working_set.exclude_file)

        self._write_container(sources, working_set)
        self._encrypt(working_set)

        size = get_archive_size(working_set.artifact_path)
        logger.info(f"Archive created: {os.path.basename(working_set.artifact_path)} ({size / 1024 / 1024:.2f} MB)")

        if self.redundancy is not None and self.redundancy.enabled:
            self.redundancy.create(working_set)

        if self.config.self_replicate:
            self._self_replicate(working_set)

        return working_set.artifact_path

    def container_commands(self, sources: List[str], working_set: WorkingSet) -> List[List[str]]:
        tar_cmd = [
            'tar',
            f'--exclude-from={working_set.exclude_file}',
            '--exclude-caches',
            '-cf', '-',
            *sources
        ]
        compressor_cmd = [self.config.compressor_cmd, *shlex.split(self.config.compressor_opt)]
        return [tar_cmd, compressor_cmd]

    def encrypt_command(self, source: str, output: str) -> List[str]:
        cmd = ['gpg', '-q']
        if self.config.passphrase_file:
            cmd += [
                '--batch', '--pinentry-mode', 'loopback',
                '--passphrase-file', self.config.passphrase_file
            ]
        cmd += [
            '--symmetric',
            '--cipher-algo', self.config.cipher_algo,
            '--digest-algo', self.config.digest_algo,
            '--s2k-mode', '3',
            '--s2k-digest-algo', self.config.digest_algo,
            '--s2k-count', str(self.config.s2k_count),
            '--output', output,
            source
        ]
        return cmd

    def _write_container(self, sources: List[str], working_set: WorkingSet):
        logger.info(f"Creating archive {working_set.archive_name} from {len(sources)} source(s)")
        try:
            self.guard.pipe(
                self.container_commands(sources, working_set),
                working_set.compressed_path,
                tier=Tier.ABORT
            )
        except FatalError as e:
            logger.error(f"tar or compressor error: {e.exit_status}")
            raise CompressionError(f"tar or compressor error: {e}", exit_status=e.exit_status) from e

    def _encrypt(self, working_set: WorkingSet):
        logger.info(f"Encrypting archive with {self.config.cipher_algo}")
        try:
            self.guard.invoke(
                self.encrypt_command(working_set.compressed_path, working_set.artifact_path),
                tier=Tier.ABORT
            )
        except FatalError as e:
            logger.error(f"gpg error: {e.exit_status}")
            raise CompressionError(f"gpg error: {e}", exit_status=e.exit_status) from e

    def _self_replicate(self, working_set: WorkingSet):
        """Bundle this package next to the artifact so the run can be reproduced."""
        package_dir = Path(bfrg.__file__).resolve().parent
        bundle = os.path.join(working_set.root, f'bfrg-{bfrg.__version__}-src.zip')
        logger.info(f"copying myself from {package_dir}")

        try:
            with zipfile.ZipFile(bundle, 'w', zipfile.ZIP_DEFLATED) as zipf:
                for item in sorted(package_dir.rglob('*')):
                    if item.is_file() and '__pycache__' not in item.parts:
                        zipf.write(item, str(item.relative_to(package_dir.parent)))
        except OSError as e:
            self.guard.recover(f"could not bundle {package_dir}: {e}")
            return

        safe_copy_file(self.guard, bundle, working_set.working_dir)
