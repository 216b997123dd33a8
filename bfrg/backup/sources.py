"""
Source handling for backup runs.

Sources are local directories handed to the archive container as-is; this
module only checks them and compiles the exclude patterns the container
step consumes.
"""

import os
import logging
from pathlib import Path
from typing import List, Sequence

from bfrg.errors import FatalError


logger = logging.getLogger(__name__)


class SourceError(FatalError):
    """Raised when a configured source path is unusable."""
    pass


def validate_sources(paths: Sequence[str]) -> List[str]:
    """
    Check that every configured source is an existing directory.

    A backup that silently omits a source is worse than no backup, so the
    first missing path ends the run.

    Args:
        paths: Configured source paths

    Returns:
        The paths, ``~``-expanded, in configured order

    Raises:
        SourceError: If no path is configured or any path is not a directory
    """
    if not paths:
        raise SourceError("no source_paths defined")

    resolved = []
    for path in paths:
        source_path = Path(path).expanduser()
        logger.info(f"verifying if path {source_path} exists")

        if not source_path.is_dir():
            logger.error(f"{source_path} is essential for operation, aborting.")
            raise SourceError(f"invalid path {path}")

        if not os.access(source_path, os.R_OK | os.X_OK):
            logger.error(f"{source_path} is not readable, aborting.")
            raise SourceError(f"permission denied accessing {path}")

        resolved.append(str(source_path))

    return resolved


def compile_exclude_file(patterns: Sequence[str], exclude_file: str) -> str:
    """
    Write exclude patterns one per line, in the format of ``tar --exclude-from``.

    Args:
        patterns: Glob patterns to exclude (e.g. ``*~``, ``.cache``)
        exclude_file: Output path

    Returns:
        Path of the written file
    """
    logger.info(f"compiling tar exclude file with: {', '.join(patterns)}")
    try:
        with open(exclude_file, 'w') as f:
            f.write('\n'.join(patterns))
    except OSError as e:
        raise SourceError(f"could not write exclude file {exclude_file}: {e}")
    return exclude_file
