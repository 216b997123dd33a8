"""
External tool discovery.

Every binary the run depends on is looked up once; later checks hit the cache
so availability cannot change halfway through a run.
"""

import shutil
import logging
import threading
from typing import Iterable, Optional, Dict

from bfrg.errors import FatalError


logger = logging.getLogger(__name__)


class Toolbox:
    """Cached PATH lookups for external commands."""

    def __init__(self, path: Optional[str] = None):
        """
        Args:
            path: Search path override (defaults to $PATH)
        """
        self.path = path
        self._cache: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def locate(self, cmd: str) -> Optional[str]:
        """Absolute path of a command, or None when it is not installed."""
        with self._lock:
            if cmd not in self._cache:
                logger.info(f"checking if {cmd} is available")
                found = shutil.which(cmd, path=self.path)
                if found is None:
                    logger.info(f"could not find {cmd}")
                self._cache[cmd] = found
            return self._cache[cmd]

    def available(self, cmd: str) -> bool:
        return self.locate(cmd) is not None

    def ensure(self, commands: Iterable[str]):
        """
        Require a set of essential commands.

        Raises:
            FatalError: On the first missing command
        """
        for cmd in commands:
            if not self.available(cmd):
                logger.error(f"{cmd} is essential, aborting")
                raise FatalError(f"required command not found: {cmd}")
