import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List


class DestinationClass(Enum):
    """Transfer mechanism a destination belongs to"""
    LOCAL = 'local'
    REMOTE_COPY = 'remote'
    SYNC_COPY = 'sync'
    CLOUD_COPY = 'cloud'


@dataclass(frozen=True)
class Destination:
    """A configured target: its class plus exactly one address string"""
    kind: DestinationClass
    address: str

    def __str__(self):
        return f'{self.kind.value}:{self.address}'


@dataclass
class WorkingSet:
    """Private temporary tree owned by one run"""
    root: str
    epoch: int
    archive_name: str
    released: bool = False

    @property
    def working_dir(self) -> str:
        """The epoch directory, holding everything that leaves the workspace."""
        return os.path.join(self.root, str(self.epoch))

    @property
    def exclude_file(self) -> str:
        return os.path.join(self.root, 'excludes.list')

    @property
    def compressed_path(self) -> str:
        """Intermediate, unencrypted archive; never replicated."""
        return os.path.join(self.root, self.archive_name)

    @property
    def artifact_path(self) -> str:
        return os.path.join(self.working_dir, f'{self.archive_name}.gpg')


@dataclass
class RunRecord:
    """Outcome of one run"""
    epoch: int
    status: str = 'running'  # running, success, failed, aborted, interrupted
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    error_count: int = 0
    error_message: Optional[str] = None
    failure_status: int = 1
    artifact: Optional[str] = None
    attempted: List[str] = field(default_factory=list)
    log_path: Optional[str] = None

    @property
    def exit_code(self) -> int:
        if self.status == 'success':
            return min(self.error_count, 255)
        if self.status == 'interrupted':
            return 130
        return self.failure_status or 1

    def __repr__(self):
        return f'<RunRecord epoch={self.epoch} status={self.status} errors={self.error_count}>'
