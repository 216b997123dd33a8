"""
Backup module for bfrg.

This module handles the core backup functionality including:
- Guarded execution and error escalation
- Working set lifecycle
- Archive pipeline (container, compression, encryption, recovery data)
- Replication to local, remote, sync and cloud destinations
- Retention policy enforcement
- Execution orchestration
"""

from .executor import BackupExecutor, execute_backup
from .guard import GuardedExec, RunContext, Tier
from .escalation import EscalationPolicy, ErrorLedger, Decision
from .workspace import WorkspaceManager
from .compression import ArchivePipeline
from .redundancy import RedundancyStage
from .dispatcher import TargetDispatcher, DispatchPlan
from .storage import S3Storage, LocalStorage
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'GuardedExec',
    'RunContext',
    'Tier',
    'EscalationPolicy',
    'ErrorLedger',
    'Decision',
    'WorkspaceManager',
    'ArchivePipeline',
    'RedundancyStage',
    'TargetDispatcher',
    'DispatchPlan',
    'S3Storage',
    'LocalStorage',
    'RetentionManager'
]
