"""
Forward error correction sidecars for the encrypted artifact.
"""

import logging

from bfrg.models import WorkingSet
from bfrg.utils.tools import Toolbox
from .guard import GuardedExec, Tier


logger = logging.getLogger(__name__)


class RedundancyStage:
    """Optional par2 recovery data, written next to the artifact."""

    TOOL = 'par2create'

    def __init__(self, guard: GuardedExec, toolbox: Toolbox, percent: int):
        self.guard = guard
        self.toolbox = toolbox
        self.percent = percent
        self.enabled = percent > 0

    def probe(self):
        """
        Disable the stage when the encoder is missing.

        The miss is escalated: skipping recovery data is acceptable only if
        the policy allows the run to continue.
        """
        if not self.enabled:
            logger.info("data redundancy disabled")
            return
        if not self.toolbox.available(self.TOOL):
            self.guard.recover(f"{self.TOOL} not found, skip recovery data creating")
            logger.info(f"skipping the creation of par2 recovery files due to missing {self.TOOL} binary")
            self.enabled = False

    def create(self, working_set: WorkingSet) -> bool:
        logger.info(f"creating recovery information with {self.percent}% redundancy")
        return self.guard.invoke(
            [self.TOOL, '-q', '-q', f'-r{self.percent}', working_set.artifact_path],
            tier=Tier.ESCALATE,
            cwd=working_set.working_dir
        )
