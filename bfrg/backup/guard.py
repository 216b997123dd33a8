"""
Guarded execution of external tools.

Every external invocation goes through GuardedExec, which logs the exact
command before running it and then applies one of three tiers on failure:

- ABORT: the run cannot continue, a FatalError is raised
- ESCALATE: the failure is routed through the escalation policy
- LOG_ONLY: the failure is logged and the caller moves on
"""

import shlex
import logging
import signal
import tempfile
import threading
import subprocess
from enum import Enum
from typing import List, Optional, Sequence

from bfrg.config import RunConfig
from bfrg.errors import FatalError, BackupAborted, RunInterrupted
from .escalation import Decision, ErrorLedger, EscalationPolicy


logger = logging.getLogger(__name__)


class Tier(Enum):
    ABORT = 'abort'
    ESCALATE = 'escalate'
    LOG_ONLY = 'log'


class RunContext:
    """
    State shared by every stage of one run.

    Passed explicitly into each stage; the ledger and the interrupt event are
    the only members mutated from the cloud worker pool.
    """

    def __init__(self, config: RunConfig, epoch: int, prompt=None):
        self.config = config
        self.epoch = epoch
        self.ledger = ErrorLedger()
        self.policy = EscalationPolicy(
            self.ledger,
            non_interactive=config.non_interactive,
            abort_on_error=config.abort_on_error,
            prompt=prompt
        )
        self.interrupted = threading.Event()

    def interrupt(self, signum=None, frame=None):
        """Signal handler: stop issuing new invocations."""
        logger.warning(f"received signal {signum}, proceeding to teardown")
        self.interrupted.set()

    def check_interrupted(self):
        if self.interrupted.is_set():
            raise RunInterrupted("run interrupted")


def _exit_status(status: int) -> int:
    """Shell convention for a child killed by a signal: 128 + signum."""
    return 128 - status if status < 0 else status


def _pipeline_status(statuses: List[int]) -> int:
    """
    Status of the stage that actually failed.

    A producer killed by SIGPIPE only died because a later stage stopped
    reading, so a later failure takes precedence over it.
    """
    for index, status in enumerate(statuses):
        if status == 0:
            continue
        if status == -signal.SIGPIPE and any(statuses[index + 1:]):
            continue
        return _exit_status(status)
    return 0


def _log_output(invocation: str, stream: str, text: str, failed: bool):
    text = (text or '').strip()
    if not text:
        return
    level = logging.WARNING if failed and stream == 'stderr' else logging.DEBUG
    for line in text.splitlines():
        logger.log(level, f"[{invocation.split(' ', 1)[0]} {stream}] {line}")


class GuardedExec:
    """Uniform wrapper around every external invocation of a run."""

    def __init__(self, context: RunContext, runner=None, popen=None):
        """
        Args:
            context: Run context holding the escalation policy
            runner: subprocess.run compatible callable
            popen: subprocess.Popen compatible callable, used for pipelines
        """
        self.context = context
        self.runner = runner or subprocess.run
        self.popen = popen or subprocess.Popen

    def invoke(self, cmd: Sequence[str], tier: Tier = Tier.ESCALATE, cwd: Optional[str] = None) -> bool:
        """
        Run one external command.

        Returns:
            True on success, False when a failure was logged or escalated
            and the run continues

        Raises:
            FatalError: On failure with the ABORT tier
            BackupAborted: When escalation answers abort
            RunInterrupted: When the run was interrupted (ABORT/ESCALATE tiers)
        """
        cmd = [str(c) for c in cmd]
        invocation = shlex.join(cmd)
        if tier is not Tier.LOG_ONLY:
            self.context.check_interrupted()

        logger.info(f"invoking {invocation}")
        try:
            result = self.runner(cmd, cwd=cwd, capture_output=True, text=True, errors='replace')
            status = _exit_status(result.returncode)
            _log_output(invocation, 'stdout', result.stdout, status != 0)
            _log_output(invocation, 'stderr', result.stderr, status != 0)
        except OSError as e:
            logger.error(f"could not execute {cmd[0]}: {e}")
            status = 127

        if status == 0:
            return True

        logger.error(f"command {invocation} failed (status {status}).")
        return self._fail(f"{invocation} failed", tier, status)

    def pipe(self, commands: List[Sequence[str]], output_path: str,
             tier: Tier = Tier.ABORT, cwd: Optional[str] = None) -> bool:
        """
        Run a pipeline of commands, writing the last stage into output_path.

        The status considered is the first non-zero one along the pipeline,
        so a failing producer is never masked by a succeeding consumer. A
        producer killed by SIGPIPE yields to the later stage that failed.
        """
        commands = [[str(c) for c in cmd] for cmd in commands]
        invocation = ' | '.join(shlex.join(cmd) for cmd in commands)
        if tier is not Tier.LOG_ONLY:
            self.context.check_interrupted()

        logger.info(f"invoking {invocation} > {output_path}")
        procs = []
        stderr_files = []
        statuses = []
        try:
            with open(output_path, 'wb') as out:
                upstream = None
                for index, cmd in enumerate(commands):
                    last = index == len(commands) - 1
                    err = tempfile.TemporaryFile()
                    stderr_files.append((cmd[0], err))
                    proc = self.popen(
                        cmd,
                        stdin=upstream,
                        stdout=out if last else subprocess.PIPE,
                        stderr=err,
                        cwd=cwd
                    )
                    if upstream is not None:
                        # Let the producer see SIGPIPE if the consumer exits early
                        upstream.close()
                    upstream = proc.stdout
                    procs.append(proc)
                statuses = [proc.wait() for proc in procs]
        except OSError as e:
            logger.error(f"could not execute pipeline: {e}")
            for proc in procs:
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()
            statuses = [127]
        finally:
            for name, err in stderr_files:
                err.seek(0)
                text = err.read().decode('utf-8', errors='replace')
                err.close()
                _log_output(name, 'stderr', text, any(statuses))

        status = _pipeline_status(statuses)
        if status == 0:
            return True

        logger.error(f"pipeline {invocation} failed (status {status}).")
        return self._fail(f"{invocation} failed", tier, status)

    def check(self, ok: bool, message: str, tier: Tier = Tier.ESCALATE) -> bool:
        """Guard an in-process verification the same way as a command."""
        if ok:
            return True
        logger.error(message)
        return self._fail(message, tier, 1)

    def recover(self, message: str):
        """
        Escalate a recoverable failure.

        Raises:
            BackupAborted: When the policy decides to abort
        """
        decision = self.context.policy.escalate(f"{message}, continue?")
        if decision is Decision.ABORT:
            raise BackupAborted(message)

    def _fail(self, message: str, tier: Tier, status: int) -> bool:
        if tier is not Tier.LOG_ONLY:
            # A tool killed by the same signal is not a failure worth escalating
            self.context.check_interrupted()
        if tier is Tier.ABORT:
            raise FatalError(message, exit_status=status)
        if tier is Tier.ESCALATE:
            self.recover(message)
        return False
