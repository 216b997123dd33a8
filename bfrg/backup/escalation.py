"""
Escalation of recoverable failures.

Every recoverable failure of a run passes through EscalationPolicy.escalate(),
which is what lets the same pipeline code run supervised (prompting) or
unattended (counting, optionally aborting).
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional

import click


logger = logging.getLogger(__name__)


class Decision(Enum):
    CONTINUE = 'continue'
    ABORT = 'abort'


class ErrorLedger:
    """Thread-safe counter of recoverable failures for one run."""

    def __init__(self):
        self._count = 0
        self._lock = threading.Lock()

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            return self._count

    def reset(self):
        with self._lock:
            self._count = 0

    @property
    def count(self) -> int:
        with self._lock:
            return self._count


def _ask(message: str) -> str:
    return click.prompt(message, default='', show_default=False, prompt_suffix=' ')


class EscalationPolicy:
    """
    Decide between continuing and aborting after a recoverable failure.

    When non_interactive is set the policy never prompts: the failure is
    counted and the abort_on_error flag alone decides. Otherwise the user is
    asked a yes/no question; "yes" counts the failure and continues, "no"
    aborts, anything else asks again.
    """

    def __init__(self, ledger: ErrorLedger, non_interactive: bool = False,
                 abort_on_error: bool = False, prompt: Optional[Callable[[str], str]] = None):
        """
        Args:
            ledger: Run-wide error counter
            non_interactive: Never block on input when True
            abort_on_error: In non-interactive mode, abort on the first failure
            prompt: Callable returning the user's raw answer (defaults to a click prompt)
        """
        self.ledger = ledger
        self.non_interactive = non_interactive
        self.abort_on_error = abort_on_error
        self.prompt = prompt or _ask
        # Pool workers may escalate at the same time; questions go out one by one
        self._prompt_lock = threading.Lock()

    def escalate(self, message: str) -> Decision:
        if self.non_interactive:
            self.ledger.increment()
            if self.abort_on_error:
                logger.error(f"{message} -> aborting (abort on error)")
                return Decision.ABORT
            logger.warning(f"{message} -> failing silently.")
            return Decision.CONTINUE

        with self._prompt_lock:
            while True:
                answer = (self.prompt(message) or '').strip().lower()
                if answer.startswith('y'):
                    self.ledger.increment()
                    logger.warning(f"{message} -> continuing on user request")
                    return Decision.CONTINUE
                if answer.startswith('n'):
                    logger.error(f"{message} -> aborted by user")
                    return Decision.ABORT
                click.echo("Please answer yes or no.")
