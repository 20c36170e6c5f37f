"""Two-level interruption handling for a bake run.

A first SIGINT/SIGTERM marks the cancellation token; the pipeline notices it
at the next step boundary and tears down normally. A second signal marks the
run as forced: teardown finishes its single pass without retries and the
process exits with :data:`EXIT_FORCED`. Any further signal is ignored.

The handlers only flip flags on the token. Logging from a signal handler can
re-enter a sink that holds its lock, so the pipeline reports escalations
through :meth:`CancellationToken.pending_notice` at its next boundary.

External processes are never killed mid-operation. They run in their own
session, so the terminal's Ctrl-C reaches only this process.
"""

from __future__ import annotations

import signal
from contextlib import contextmanager
from typing import Iterator, Optional

from .exceptions import PipelineInterrupted


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130
EXIT_FORCED = 137

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancellationToken:
    """Cancellation flag polled by the pipeline between steps."""

    def __init__(self) -> None:
        self.cancelled = False
        self.forced = False
        self.signal_name: Optional[str] = None
        self._reported = 0

    def cancel(self, signal_name: str = "cancel") -> None:
        """Escalate one level: first call cancels, second call forces."""
        if not self.cancelled:
            self.cancelled = True
            self.signal_name = signal_name
        else:
            self.forced = True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PipelineInterrupted(self.signal_name or "cancel", forced=self.forced)

    def pending_notice(self) -> Optional[str]:
        """Describe an escalation that has not been reported yet."""
        level = 2 if self.forced else 1 if self.cancelled else 0
        if level <= self._reported:
            return None
        self._reported = level
        if level == 2:
            return "Received a second signal; finishing teardown without retries"
        return f"Received {self.signal_name}; stopping after the current step"

    @property
    def exit_code(self) -> int:
        if self.forced:
            return EXIT_FORCED
        if self.cancelled:
            return EXIT_INTERRUPTED
        return EXIT_SUCCESS


def _make_handler(token: CancellationToken):
    def handler(signum, frame):
        if not token.forced:
            token.cancel(signal.Signals(signum).name)

    return handler


@contextmanager
def handle_interrupts(token: CancellationToken) -> Iterator[CancellationToken]:
    """Install SIGINT/SIGTERM handlers feeding ``token`` for the block's duration."""
    previous = {}
    handler = _make_handler(token)
    for signum in HANDLED_SIGNALS:
        previous[signum] = signal.signal(signum, handler)
    try:
        yield token
    finally:
        for signum, old_handler in previous.items():
            signal.signal(signum, old_handler)
