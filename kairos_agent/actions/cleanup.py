"""LIFO stack of reversal actions for partially completed operations."""

from __future__ import annotations

from typing import Callable, Optional

from kairos_agent.logging import LoggerFactory


log = LoggerFactory.for_storage()

CleanupJob = Callable[[], None]


class CleanupStack:
    """Collects undo actions as steps succeed and runs them in reverse.

    A job signals failure by raising. ``cleanup`` runs every registered job
    exactly once and empties the stack, so calling it a second time (for
    instance from a ``finally`` block after an explicit unwind) is a no-op.
    """

    def __init__(self) -> None:
        self._jobs: list[CleanupJob] = []

    def push(self, job: CleanupJob) -> None:
        self._jobs.append(job)

    def pop(self) -> Optional[CleanupJob]:
        if not self._jobs:
            return None
        return self._jobs.pop()

    def __len__(self) -> int:
        return len(self._jobs)

    def cleanup(self, error: Optional[BaseException] = None) -> Optional[BaseException]:
        """Run all jobs, newest first.

        Returns ``error`` when one was given, so the original failure is never
        masked; otherwise returns the first exception raised by a job.
        """
        first_failure: Optional[Exception] = None
        while self._jobs:
            job = self._jobs.pop()
            try:
                job()
            except Exception as e:
                log.error(f"Cleanup step failed: {e}")
                if first_failure is None:
                    first_failure = e
        if error is not None:
            return error
        return first_failure
