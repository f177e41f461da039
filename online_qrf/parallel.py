from __future__ import annotations

import concurrent.futures
import logging
import os
import typing

from online_qrf.exceptions import ConcurrencyFault, ConfigurationError

__all__ = ["TaskPool", "parallel_reduce", "resolve_n_jobs"]

logger = logging.getLogger(__name__)

T = typing.TypeVar("T")


def resolve_n_jobs(n_jobs: int) -> int:
    """Number of workers for a job count option: -1 is every core, 0 and 1 mean inline."""
    if n_jobs == -1:
        return os.cpu_count() or 1
    if n_jobs < -1:
        raise ConfigurationError(f"Invalid n_jobs: {n_jobs}")
    return max(n_jobs, 1)


class TaskPool:
    """Fixed-size worker pool that runs batches of tasks and waits for all of them.

    With a single worker no threads are created and tasks run on the calling
    thread. Any failure while waiting is raised as a `ConcurrencyFault`, so a batch
    either completes entirely or the caller sees an error.

    """

    def __init__(self, n_jobs: int = 1):
        self.n_workers = resolve_n_jobs(n_jobs)
        self._executor = (
            concurrent.futures.ThreadPoolExecutor(max_workers=self.n_workers)
            if self.n_workers > 1
            else None
        )
        logger.debug("Task pool with %d worker(s)", self.n_workers)

    @property
    def is_parallel(self) -> bool:
        return self._executor is not None

    def run(self, tasks: typing.Iterable[typing.Callable[[], T]]) -> list[T]:
        """Run every task and return their results in submission order."""
        if self._executor is None:
            return [task() for task in tasks]

        futures = [self._executor.submit(task) for task in tasks]
        try:
            return [future.result() for future in futures]
        except Exception as exc:
            for future in futures:
                future.cancel()
            raise ConcurrencyFault(f"Task batch did not complete: {exc!r}") from exc

    def as_completed(self, tasks: typing.Iterable[typing.Callable[[], T]]) -> typing.Iterator[T]:
        """Run every task and yield results as they finish."""
        if self._executor is None:
            for task in tasks:
                yield task()
            return

        futures = [self._executor.submit(task) for task in tasks]
        try:
            for future in concurrent.futures.as_completed(futures):
                yield future.result()
        except Exception as exc:
            for future in futures:
                future.cancel()
            raise ConcurrencyFault(f"Task batch did not complete: {exc!r}") from exc

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


def parallel_reduce(
    items: typing.Sequence[T],
    combine: typing.Callable[[T, T], T],
    identity: T,
    executor: concurrent.futures.Executor | None = None,
) -> T:
    """Fold `items` with an associative `combine` as a balanced tree of pairwise calls.

    Each level of the tree is submitted to `executor` at once. Since `combine` is
    associative the result does not depend on how the pairs are scheduled. Without an
    executor the same tree is evaluated on the calling thread.

    """
    level = list(items)
    if not level:
        return identity

    while len(level) > 1:
        pairs = [(level[i], level[i + 1]) for i in range(0, len(level) - 1, 2)]
        carry = [level[-1]] if len(level) % 2 else []
        if executor is None:
            level = [combine(a, b) for a, b in pairs] + carry
            continue
        futures = [executor.submit(combine, a, b) for a, b in pairs]
        try:
            level = [future.result() for future in futures] + carry
        except Exception as exc:
            for future in futures:
                future.cancel()
            raise ConcurrencyFault(f"Parallel reduction did not complete: {exc!r}") from exc

    return combine(identity, level[0])
