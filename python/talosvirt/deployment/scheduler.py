"""
talosvirt/deployment/scheduler.py

A small dependency-ordered task scheduler.

Tasks are named async callables with explicit dependencies. `TaskGraph.run`
starts every task whose dependencies have completed, concurrently, and keeps
doing so as tasks finish. On the first failure it stops starting tasks, lets the
tasks already in flight settle, marks everything never started as cancelled and
raises TaskError for the first failing task.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[Any]]


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskError(RuntimeError):
    """A task of the graph failed; `task` names it and `__cause__` holds the error."""

    def __init__(self, task: str, cause: BaseException) -> None:
        super().__init__(f"Task '{task}' failed: {cause}")
        self.task = task


class GraphError(ValueError):
    """The graph is malformed (duplicate task, unknown dependency, cycle)."""


class Task:
    def __init__(self, name: str, action: Action, depends_on: Iterable[str]) -> None:
        self.name = name
        self.action = action
        self.depends_on: Tuple[str, ...] = tuple(depends_on)


class TaskGraph:
    """
    Args:
        max_concurrency: Upper bound on tasks running at once (None: unbounded).
    """

    def __init__(self, max_concurrency: Optional[int] = None) -> None:
        self._tasks: Dict[str, Task] = {}
        self._max_concurrency = max_concurrency
        self.status: Dict[str, TaskStatus] = {}
        self.results: Dict[str, Any] = {}

    def add(self, name: str, action: Action, depends_on: Iterable[str] = ()) -> None:
        if name in self._tasks:
            raise GraphError(f"Duplicate task '{name}'")
        self._tasks[name] = Task(name, action, depends_on)
        self.status[name] = TaskStatus.PENDING

    def dependencies(self, name: str) -> Tuple[str, ...]:
        return self._tasks[name].depends_on

    def topological_order(self) -> List[str]:
        """Task names, dependencies first, insertion order among peers.

        Raises:
            GraphError: On an unknown dependency or a cycle.
        """
        for task in self._tasks.values():
            unknown = [d for d in task.depends_on if d not in self._tasks]
            if unknown:
                raise GraphError(
                    f"Task '{task.name}' depends on unknown task(s): {', '.join(unknown)}"
                )

        order: List[str] = []
        placed = set()
        remaining = list(self._tasks)
        while remaining:
            ready = [
                name
                for name in remaining
                if all(dep in placed for dep in self._tasks[name].depends_on)
            ]
            if not ready:
                raise GraphError(f"Dependency cycle among: {', '.join(remaining)}")
            order.extend(ready)
            placed.update(ready)
            remaining = [name for name in remaining if name not in placed]
        return order

    def _ready(self, order: List[str]) -> List[str]:
        return [
            name
            for name in order
            if self.status[name] is TaskStatus.PENDING
            and all(
                self.status[dep] is TaskStatus.DONE
                for dep in self._tasks[name].depends_on
            )
        ]

    async def run(self) -> Dict[str, Any]:
        """Run the graph to completion.

        Returns:
            Dict[str, Any]: task name => value returned by its action.

        Raises:
            GraphError: If the graph is malformed (nothing is started).
            TaskError: For the first task that failed.
        """
        order = self.topological_order()
        semaphore = (
            asyncio.Semaphore(self._max_concurrency) if self._max_concurrency else None
        )

        async def _execute(task: Task) -> Any:
            if semaphore is None:
                return await task.action()
            async with semaphore:
                return await task.action()

        running: Dict["asyncio.Task[Any]", str] = {}
        failure: Optional[Tuple[str, BaseException]] = None

        while True:
            if failure is None:
                for name in self._ready(order):
                    self.status[name] = TaskStatus.RUNNING
                    logger.debug("Starting task %s", name)
                    running[asyncio.ensure_future(_execute(self._tasks[name]))] = name

            if not running:
                break

            finished, _ = await asyncio.wait(
                list(running), return_when=asyncio.FIRST_COMPLETED
            )
            for future in finished:
                name = running.pop(future)
                exc = future.exception()
                if exc is None:
                    self.status[name] = TaskStatus.DONE
                    self.results[name] = future.result()
                    logger.debug("Task %s done", name)
                else:
                    self.status[name] = TaskStatus.FAILED
                    logger.error("Task %s failed: %s", name, exc)
                    if failure is None:
                        failure = (name, exc)

        if failure is not None:
            for name, status in self.status.items():
                if status is TaskStatus.PENDING:
                    self.status[name] = TaskStatus.CANCELLED
            failed_name, cause = failure
            raise TaskError(failed_name, cause) from cause

        return dict(self.results)
