from __future__ import annotations

import asyncio
from typing import List

import pytest

from talosvirt.deployment.scheduler import GraphError, TaskError, TaskGraph, TaskStatus


def _recorder(log: List[str], name: str, fail: bool = False, delay: float = 0.0):
    async def _run() -> str:
        log.append(f"start:{name}")
        await asyncio.sleep(delay)
        if fail:
            raise RuntimeError(f"{name} broke")
        log.append(f"end:{name}")
        return name

    return _run


def test_dependencies_complete_before_dependents():
    log: List[str] = []
    graph = TaskGraph()
    graph.add("a", _recorder(log, "a"))
    graph.add("b", _recorder(log, "b"), depends_on=["a"])
    graph.add("c", _recorder(log, "c"), depends_on=["a"])
    graph.add("d", _recorder(log, "d"), depends_on=["b", "c"])

    results = asyncio.run(graph.run())

    assert results == {"a": "a", "b": "b", "c": "c", "d": "d"}
    assert log.index("end:a") < log.index("start:b")
    assert log.index("end:a") < log.index("start:c")
    assert log.index("end:b") < log.index("start:d")
    assert log.index("end:c") < log.index("start:d")


def test_independent_tasks_run_concurrently():
    log: List[str] = []
    graph = TaskGraph()
    graph.add("x", _recorder(log, "x", delay=0.02))
    graph.add("y", _recorder(log, "y", delay=0.02))

    asyncio.run(graph.run())

    assert log[:2] == ["start:x", "start:y"]


def test_failure_stops_new_work_and_cancels_dependents():
    log: List[str] = []
    graph = TaskGraph()
    graph.add("ok", _recorder(log, "ok", delay=0.02))
    graph.add("bad", _recorder(log, "bad", fail=True))
    graph.add("after-bad", _recorder(log, "after-bad"), depends_on=["bad"])
    graph.add("after-ok", _recorder(log, "after-ok"), depends_on=["ok"])

    with pytest.raises(TaskError) as exc_info:
        asyncio.run(graph.run())

    assert exc_info.value.task == "bad"
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    # in-flight work settles, nothing new starts
    assert "end:ok" in log
    assert "start:after-ok" not in log
    assert graph.status["ok"] is TaskStatus.DONE
    assert graph.status["bad"] is TaskStatus.FAILED
    assert graph.status["after-bad"] is TaskStatus.CANCELLED
    assert graph.status["after-ok"] is TaskStatus.CANCELLED


def test_max_concurrency_bounds_running_tasks():
    running = 0
    peak = 0

    async def _task() -> None:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    graph = TaskGraph(max_concurrency=2)
    for i in range(5):
        graph.add(f"t{i}", _task)
    asyncio.run(graph.run())

    assert peak == 2


def test_unknown_dependency_is_rejected_before_running():
    log: List[str] = []
    graph = TaskGraph()
    graph.add("a", _recorder(log, "a"), depends_on=["missing"])

    with pytest.raises(GraphError):
        asyncio.run(graph.run())
    assert log == []


def test_cycle_is_rejected():
    graph = TaskGraph()
    graph.add("a", _recorder([], "a"), depends_on=["b"])
    graph.add("b", _recorder([], "b"), depends_on=["a"])

    with pytest.raises(GraphError):
        graph.topological_order()


def test_duplicate_task_is_rejected():
    graph = TaskGraph()
    graph.add("a", _recorder([], "a"))
    with pytest.raises(GraphError):
        graph.add("a", _recorder([], "a"))
