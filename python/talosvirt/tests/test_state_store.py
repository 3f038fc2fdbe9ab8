from __future__ import annotations

import asyncio
import os

from talosvirt.deployment.state import ClusterStateStore
from talosvirt.models.cluster_state import ClusterState


def test_missing_file_is_a_fresh_cluster(tmp_path):
    state = asyncio.run(ClusterStateStore(str(tmp_path / "state.json")).load())

    assert state.bootstrapped is False
    assert state.applied == {}


def test_updates_survive_a_new_store(tmp_path):
    path = str(tmp_path / "nested" / "state.json")
    store = ClusterStateStore(path)

    def _mark(state):
        state.bootstrapped = True
        state.applied["c0"] = "digest"

    asyncio.run(store.update(_mark))

    reloaded = asyncio.run(ClusterStateStore(path).load())
    assert reloaded.bootstrapped is True
    assert reloaded.is_applied("c0", "digest")
    assert not reloaded.is_applied("c0", "other")
    assert reloaded.was_configured("c0")
    assert not os.path.exists(path + ".tmp")


def test_loaded_state_is_a_copy(tmp_path):
    store = ClusterStateStore(str(tmp_path / "state.json"))
    state = asyncio.run(store.load())
    state.bootstrapped = True

    assert asyncio.run(store.snapshot()).bootstrapped is False


def test_concurrent_updates_are_all_kept(tmp_path):
    store = ClusterStateStore(str(tmp_path / "state.json"))

    def _record(name):
        def _mutate(state):
            state.applied[name] = name

        return _mutate

    async def _run():
        await asyncio.gather(*[store.update(_record(f"n{i}")) for i in range(10)])

    asyncio.run(_run())

    assert len(asyncio.run(ClusterStateStore(store.path).load()).applied) == 10


def test_clear_forgets_the_cluster(tmp_path):
    path = str(tmp_path / "state.json")
    store = ClusterStateStore(path)
    asyncio.run(store.update(lambda s: setattr(s, "bootstrapped", True)))

    asyncio.run(store.clear())

    assert not os.path.exists(path)
    assert asyncio.run(store.snapshot()).bootstrapped is False


def test_tracking_instances_forgets_removed_and_recreated_nodes():
    state = ClusterState(
        applied={"c0": "a", "w0": "b", "w1": "c"},
        instances={"c0": "c0-1", "w0": "w0-1", "w1": "w1-1"},
    )

    dropped = state.track_instances({"c0": "c0-1", "w0": "w0-2"})

    assert dropped == ["w0", "w1"]
    assert state.applied == {"c0": "a"}
    assert state.instances == {"c0": "c0-1", "w0": "w0-2"}
    assert not state.was_configured("w0")
