from __future__ import annotations

import pytest

from talosvirt.models.topology import (
    NodeRole,
    TopologyError,
    generate_topology,
)


def test_controllers_precede_workers():
    topology = generate_topology(3, 2, "10.17.3")

    assert [(n.name, n.address) for n in topology.nodes] == [
        ("c0", "10.17.3.10"),
        ("c1", "10.17.3.11"),
        ("c2", "10.17.3.12"),
        ("w0", "10.17.3.20"),
        ("w1", "10.17.3.21"),
    ]
    assert [n.role for n in topology.controllers] == [NodeRole.CONTROLLER] * 3
    assert [n.index for n in topology.workers] == [0, 1]
    assert topology.bootstrap_node.name == "c0"


def test_topology_is_deterministic():
    assert generate_topology(2, 3, "10.0.0") == generate_topology(2, 3, "10.0.0")


def test_controllers_only():
    topology = generate_topology(1, 0, "192.168.50")

    assert topology.workers == []
    assert topology.bootstrap_node.address == "192.168.50.10"


def test_largest_ranges_fit():
    topology = generate_topology(10, 235, "10.0.0")

    assert topology.controllers[-1].address == "10.0.0.19"
    assert topology.workers[-1].address == "10.0.0.254"


@pytest.mark.parametrize(
    "controllers, workers, prefix",
    [
        (0, 1, "10.0.0"),
        (1, -1, "10.0.0"),
        (11, 0, "10.0.0"),
        (1, 236, "10.0.0"),
        (1, 1, "10.0"),
        (1, 1, "10.0.300"),
    ],
)
def test_invalid_topologies_are_rejected(controllers, workers, prefix):
    with pytest.raises(TopologyError):
        generate_topology(controllers, workers, prefix)


def test_node_lookup():
    topology = generate_topology(1, 1, "10.0.0")

    assert topology.node("w0").address == "10.0.0.20"
    with pytest.raises(KeyError):
        topology.node("w1")
