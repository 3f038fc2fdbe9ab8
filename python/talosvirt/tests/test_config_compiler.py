"""
talosvirt/tests/test_config_compiler.py

Overlay merging and the role/node configuration documents.
"""

from __future__ import annotations

import asyncio

import pytest
import yaml

from talosvirt.models.talos import SecretMaterial
from talosvirt.models.topology import NodeRole, generate_topology
from talosvirt.talos.config import (
    ConfigurationCompiler,
    document_digest,
    role_overlays,
    specialize_for_node,
)
from talosvirt.talos.manifests import (
    DOCUMENT_SEPARATOR,
    join_manifests,
    render_load_balancer_fragment,
)
from talosvirt.tests.fakes import fake_generator, make_settings, manifest_renderer
from talosvirt.utils.merge import apply_overlays, merge_overlay

SECRETS = SecretMaterial(path="/tmp/secrets.yaml", digest="fake")
IMAGE = "factory.talos.dev/installer/0123abcd:v1.8.3"


def _compile(tmp_path, role, manifest="kind: DaemonSet"):
    settings = make_settings(tmp_path)
    compiler = ConfigurationCompiler(
        settings,
        generator=fake_generator,
        manifest_renderer=manifest_renderer(manifest),
    )
    return asyncio.run(compiler.compile(role, SECRETS, IMAGE))


def test_merge_recurses_into_mappings_and_replaces_the_rest():
    base = {"a": {"b": 1, "c": [1, 2]}, "d": "x"}
    overlay = {"a": {"c": [3], "e": 2}, "d": {"nested": True}}

    assert merge_overlay(base, overlay) == {
        "a": {"b": 1, "c": [3], "e": 2},
        "d": {"nested": True},
    }


def test_merge_does_not_mutate_inputs():
    base = {"machine": {"network": {}}}
    overlay = {"machine": {"network": {"hostname": "c0"}}}

    merged = merge_overlay(base, overlay)
    merged["machine"]["network"]["hostname"] = "changed"

    assert base == {"machine": {"network": {}}}
    assert overlay == {"machine": {"network": {"hostname": "c0"}}}


def test_last_overlay_wins():
    result = apply_overlays({"k": 0}, [{"k": 1}, {"k": 2}])
    assert result == {"k": 2}


def test_base_overlay_applies_to_both_roles(tmp_path):
    for role in (NodeRole.CONTROLLER, NodeRole.WORKER):
        document = _compile(tmp_path, role)
        assert document["machine"]["install"] == {
            "disk": "/dev/vda",
            "image": IMAGE,
            "extraKernelArgs": ["net.ifnames=0"],
        }
        assert document["cluster"]["network"]["cni"] == {"name": "none"}
        assert document["cluster"]["proxy"] == {"disabled": True}
        assert document["machine"]["features"]["kubePrism"] == {
            "enabled": True,
            "port": 7445,
        }


def test_controller_gets_vip_and_inline_manifest(tmp_path):
    document = _compile(tmp_path, NodeRole.CONTROLLER, manifest="kind: DaemonSet")

    interface = document["machine"]["network"]["interfaces"][0]
    assert interface["dhcp"] is True
    assert interface["vip"] == {"ip": "10.0.0.9"}
    assert document["cluster"]["inlineManifests"] == [
        {"name": "cilium", "contents": "kind: DaemonSet"}
    ]


def test_worker_has_no_vip_or_manifest(tmp_path):
    document = _compile(tmp_path, NodeRole.WORKER)

    assert "interfaces" not in document["machine"]["network"]
    assert "inlineManifests" not in document["cluster"]


def test_controller_overlays_require_manifest(tmp_path):
    settings = make_settings(tmp_path)
    with pytest.raises(ValueError):
        role_overlays(NodeRole.CONTROLLER, settings, IMAGE, None)


def test_hostname_applied_last_without_touching_role_document(tmp_path):
    role_document = _compile(tmp_path, NodeRole.CONTROLLER)
    role_document["machine"]["network"]["hostname"] = "shared"
    snapshot = yaml.safe_dump(role_document)
    topology = generate_topology(2, 0, "10.0.0")

    rendered = [
        yaml.safe_load(specialize_for_node(role_document, node))
        for node in topology.controllers
    ]

    assert [d["machine"]["network"]["hostname"] for d in rendered] == ["c0", "c1"]
    assert rendered[0]["machine"]["network"]["interfaces"][0]["vip"] == {"ip": "10.0.0.9"}
    assert yaml.safe_dump(role_document) == snapshot


def test_rendering_is_deterministic(tmp_path):
    node = generate_topology(1, 0, "10.0.0").bootstrap_node
    first = specialize_for_node(_compile(tmp_path, NodeRole.CONTROLLER), node)
    second = specialize_for_node(_compile(tmp_path, NodeRole.CONTROLLER), node)

    assert first == second
    assert document_digest(first) == document_digest(second)


def test_inline_manifest_concatenation(tmp_path):
    settings = make_settings(tmp_path)
    fragment = render_load_balancer_fragment(settings)

    joined = join_manifests("kind: DaemonSet\n", fragment)

    assert joined == "kind: DaemonSet\n" + DOCUMENT_SEPARATOR + fragment
    assert joined.endswith("operator: DoesNotExist\n")
    pool = list(yaml.safe_load_all(fragment))[0]
    assert pool["spec"]["blocks"] == [{"start": "10.0.0.130", "stop": "10.0.0.230"}]
