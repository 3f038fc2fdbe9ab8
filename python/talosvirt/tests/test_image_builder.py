"""
talosvirt/tests/test_image_builder.py

Image build sequence with the external tools replaced by a recorder.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, List, Optional

import pytest

from talosvirt.deployment import image
from talosvirt.deployment.image import (
    ImageBuildError,
    build_image,
    image_volume_name,
    imager_profile,
)
from talosvirt.tests.fakes import make_settings
from talosvirt.utils.async_command_runner import CommandError


def _patch_tools(monkeypatch, fail_on: Optional[str] = None, docker_up: bool = True):
    recorded: List[List[str]] = []

    async def fake_run_command(command: List[str], **kwargs: Any) -> str:
        recorded.append(command)
        if fail_on is not None and command[:2] == fail_on.split():
            raise CommandError(f"{command[0]} failed with return code 1.", 1)
        if command[:2] == ["docker", "run"]:
            out_dir = command[command.index("-v", 6) + 1].split(":")[0]
            with open(os.path.join(out_dir, image.RAW_IMAGE_NAME), "wb") as f:
                f.write(b"raw")
        return ""

    async def fake_is_docker_running() -> bool:
        return docker_up

    async def fake_pull_image(name: str) -> None:
        recorded.append(["docker", "pull", name])

    monkeypatch.setattr(image, "run_command", fake_run_command)
    monkeypatch.setattr(image, "is_docker_running", fake_is_docker_running)
    monkeypatch.setattr(image, "pull_image", fake_pull_image)
    return recorded


def test_volume_name_follows_os_version():
    assert image_volume_name("1.8.3") == "talos-1.8.3.qcow2"


def test_profile_pins_versions(tmp_path):
    profile = imager_profile(make_settings(tmp_path))

    assert "version: v1.8.3" in profile
    assert "ghcr.io/siderolabs/qemu-guest-agent:9.1.2" in profile
    assert "platform: nocloud" in profile


def test_build_replaces_volume_by_name(tmp_path, monkeypatch):
    recorded = _patch_tools(monkeypatch)
    settings = make_settings(tmp_path)

    volume = asyncio.run(build_image(settings))

    assert volume == "talos-1.8.3.qcow2"
    assert [c[:2] for c in recorded] == [
        ["docker", "pull"],
        ["docker", "run"],
        ["qemu-img", "convert"],
        ["virsh", "vol-delete"],
        ["virsh", "vol-create-as"],
        ["virsh", "vol-upload"],
    ]
    assert recorded[0][2] == "ghcr.io/siderolabs/imager:v1.8.3"
    assert recorded[-1] == [
        "virsh",
        "vol-upload",
        "--pool",
        "default",
        volume,
        os.path.join(os.path.abspath(settings.build_dir), volume),
    ]


@pytest.mark.parametrize("step", ["docker run", "qemu-img convert", "virsh vol-upload"])
def test_failed_step_is_fatal(tmp_path, monkeypatch, step):
    recorded = _patch_tools(monkeypatch, fail_on=step)

    with pytest.raises(ImageBuildError):
        asyncio.run(build_image(make_settings(tmp_path)))

    assert recorded[-1][:2] == step.split()


def test_docker_must_be_running(tmp_path, monkeypatch):
    recorded = _patch_tools(monkeypatch, docker_up=False)

    with pytest.raises(ImageBuildError):
        asyncio.run(build_image(make_settings(tmp_path)))
    assert recorded == []


def test_steps_pass_stdin_and_accepted_return_codes(tmp_path, monkeypatch):
    _patch_tools(monkeypatch)
    options: Dict[str, Dict[str, Any]] = {}
    recording_run = image.run_command

    async def fake_run_command(command: List[str], **kwargs: Any) -> str:
        options[" ".join(command[:2])] = kwargs
        return await recording_run(command, **kwargs)

    monkeypatch.setattr(image, "run_command", fake_run_command)
    settings = make_settings(tmp_path)

    asyncio.run(build_image(settings))

    assert options["docker run"]["input_data"] == imager_profile(settings)
    assert options["virsh vol-delete"]["successful_return_codes"] == [0, 1]
    assert options["virsh vol-upload"]["successful_return_codes"] is None
    assert all(o["sensitive"] is False for o in options.values())
