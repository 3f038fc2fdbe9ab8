"""
talosvirt/deployment/image.py

Image Builder. Produces the bootable Talos volume for the pinned OS and guest
agent extension versions and uploads it to the libvirt storage pool:

  1) run the Talos imager container (nocloud, amd64, raw disk + extension)
  2) convert the raw disk to qcow2
  3) replace the pool volume of the same name (delete, create, upload)

Every step is a single attempt; a failing step raises ImageBuildError naming it.
Re-running is safe, the volume is replaced by name.

Also resolves the installer image used by `machine.install.image` and by
upgrades, from the Talos image factory, for the same extension set.
"""

from __future__ import annotations

import logging
import os
import textwrap
from typing import List, Optional

import aiohttp

from talosvirt.models.settings import ClusterSettings
from talosvirt.utils.async_command_runner import run_command, CommandError
from talosvirt.utils.docker import is_docker_running, pull_image

logger = logging.getLogger(__name__)

RAW_IMAGE_NAME = "nocloud-amd64.raw"


class ImageBuildError(RuntimeError):
    """A step of the image build or upload failed."""


def image_volume_name(talos_version: str) -> str:
    """Storage pool volume name for an OS version."""
    return f"talos-{talos_version}.qcow2"


def imager_image(settings: ClusterSettings) -> str:
    return f"ghcr.io/siderolabs/imager:v{settings.talos_version}"


def guest_agent_extension(settings: ClusterSettings) -> str:
    return f"ghcr.io/siderolabs/qemu-guest-agent:{settings.qemu_guest_agent_version}"


def imager_profile(settings: ClusterSettings) -> str:
    """Imager profile producing a raw nocloud disk with the guest agent baked in."""
    version = settings.talos_version
    return textwrap.dedent(
        f"""\
        arch: amd64
        platform: nocloud
        secureboot: false
        version: v{version}
        input:
          kernel:
            path: /usr/install/amd64/vmlinuz
          initramfs:
            path: /usr/install/amd64/initramfs.xz
          baseInstaller:
            imageRef: ghcr.io/siderolabs/installer:v{version}
          systemExtensions:
            - imageRef: {guest_agent_extension(settings)}
        output:
          kind: image
          imageOptions:
            diskSize: 2147483648
            diskFormat: raw
          outFormat: raw
        """
    )


SCHEMATIC = """
customization:
  systemExtensions:
    officialExtensions:
      - siderolabs/qemu-guest-agent
"""
"""Image factory schematic matching the imager profile's extension set."""


async def _step(
    name: str,
    command: List[str],
    *,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
) -> str:
    try:
        return await run_command(
            command,
            sensitive=False,
            input_data=input_data,
            successful_return_codes=successful_return_codes,
        )
    except CommandError as exc:
        raise ImageBuildError(f"Image build step '{name}' failed: {exc}") from exc


async def build_image(settings: ClusterSettings) -> str:
    """
    Build and upload the boot volume.

    Returns:
        str: The volume name registered in `settings.storage_pool`.

    Raises:
        ImageBuildError: If Docker is unavailable or any build/upload step fails.
    """
    if not await is_docker_running():
        raise ImageBuildError("Docker is not running; the Talos imager needs it.")

    build_dir = os.path.abspath(settings.build_dir)
    os.makedirs(build_dir, exist_ok=True)
    raw_path = os.path.join(build_dir, RAW_IMAGE_NAME)
    volume = image_volume_name(settings.talos_version)
    qcow2_path = os.path.join(build_dir, volume)
    pool = settings.storage_pool

    for stale in (raw_path, qcow2_path):
        if os.path.exists(stale):
            os.remove(stale)

    try:
        await pull_image(imager_image(settings))
    except CommandError as exc:
        raise ImageBuildError(f"Image build step 'pull imager' failed: {exc}") from exc

    logger.info("Running Talos imager v%s", settings.talos_version)
    await _step(
        "imager",
        [
            "docker",
            "run",
            "--rm",
            "-i",
            "--privileged",
            "-v",
            "/dev:/dev",
            "-v",
            f"{build_dir}:/out",
            imager_image(settings),
            "-",
        ],
        input_data=imager_profile(settings),
    )
    if not os.path.isfile(raw_path):
        raise ImageBuildError(f"Talos imager did not produce {raw_path}")

    await _step("convert", ["qemu-img", "convert", "-O", "qcow2", raw_path, qcow2_path])

    logger.info("Uploading %s to storage pool %s", volume, pool)
    await _step(
        "delete volume",
        ["virsh", "vol-delete", "--pool", pool, volume],
        # absent volume: nothing to replace
        successful_return_codes=[0, 1],
    )
    await _step("create volume", ["virsh", "vol-create-as", pool, volume, "10M"])
    await _step("upload volume", ["virsh", "vol-upload", "--pool", pool, volume, qcow2_path])

    return volume


async def resolve_installer_image(settings: ClusterSettings) -> str:
    """
    Register the schematic with the image factory and return the installer image
    reference for the pinned version. The factory returns the same id for the
    same schematic, so this is stable across runs.
    """
    url = f"{settings.image_factory_url.rstrip('/')}/schematics"
    async with aiohttp.ClientSession() as session:
        async with session.post(url, data=SCHEMATIC.encode("utf-8")) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise RuntimeError(f"Image factory rejected schematic ({resp.status}): {text}")
            data = await resp.json(content_type=None)

    schematic_id = data.get("id") if isinstance(data, dict) else None
    if not schematic_id:
        raise RuntimeError("Image factory response did not include a schematic id.")

    host = settings.image_factory_url.split("://", 1)[-1].rstrip("/")
    return f"{host}/installer/{schematic_id}:v{settings.talos_version}"
