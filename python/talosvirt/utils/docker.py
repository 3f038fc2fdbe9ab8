"""
talosvirt/utils/docker.py

Docker helpers for the image builder, which runs the Talos imager as a container.
"""

from talosvirt.utils.async_command_runner import run_command, CommandError


async def is_docker_running() -> bool:
    """True if the Docker daemon answers `docker info`."""
    try:
        await run_command(["docker", "info"], sensitive=True)
    except CommandError:
        return False
    return True


async def pull_image(image: str) -> None:
    """Pull `image` up front so a registry failure is not mistaken for an imager failure."""
    await run_command(["docker", "pull", "--quiet", image], sensitive=False, retries=3)
