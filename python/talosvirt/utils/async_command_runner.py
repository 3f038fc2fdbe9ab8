"""
talosvirt/utils/async_command_runner.py

Asynchronous runner for the external tools the orchestrator drives (talosctl,
terraform, docker, qemu-img, virsh, helm). Every external call in the project
goes through `run_command`, so failures surface uniformly as `CommandError`.

Usage example:
    from talosvirt.utils.async_command_runner import run_command, CommandError

    try:
        out = await run_command(["talosctl", "version", "--client"])
    except CommandError as err:
        print(f"talosctl failed: {err}")
"""

from __future__ import annotations

import os
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from talosvirt.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Represents a failure when executing an external command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
    """

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.return_code = return_code


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 1,
    retry_delay: float = 1.0,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously.

    A single attempt is made by default: configuration and lifecycle commands
    must fail fast, and only polling call sites opt into retries.

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, the command line, stdout and stderr are left out of the raised
            error and of debug logs (talosctl output can carry key material).
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, passed to stdin.
        successful_return_codes (Optional[List[int]]):
            Return codes not treated as errors. Defaults to [0].
        retries (int):
            Total attempts. Defaults to 1.
        retry_delay (float):
            Delay in seconds between attempts.
        error_parser (Optional[Callable[[str], Optional[str]]]):
            Receives stderr; a non-None return becomes the CommandError message.

    Returns:
        str: The captured, stripped stdout of the command.

    Raises:
        CommandError: If the command cannot be started or exits with a code not in
            `successful_return_codes` after all attempts.
    """
    ok_codes = successful_return_codes or [0]

    @async_retry(retries=retries, delay=retry_delay, retry_on=(CommandError,))
    async def _inner_run_command() -> str:
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

        if not sensitive:
            logger.debug("Running: %s", " ".join(command))

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"Executable not found: {command[0]}") from exc

        stdout_bytes, stderr_bytes = await proc.communicate(
            input=input_data.encode() if input_data else None
        )
        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode not in ok_codes:
            short_message = error_parser(stderr_str) if error_parser else None
            if short_message is not None:
                raise CommandError(short_message, proc.returncode)

            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )

            raise CommandError(
                f"{command[0]} failed with return code {proc.returncode}.{detail}",
                proc.returncode,
            )

        return stdout_str

    return await _inner_run_command()
