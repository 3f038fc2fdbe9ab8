"""
talosvirt/utils/ephemeral_file.py

Async context manager for short-lived files holding secret-bearing documents
(compiled machine configurations, imager profiles, Terraform variables).

Files go to `/dev/shm` when it exists so that key material never reaches a
disk, and to the platform temp directory otherwise. The file and its private
directory are removed on exit.
"""

import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiofiles

SHM_DIR = "/dev/shm"


def _default_parent_dir() -> str:
    return SHM_DIR if os.path.isdir(SHM_DIR) else tempfile.gettempdir()


@asynccontextmanager
async def ephemeral_document(
    file_name: str,
    content: str,
    *,
    prefix: str = "talosvirt-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Write `content` to a private ephemeral file and yield its path.

    Args:
        file_name: Name of the file inside the private ephemeral directory.
        content: Text written to the file before it is yielded.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where the ephemeral directory is created. Defaults to
            `/dev/shm`, falling back to the temp directory.

    Yields:
        str: Absolute path of the written file (mode 0600).
    """
    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir or _default_parent_dir(), prefix=prefix)
    path = os.path.join(ephemeral_dir, file_name)

    try:
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(content)
        os.chmod(path, 0o600)
        yield path
    finally:
        for item in os.listdir(ephemeral_dir):
            os.remove(os.path.join(ephemeral_dir, item))
        os.rmdir(ephemeral_dir)
