"""Owner-only file persistence.

Features:
- Atomic replace (temp file, fsync, rename)
- Permission hardening with read-back verification
- Cross-process advisory locks (``flock``)
- Append-only writes
"""

import fcntl
import os
import stat
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Tuple

import structlog

from ..utils.constants import SECURE_DIR_MODE, SECURE_FILE_MODE

logger = structlog.get_logger()


def ensure_private_dir(directory: Path) -> None:
    """Create ``directory`` (and parents) readable only by its owner."""
    directory.mkdir(parents=True, exist_ok=True, mode=SECURE_DIR_MODE)


def file_mode(path: Path) -> int:
    """Permission bits of ``path``."""
    return stat.S_IMODE(path.stat().st_mode)


def harden_permissions(path: Path, mode: int = SECURE_FILE_MODE) -> Tuple[bool, int]:
    """Apply ``mode`` and read it back.

    Returns:
        Tuple of (mode_matches, actual_mode)
    """
    os.chmod(path, mode)
    actual = file_mode(path)
    return actual == mode, actual


def atomic_write_bytes(path: Path, data: bytes, mode: int = SECURE_FILE_MODE) -> None:
    """Replace ``path`` with ``data`` so readers never see a partial file."""
    ensure_private_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def append_line(path: Path, line: str, mode: int = SECURE_FILE_MODE) -> int:
    """Append one newline-terminated line; returns bytes written."""
    ensure_private_dir(path.parent)
    payload = (line.rstrip("\n") + "\n").encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, mode)
    try:
        return os.write(fd, payload)
    finally:
        os.close(fd)


@contextmanager
def exclusive_lock(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``lock_path`` for the block.

    Serializes read-modify-write cycles between concurrent processes.
    """
    ensure_private_dir(lock_path.parent)
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, SECURE_FILE_MODE)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
