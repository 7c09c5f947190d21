from typing import Callable, List, Tuple, Type, TypeVar
import hashlib
import logging
import os
import re
import shutil
import subprocess
import time

T = TypeVar('T')


def _can_run(cmd: list) -> bool:
    try:
        # Short timeout so a stuck daemon does not hang startup
        r = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=3)
        return r.returncode == 0
    except (OSError, subprocess.SubprocessError):
        return False


def sudo_prefix(engine: str = "docker") -> List[str]:
    """Choose whether to use sudo for engine commands.

    Strategy:
    - If NO_SUDO=1 is set, never use sudo.
    - If running as root, don't use sudo.
    - If the current user can talk to the engine without sudo, don't use sudo.
    - If sudo is available and can run non-interactively, use ['sudo', '-n', '-E'].
    - Otherwise, don't use sudo (caller will see the engine's permission error).
    """
    if os.environ.get("NO_SUDO", "").strip() in ("1", "true", "True"):
        return []

    if hasattr(os, "geteuid") and os.geteuid() == 0:
        return []

    if shutil.which(engine) and _can_run([engine, "info"]):
        return []

    if shutil.which("sudo") and _can_run(["sudo", "-n", "true"]):
        return ["sudo", "-n", "-E"]

    return []


def retry(fn: Callable[[], T], *, max_attempts: int, initial_delay: float, max_delay: float,
          retry_on: Tuple[Type[BaseException], ...], sleep: Callable[[float], None] = time.sleep,
          describe: str = "operation") -> T:
    """Call fn until it succeeds, sleeping initial_delay, doubling up to max_delay between attempts.

    Only exceptions in retry_on are retried; the last one is re-raised once attempts run out.
    """
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == max_attempts:
                raise
            logging.warning(f"{describe} failed (attempt {attempt}/{max_attempts}): {e}; retrying in {delay:.0f}s")
            sleep(delay)
            delay = min(delay * 2, max_delay)
    raise ValueError("max_attempts must be at least 1")


def slugify(value: str) -> str:
    """Filesystem-safe name for a project id or image tag"""
    slug = re.sub(r'[^A-Za-z0-9._-]+', '_', value).strip('._-')
    return slug or 'project'


def digest_directory(path: str) -> str:
    """sha256 over relative paths, modes and contents of every file below path, in sorted order"""
    h = hashlib.sha256()
    if not os.path.isdir(path):
        return h.hexdigest()
    for root, dirs, files in os.walk(path):
        dirs.sort()
        for name in sorted(files):
            full = os.path.join(root, name)
            rel = os.path.relpath(full, path).replace(os.sep, '/')
            st = os.lstat(full)
            h.update(f"{rel}\0{st.st_mode:o}\0".encode('utf-8'))
            if os.path.islink(full):
                h.update(os.readlink(full).encode('utf-8'))
            else:
                with open(full, 'rb') as f:
                    for chunk in iter(lambda: f.read(65536), b''):
                        h.update(chunk)
            h.update(b'\0')
    return h.hexdigest()
