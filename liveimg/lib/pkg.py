from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Sequence

from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = "/var/cache/dnf"

_locks_guard = threading.Lock()
_cache_locks: Dict[str, threading.Lock] = {}


def package_cache_dir(options: Sequence[str]) -> str:
    """Cache directory dnf will use, from a `--setopt=cachedir=...` option if present."""
    cache_dir = DEFAULT_CACHE_DIR
    for opt in options:
        if opt.startswith("--setopt=cachedir="):
            cache_dir = opt.split("=", 2)[2]
    return cache_dir


def package_manager_lock(cache_dir: str) -> threading.Lock:
    """One lock per cache directory, shared by every target in this process."""
    key = str(Path(cache_dir))
    with _locks_guard:
        lock = _cache_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _cache_locks[key] = lock
        return lock


def dnf_install_argv(
    *,
    target_root: str,
    packages: Sequence[str],
    arch: Optional[str] = None,
    releasever: Optional[str] = None,
    repodir: Optional[str] = None,
    options: Sequence[str] = (),
    exclude: Sequence[str] = (),
    dnf_binary: str = "dnf",
) -> list[str]:
    argv = [dnf_binary, "install", "-y", f"--installroot={target_root}"]
    if releasever:
        argv.append(f"--releasever={releasever}")
    if arch:
        argv.append(f"--forcearch={arch}")
    if repodir:
        argv.append(f"--setopt=reposdir={repodir}")
    # Options are passed through untouched.
    argv += list(options)
    argv += [f"--exclude={pat}" for pat in exclude]
    argv += list(packages)
    return argv


def dnf_install(
    *,
    target_root: str,
    packages: Sequence[str],
    arch: Optional[str] = None,
    releasever: Optional[str] = None,
    repodir: Optional[str] = None,
    options: Sequence[str] = (),
    exclude: Sequence[str] = (),
    dnf_binary: str = "dnf",
    serialize: bool = True,
    dry_run: bool = False,
) -> Optional[CmdResult]:
    if not packages:
        logger.info("No packages to install into %s", target_root)
        return None

    argv = dnf_install_argv(
        target_root=target_root,
        packages=packages,
        arch=arch,
        releasever=releasever,
        repodir=repodir,
        options=options,
        exclude=exclude,
        dnf_binary=dnf_binary,
    )

    if not serialize:
        return run_cmd(argv, dry_run=dry_run)

    cache_dir = package_cache_dir(options)
    lock = package_manager_lock(cache_dir)
    if lock.locked():
        logger.info("Waiting for package cache %s (in use by another target)", cache_dir)
    with lock:
        return run_cmd(argv, dry_run=dry_run)
