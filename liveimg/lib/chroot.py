from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Mapping, Sequence

from .command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

BIND_MOUNTS = ("/dev", "/proc", "/sys")


def chroot_cmd(
    target_root: str,
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    dry_run: bool = False,
) -> CmdResult:
    """Run a command inside target root."""

    return run_cmd(["chroot", target_root, *argv], check=check, env=env, dry_run=dry_run)


def mount_chroot_binds(target_root: str, *, dry_run: bool = False) -> None:
    # Minimal bind mounts for useradd, dracut and post-install hooks
    for src in BIND_MOUNTS:
        if not dry_run:
            Path(f"{target_root}{src}").mkdir(parents=True, exist_ok=True)
        run_cmd(["mount", "--bind", src, f"{target_root}{src}"], dry_run=dry_run)


def umount_chroot_binds(target_root: str, *, dry_run: bool = False) -> None:
    for src in reversed(BIND_MOUNTS):
        run_cmd(["umount", "-lf", f"{target_root}{src}"], check=False, dry_run=dry_run)


@contextmanager
def chroot_binds(target_root: str, *, dry_run: bool = False) -> Iterator[None]:
    mount_chroot_binds(target_root, dry_run=dry_run)
    try:
        yield
    finally:
        umount_chroot_binds(target_root, dry_run=dry_run)
