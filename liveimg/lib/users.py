from __future__ import annotations

import logging
from pathlib import Path

from ..manifest import User
from .chroot import chroot_cmd

logger = logging.getLogger(__name__)


def useradd_argv(user: User) -> list[str]:
    args: list[str] = []

    if user.uid is not None:
        args += ["-u", str(user.uid)]
    if user.gid is not None:
        args += ["-g", str(user.gid)]
    if user.shell:
        args += ["-s", user.shell]
    if user.password:
        # Already hashed with crypt(3) / mkpasswd(1).
        args += ["-p", user.password]

    args.append("-m" if user.create_home else "-M")

    if user.groups:
        args += ["-G", ",".join(user.groups)]

    args.append(user.username)
    return ["useradd", *args]


def add_user(target_root: str, user: User, *, dry_run: bool = False) -> None:
    logger.info("Adding user %s to %s", user.username, target_root)
    chroot_cmd(target_root, useradd_argv(user), dry_run=dry_run)

    if not user.ssh_keys:
        return

    ssh_dir = Path(target_root) / "home" / user.username / ".ssh"
    auth_keys = ssh_dir / "authorized_keys"
    if dry_run:
        logger.info("Would write %d ssh key(s) to %s", len(user.ssh_keys), auth_keys)
        return

    ssh_dir.mkdir(parents=True, exist_ok=True)
    auth_keys.write_text("".join(f"{k}\n" for k in user.ssh_keys), encoding="utf-8")
    auth_keys.chmod(0o600)
