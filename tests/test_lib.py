from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from liveimg.errors import ExternalToolError
from liveimg.lib import pkg
from liveimg.lib.command import CmdResult, run_cmd
from liveimg.lib.users import add_user, useradd_argv
from liveimg.manifest import User


def test_run_cmd_captures_output() -> None:
    r = run_cmd(["sh", "-c", "echo out; echo err >&2"])
    assert r.returncode == 0
    assert r.stdout == "out\n"
    assert r.stderr == "err\n"


def test_run_cmd_failure_carries_diagnostics() -> None:
    with pytest.raises(ExternalToolError) as exc:
        run_cmd(["sh", "-c", "echo broken repo >&2; exit 4"])
    assert exc.value.returncode == 4
    assert exc.value.output == "broken repo"
    assert exc.value.argv[0] == "sh"


def test_run_cmd_unchecked() -> None:
    assert run_cmd(["sh", "-c", "exit 2"], check=False).returncode == 2


def test_run_cmd_missing_tool() -> None:
    with pytest.raises(ExternalToolError) as exc:
        run_cmd(["definitely-not-a-real-tool-xyz"])
    assert exc.value.returncode == 127


def test_run_cmd_dry_run_does_not_execute(tmp_path: Path) -> None:
    marker = tmp_path / "m"
    r = run_cmd(["touch", str(marker)], dry_run=True)
    assert r.returncode == 0
    assert not marker.exists()


def test_dnf_install_argv() -> None:
    argv = pkg.dnf_install_argv(
        target_root="/build/x86_64/rootfs",
        packages=["filesystem", "kernel", "grub2-pc"],
        arch="x86_64",
        releasever="40",
        repodir="/repo/repodir",
        options=["--nogpgcheck", "--setopt=keepcache=True"],
        exclude=["fedora-release*"],
    )
    assert argv == [
        "dnf",
        "install",
        "-y",
        "--installroot=/build/x86_64/rootfs",
        "--releasever=40",
        "--forcearch=x86_64",
        "--setopt=reposdir=/repo/repodir",
        "--nogpgcheck",
        "--setopt=keepcache=True",
        "--exclude=fedora-release*",
        "filesystem",
        "kernel",
        "grub2-pc",
    ]


def test_package_cache_dir() -> None:
    assert pkg.package_cache_dir([]) == pkg.DEFAULT_CACHE_DIR
    assert pkg.package_cache_dir(["--nogpgcheck", "--setopt=cachedir=/srv/cache"]) == "/srv/cache"


def test_lock_is_shared_per_cache_dir() -> None:
    assert pkg.package_manager_lock("/srv/a") is pkg.package_manager_lock("/srv/a/")
    assert pkg.package_manager_lock("/srv/a") is not pkg.package_manager_lock("/srv/b")


def test_dnf_install_holds_cache_lock(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: List[bool] = []

    def fake_run_cmd(argv, **kwargs):
        seen.append(pkg.package_manager_lock("/srv/locked").locked())
        return CmdResult(argv=list(argv), returncode=0, stdout="", stderr="")

    monkeypatch.setattr(pkg, "run_cmd", fake_run_cmd)

    pkg.dnf_install(target_root="/r", packages=["a"], options=["--setopt=cachedir=/srv/locked"])
    pkg.dnf_install(target_root="/r", packages=["a"], options=["--setopt=cachedir=/srv/locked"], serialize=False)

    assert seen == [True, False]


def test_dnf_install_nothing_to_do() -> None:
    assert pkg.dnf_install(target_root="/r", packages=[]) is None


def test_useradd_argv() -> None:
    user = User(
        username="live",
        password="$y$hash",
        groups=("wheel", "video"),
        shell="/bin/bash",
        uid=1000,
        gid=1000,
    )
    assert useradd_argv(user) == [
        "useradd",
        "-u",
        "1000",
        "-g",
        "1000",
        "-s",
        "/bin/bash",
        "-p",
        "$y$hash",
        "-m",
        "-G",
        "wheel,video",
        "live",
    ]
    assert useradd_argv(User(username="svc", create_home=False)) == ["useradd", "-M", "svc"]


def test_add_user_writes_ssh_keys(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[List[str]] = []
    monkeypatch.setattr("liveimg.lib.users.chroot_cmd", lambda root, argv, **kw: calls.append([root, *argv]))

    add_user(str(tmp_path), User(username="live", ssh_keys=("ssh-ed25519 AAA one", "ssh-rsa BBB two")))

    assert calls == [[str(tmp_path), "useradd", "-m", "live"]]
    keys = tmp_path / "home/live/.ssh/authorized_keys"
    assert keys.read_text() == "ssh-ed25519 AAA one\nssh-rsa BBB two\n"
    assert keys.stat().st_mode & 0o777 == 0o600


def test_add_user_dry_run_writes_nothing(tmp_path: Path) -> None:
    add_user(str(tmp_path), User(username="live", ssh_keys=("k",)), dry_run=True)
    assert not (tmp_path / "home").exists()
