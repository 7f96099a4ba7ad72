from __future__ import annotations

import logging
from pathlib import Path

import pytest

from liveimg.errors import ExternalToolError, ScriptExecutionError, ScriptNotFoundError
from liveimg.manifest import ScriptDescriptor
from liveimg.scripts import ScriptSequencer, resolve_script_body


def _inline(script_id: str, body: str, *, chroot: bool = False) -> ScriptDescriptor:
    return ScriptDescriptor(id=script_id, name=script_id, inline=body, chroot=chroot)


def test_halts_on_first_failure(tmp_path: Path) -> None:
    scripts = [
        _inline("a", 'touch "$CHROOT/a"'),
        _inline("b", "exit 3"),
        _inline("c", 'touch "$CHROOT/c"'),
    ]

    result = ScriptSequencer().run(scripts, tmp_path)

    assert not result.ok
    assert result.completed == ["a"]
    assert result.failed == "b"
    assert result.exit_code == 3
    assert (tmp_path / "a").exists()
    assert not (tmp_path / "c").exists()

    with pytest.raises(ScriptExecutionError) as exc:
        result.raise_for_failure(arch="x86_64")
    assert exc.value.script_id == "b"
    assert exc.value.returncode == 3
    assert exc.value.arch == "x86_64"


def test_all_succeed_in_order(tmp_path: Path) -> None:
    scripts = [_inline(str(i), f'echo {i} >> "$CHROOT/order"') for i in range(3)]

    result = ScriptSequencer(arch="aarch64").run(scripts, tmp_path)

    assert result.ok
    assert result.completed == ["0", "1", "2"]
    assert (tmp_path / "order").read_text().split() == ["0", "1", "2"]
    result.raise_for_failure()


def test_script_environment(tmp_path: Path) -> None:
    body = 'printf "%s %s" "$LIVEIMG_SCRIPT_ID" "$LIVEIMG_ARCH" > "$CHROOT/env"'
    result = ScriptSequencer(arch="x86_64").run([_inline("env-check", body)], tmp_path)
    assert result.ok
    assert (tmp_path / "env").read_text() == "env-check x86_64"


def test_file_script_relative_to_manifest_dir(tmp_path: Path) -> None:
    (tmp_path / "scripts").mkdir()
    (tmp_path / "scripts/hello.sh").write_text('echo hi > "$CHROOT/hello"\n', encoding="utf-8")
    root = tmp_path / "root"
    root.mkdir()
    d = ScriptDescriptor(id="hello", name="Hello", file="scripts/hello.sh", chroot=False, base_dir=tmp_path)

    result = ScriptSequencer().run([d], root)

    assert result.ok
    assert (root / "hello").read_text() == "hi\n"


def test_scripts_dir_overrides_manifest_dir(tmp_path: Path) -> None:
    (tmp_path / "other").mkdir()
    (tmp_path / "other/x.sh").write_text("exit 0\n", encoding="utf-8")
    d = ScriptDescriptor(id="x", name="x", file="x.sh", base_dir=tmp_path / "elsewhere")
    assert resolve_script_body(d, tmp_path / "other") == "exit 0\n"


def test_missing_file_fails_before_anything_runs(tmp_path: Path) -> None:
    scripts = [
        _inline("first", 'touch "$CHROOT/first"'),
        ScriptDescriptor(id="gone", name="gone", file="scripts/gone.sh", chroot=False, base_dir=tmp_path),
    ]

    with pytest.raises(ScriptNotFoundError) as exc:
        ScriptSequencer().run(scripts, tmp_path)

    assert exc.value.script_id == "gone"
    assert exc.value.path.endswith("scripts/gone.sh")
    assert not (tmp_path / "first").exists()


def test_shebang_scripts_execute_directly() -> None:
    seq = ScriptSequencer(shell="/bin/bash")
    assert seq._argv("#!/usr/bin/env python3\nprint(1)\n", "/tmp/x.sh") == ["/tmp/x.sh"]
    assert seq._argv("echo hi\n", "/tmp/x.sh") == ["/bin/bash", "/tmp/x.sh"]


def test_chroot_scripts_dry_run(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    result = ScriptSequencer(dry_run=True).run([_inline("in-root", "exit 1", chroot=True)], tmp_path)

    assert result.completed == ["in-root"]
    messages = [r.getMessage() for r in caplog.records]
    assert any(m.startswith("CMD mount --bind /dev") for m in messages)
    assert any(m == f"CMD chroot {tmp_path} /bin/sh /tmp/liveimg-in-root.sh" for m in messages)
    assert any(m.startswith("CMD umount -lf") for m in messages)
    assert not (tmp_path / "tmp/liveimg-in-root.sh").exists()


def test_missing_interpreter_is_a_script_failure(tmp_path: Path) -> None:
    scripts = [
        _inline("direct", '#!/bin/sh\ntouch "$CHROOT/direct"\n'),
        _inline("via-shell", 'touch "$CHROOT/via-shell"'),
        _inline("after", 'touch "$CHROOT/after"'),
    ]

    result = ScriptSequencer(shell="/nonexistent/sh").run(scripts, tmp_path)

    assert result.completed == ["direct"]
    assert result.failed == "via-shell"
    assert result.exit_code == 127
    assert "/nonexistent/sh" in result.output
    assert (tmp_path / "direct").exists()
    assert not (tmp_path / "after").exists()

    with pytest.raises(ScriptExecutionError) as exc:
        result.raise_for_failure()
    assert exc.value.returncode == 127


def test_failed_bind_mount_is_a_script_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_mount(root, *, dry_run=False):
        raise ExternalToolError(["mount", "--bind", "/dev", f"{root}/dev"], 32, "mount: permission denied")

    monkeypatch.setattr("liveimg.lib.chroot.mount_chroot_binds", failing_mount)
    scripts = [_inline("host", 'touch "$CHROOT/host"'), _inline("in-root", "true", chroot=True)]

    result = ScriptSequencer().run(scripts, tmp_path)

    assert result.completed == ["host"]
    assert result.failed == "in-root"
    assert result.exit_code == 32
    assert "permission denied" in result.output
    assert not (tmp_path / "tmp/liveimg-in-root.sh").exists()
