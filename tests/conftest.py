from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import pytest
import yaml

from liveimg.lib.command import CmdResult

REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def template_text() -> str:
    return (REPO_ROOT / "templates/refind.conf.tpl").read_text(encoding="utf-8")


@pytest.fixture
def write_manifest(tmp_path: Path):
    def _write(data: Dict[str, Any], name: str = "manifest.yaml") -> Path:
        p = tmp_path / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return p

    return _write


@pytest.fixture
def dnf_calls(monkeypatch: pytest.MonkeyPatch) -> List[List[str]]:
    """Record package manager invocations instead of running dnf."""

    calls: List[List[str]] = []

    def fake_run_cmd(argv, **kwargs):
        calls.append(list(argv))
        return CmdResult(argv=list(argv), returncode=0, stdout="", stderr="")

    monkeypatch.setattr("liveimg.lib.pkg.run_cmd", fake_run_cmd)
    return calls


def e2e_manifest(**overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "builder": "dnf",
        "distro": "Ultramarine",
        "kernel_cmdline": "quiet",
        "iso": {"volume_id": "ULTRAMARINE"},
        "scripts": {
            "post": [
                {"id": "marker", "name": "Write marker", "chroot": False, "inline": 'touch "$CHROOT/post-ran"\n'},
            ]
        },
        "dnf": {
            "releasever": 40,
            "options": ["--nogpgcheck"],
            "exclude": ["fedora-release*"],
            "packages": ["filesystem", "kernel"],
            "arch_packages": {"x86_64": ["grub2-pc"], "aarch64": ["shim-aa64"]},
        },
    }
    data.update(overrides)
    return data
