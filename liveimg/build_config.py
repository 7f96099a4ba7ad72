from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ParseError


@dataclass(frozen=True)
class BuildConfig:
    raw: Dict[str, Any] = field(default_factory=dict)

    def _section(self, name: str) -> Dict[str, Any]:
        return self.raw.get(name) or {}

    @property
    def work_dir(self) -> str:
        return str(self._section("paths").get("work_dir") or "build")

    @property
    def logs_dir(self) -> str:
        return str(self._section("paths").get("logs_dir") or "logs")

    @property
    def boot_config_path(self) -> str:
        # Relative to the target root.
        return str(self._section("boot").get("config_path") or "boot/efi/EFI/BOOT/refind.conf")

    @property
    def kernel_name(self) -> str:
        return str(self._section("boot").get("kernel") or "vmlinuz")

    @property
    def initramfs_name(self) -> str:
        return str(self._section("boot").get("initramfs") or "initramfs.img")

    @property
    def max_workers(self) -> int:
        return max(1, int(self._section("parallel").get("max_workers") or 2))

    @property
    def fail_fast(self) -> bool:
        return bool(self._section("parallel").get("fail_fast", False))

    @property
    def serialize_package_manager(self) -> bool:
        return bool(self._section("dnf").get("serialize", True))

    @property
    def dnf_binary(self) -> str:
        return str(self._section("dnf").get("binary") or "dnf")

    @property
    def script_shell(self) -> str:
        return str(self._section("scripts").get("shell") or "/bin/sh")

    @property
    def scripts_dir(self) -> Optional[str]:
        v = self._section("scripts").get("dir")
        return str(v) if v else None


def load_build_config(path: Optional[str]) -> BuildConfig:
    """Load build settings; no path means every default."""

    if path is None:
        return BuildConfig()

    p = Path(path)
    if not p.exists():
        raise ParseError("build config not found", path=path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ParseError("build config must be YAML", path=path)

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ParseError(f"invalid YAML: {e}", path=path) from e

    if not isinstance(raw, dict):
        raise ParseError("build config must contain a mapping/object", path=path)

    return BuildConfig(raw=raw)
