from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .errors import LiveImgError, ScriptExecutionError, ScriptNotFoundError
from .lib.chroot import chroot_binds, chroot_cmd
from .lib.command import CmdResult, run_cmd
from .manifest import ScriptDescriptor

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/sh"


@dataclass
class SequenceResult:
    """Outcome of one run; a failure leaves `completed` holding what ran before it."""

    completed: List[str] = field(default_factory=list)
    failed: Optional[str] = None
    exit_code: Optional[int] = None
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.failed is None

    def raise_for_failure(self, *, arch: Optional[str] = None) -> None:
        if self.failed is not None:
            raise ScriptExecutionError(self.failed, int(self.exit_code or 1), arch=arch)

    def to_dict(self) -> Dict[str, object]:
        return {"completed": list(self.completed), "failed": self.failed, "exit_code": self.exit_code}


def resolve_script_body(descriptor: ScriptDescriptor, scripts_dir: Optional[str | Path] = None) -> str:
    """Inline bodies verbatim; file references relative to scripts_dir (default: the declaring manifest's dir)."""

    if descriptor.inline is not None:
        return descriptor.inline

    base = Path(scripts_dir) if scripts_dir is not None else (descriptor.base_dir or Path.cwd())
    p = base / str(descriptor.file)
    if not p.is_file():
        raise ScriptNotFoundError(descriptor.id, str(p))
    return p.read_text(encoding="utf-8")


class ScriptSequencer:
    def __init__(
        self,
        *,
        scripts_dir: Optional[str | Path] = None,
        shell: str = DEFAULT_SHELL,
        arch: Optional[str] = None,
        dry_run: bool = False,
    ) -> None:
        self.scripts_dir = scripts_dir
        self.shell = shell
        self.arch = arch
        self.dry_run = dry_run

    def preflight(self, descriptors: Sequence[ScriptDescriptor]) -> Dict[str, str]:
        """Resolve every body before anything runs, so a missing file fails early."""
        return {d.id: resolve_script_body(d, self.scripts_dir) for d in descriptors}

    def run(self, descriptors: Sequence[ScriptDescriptor], target_root: str | Path) -> SequenceResult:
        bodies = self.preflight(descriptors)
        root = str(target_root)
        result = SequenceResult()

        for d in descriptors:
            logger.info("[%s] Running script %s (%s)", self.arch or "-", d.id, d.name)
            try:
                r = self._run_one(d, bodies[d.id], root)
                returncode, diagnostics = r.returncode, r.diagnostics
            except LiveImgError as e:
                # Missing interpreter, failed bind mount: the script did not run to completion.
                returncode, diagnostics = int(getattr(e, "returncode", 1) or 1), str(e)
            except OSError as e:
                returncode, diagnostics = 1, f"cannot stage script {d.id}: {e}"
            if returncode != 0:
                logger.error(
                    "[%s] Script %s failed with exit code %d\n%s",
                    self.arch or "-",
                    d.id,
                    returncode,
                    diagnostics,
                )
                result.failed = d.id
                result.exit_code = returncode
                result.output = diagnostics
                return result
            result.completed.append(d.id)

        return result

    def _argv(self, body: str, script_path: str) -> List[str]:
        if body.startswith("#!"):
            return [script_path]
        return [self.shell, script_path]

    def _env(self, descriptor: ScriptDescriptor, root: str) -> Dict[str, str]:
        env = {"CHROOT": root, "LIVEIMG_SCRIPT_ID": descriptor.id}
        if self.arch:
            env["LIVEIMG_ARCH"] = self.arch
        return env

    def _run_one(self, descriptor: ScriptDescriptor, body: str, root: str) -> CmdResult:
        env = self._env(descriptor, root)

        if descriptor.chroot:
            in_root = f"/tmp/liveimg-{descriptor.id}.sh"
            host_path = Path(root) / in_root.lstrip("/")
            if not self.dry_run:
                host_path.parent.mkdir(parents=True, exist_ok=True)
                host_path.write_text(body, encoding="utf-8")
                host_path.chmod(0o755)
            try:
                with chroot_binds(root, dry_run=self.dry_run):
                    return chroot_cmd(root, self._argv(body, in_root), check=False, env=env, dry_run=self.dry_run)
            finally:
                if not self.dry_run:
                    host_path.unlink(missing_ok=True)

        fd, tmp = tempfile.mkstemp(prefix=f"liveimg-{descriptor.id}-", suffix=".sh")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
            os.chmod(tmp, 0o755)
            return run_cmd(self._argv(body, tmp), check=False, env=env, cwd=root, dry_run=self.dry_run)
        finally:
            os.unlink(tmp)
