from __future__ import annotations

from typing import Iterable, Optional, Sequence


class LiveImgError(RuntimeError):
    """Base class for every failure surfaced by a build."""

    exit_code = 1


class ParseError(LiveImgError):
    exit_code = 10

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class UnsupportedBuilderError(LiveImgError):
    exit_code = 11

    def __init__(self, builder: str, supported: Iterable[str]) -> None:
        self.builder = builder
        super().__init__(f"Unsupported builder {builder!r} (supported: {', '.join(sorted(supported))})")


class InvalidScriptDescriptorError(LiveImgError):
    exit_code = 12

    def __init__(self, message: str, *, script_id: Optional[str] = None) -> None:
        self.script_id = script_id
        super().__init__(f"script {script_id}: {message}" if script_id else message)


class DuplicateScriptIdError(LiveImgError):
    exit_code = 13

    def __init__(self, script_id: str, *, phase: str = "post") -> None:
        self.script_id = script_id
        self.phase = phase
        super().__init__(f"Duplicate {phase} script id: {script_id}")


class UnknownArchitectureError(LiveImgError):
    exit_code = 14

    def __init__(self, arch: str) -> None:
        self.arch = arch
        super().__init__(f"Unknown architecture: {arch}")


class MissingVariableError(LiveImgError):
    exit_code = 20

    def __init__(self, names: Iterable[str]) -> None:
        self.names = sorted(set(names))
        super().__init__(f"Template variables missing from context: {', '.join(self.names)}")


class StructuralValidationError(LiveImgError):
    exit_code = 21


class ScriptNotFoundError(LiveImgError):
    exit_code = 30

    def __init__(self, script_id: str, path: str) -> None:
        self.script_id = script_id
        self.path = path
        super().__init__(f"Script {script_id} not found: {path}")


class ScriptExecutionError(LiveImgError):
    exit_code = 31

    def __init__(self, script_id: str, returncode: int, *, arch: Optional[str] = None) -> None:
        self.script_id = script_id
        self.returncode = returncode
        self.arch = arch
        where = f" [{arch}]" if arch else ""
        super().__init__(f"Script {script_id} failed with exit code {returncode}{where}")


class ExternalToolError(LiveImgError):
    exit_code = 40

    def __init__(self, argv: Sequence[str], returncode: int, output: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        msg = f"Command failed ({returncode}): {' '.join(self.argv)}"
        if output:
            msg += f"\n{output}"
        super().__init__(msg)
