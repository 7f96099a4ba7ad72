from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from .errors import ParseError


def save_build_report(path: str | Path, report: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def load_build_report(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise ParseError(f"cannot read build report: {e.strerror or e}", path=str(p)) from e
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e}", path=str(p)) from e
    if not isinstance(data, dict):
        raise ParseError("build report must contain an object", path=str(p))
    return data
