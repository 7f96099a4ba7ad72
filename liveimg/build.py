from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .build_config import BuildConfig
from .build_report import save_build_report
from .build_steps import ALL_STEPS, BuildCtx
from .errors import LiveImgError
from .logging_utils import target_log
from .manifest import Manifest

logger = logging.getLogger(__name__)

DEFAULT_OUT_DIR = "build"
REPORT_NAME = "build-report.json"
LOG_NAME = "build.log"


@dataclass(frozen=True)
class BuildResult:
    arch: str
    packages: List[str]
    menu: str
    menu_path: str
    steps: List[str]
    pre_scripts: Dict[str, Any] = field(default_factory=dict)
    post_scripts: Dict[str, Any] = field(default_factory=dict)
    users: List[str] = field(default_factory=list)
    log_path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "arch": self.arch,
            "packages": list(self.packages),
            "menu_path": self.menu_path,
            "steps": list(self.steps),
            "pre_scripts": dict(self.pre_scripts),
            "post_scripts": dict(self.post_scripts),
            "users": list(self.users),
            "log_path": self.log_path,
        }


@dataclass(frozen=True)
class TargetOutcome:
    arch: str
    result: Optional[BuildResult] = None
    error: Optional[Exception] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.result is not None


def build_image(
    manifest: Manifest,
    arch: str,
    template_text: str,
    *,
    cfg: Optional[BuildConfig] = None,
    out_dir: str = DEFAULT_OUT_DIR,
    dry_run: bool = False,
) -> BuildResult:
    """Build one target; the first failing step aborts the rest and its error propagates as is."""

    ctx = BuildCtx(
        cfg=cfg or BuildConfig(),
        manifest=manifest,
        arch=arch,
        template_text=template_text,
        out_dir=out_dir,
        dry_run=dry_run,
    )
    state: Dict[str, Any] = {"steps": []}

    with target_log(ctx.target_dir / LOG_NAME) as log_path:
        logger.info("=== Build target: %s ===", arch)
        for fn in ALL_STEPS:
            fn(ctx=ctx, state=state)

        result = BuildResult(
            arch=arch,
            packages=list(state.get("packages") or []),
            menu=str(state.get("menu") or ""),
            menu_path=str(state.get("menu_path") or ""),
            steps=list(state["steps"]),
            pre_scripts=dict(state.get("pre_scripts") or {}),
            post_scripts=dict(state.get("post_scripts") or {}),
            users=list(state.get("users") or []),
            log_path=log_path,
        )

        if not dry_run:
            save_build_report(ctx.target_dir / REPORT_NAME, result.to_dict())
        logger.info("=== Build target %s finished (%d packages) ===", arch, len(result.packages))
    return result


def build_targets(
    manifest: Manifest,
    arches: Sequence[str],
    template_text: str,
    *,
    cfg: Optional[BuildConfig] = None,
    out_dir: str = DEFAULT_OUT_DIR,
    max_workers: Optional[int] = None,
    fail_fast: Optional[bool] = None,
    dry_run: bool = False,
) -> Dict[str, TargetOutcome]:
    """Build independent targets in parallel, each in its own root.

    A failure only ends its own target. With fail_fast, targets that have
    not started yet are skipped; running ones are left to finish.
    """

    cfg = cfg or BuildConfig()
    workers = max_workers or cfg.max_workers
    all_or_nothing = cfg.fail_fast if fail_fast is None else fail_fast

    ordered: List[str] = []
    for a in arches:
        if a not in ordered:
            ordered.append(a)
    if not ordered:
        raise LiveImgError("No build targets specified")

    abort = threading.Event()

    def _one(arch: str) -> TargetOutcome:
        if abort.is_set():
            logger.warning("[%s] not started (another target failed)", arch)
            return TargetOutcome(arch=arch, cancelled=True)
        try:
            result = build_image(manifest, arch, template_text, cfg=cfg, out_dir=out_dir, dry_run=dry_run)
        except LiveImgError as e:
            logger.error("[%s] build failed: %s", arch, e)
            if all_or_nothing:
                abort.set()
            return TargetOutcome(arch=arch, error=e)
        except Exception as e:
            logger.exception("[%s] build failed", arch)
            if all_or_nothing:
                abort.set()
            return TargetOutcome(arch=arch, error=e)
        return TargetOutcome(arch=arch, result=result)

    outcomes: Dict[str, TargetOutcome] = {}
    with ThreadPoolExecutor(max_workers=min(workers, len(ordered)), thread_name_prefix="target") as executor:
        futures = {executor.submit(_one, a): a for a in ordered}
        for fut in as_completed(futures):
            outcomes[futures[fut]] = fut.result()

    return {a: outcomes[a] for a in ordered}
