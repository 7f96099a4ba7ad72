from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional

from .build import DEFAULT_OUT_DIR, build_targets
from .build_config import load_build_config
from .errors import LiveImgError
from .logging_utils import DEFAULT_LOG_PATH, configure_logging, reset_logging
from .manifest import load_manifest, resolve_packages
from .template import context_for_target, load_template, render, validate_menu

logger = logging.getLogger(__name__)


def cmd_build(args: argparse.Namespace) -> int:
    cfg = load_build_config(args.config)
    configure_logging(
        log_path=args.log or os.path.join(cfg.logs_dir, os.path.basename(DEFAULT_LOG_PATH)),
        verbose=bool(args.verbose),
    )

    manifest = load_manifest(args.manifest)
    template_text = load_template(args.template)

    outcomes = build_targets(
        manifest,
        args.arch,
        template_text,
        cfg=cfg,
        out_dir=args.out or cfg.work_dir,
        max_workers=args.workers,
        fail_fast=True if args.fail_fast else None,
        dry_run=bool(args.dry_run),
    )

    exit_code = 0
    for arch, outcome in outcomes.items():
        if outcome.ok:
            logger.info("[%s] OK", arch)
            continue
        if outcome.cancelled:
            logger.warning("[%s] CANCELLED", arch)
            code = 1
        elif isinstance(outcome.error, LiveImgError):
            logger.error("[%s] FAILED: %s", arch, outcome.error)
            code = outcome.error.exit_code
        else:
            logger.error("[%s] FAILED: %s", arch, outcome.error)
            code = 1
        # First failing target in argument order decides the exit code.
        if exit_code == 0:
            exit_code = code
    return exit_code


def cmd_resolve(args: argparse.Namespace) -> int:
    manifest = load_manifest(args.manifest)
    for pkg in resolve_packages(manifest, args.arch):
        print(pkg)
    return 0


def cmd_render(args: argparse.Namespace) -> int:
    cfg = load_build_config(args.config)
    manifest = load_manifest(args.manifest)
    context = context_for_target(
        manifest,
        args.arch,
        kernel_name=cfg.kernel_name,
        initramfs_name=cfg.initramfs_name,
    )
    menu = render(load_template(args.template), context)
    if not args.no_validate:
        validate_menu(menu)
    sys.stdout.write(menu)
    if menu and not menu.endswith("\n"):
        sys.stdout.write("\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="liveimg")
    sub = p.add_subparsers(dest="subcmd", required=True)

    sp = sub.add_parser("build", help="Build one or more image targets")
    sp.add_argument("--manifest", required=True, help="Path to the build manifest (YAML)")
    sp.add_argument("--arch", required=True, action="append", help="Target architecture (repeatable)")
    sp.add_argument("--template", required=True, help="Bootloader menu template")
    sp.add_argument("--out", default=None, help=f"Output directory (default: paths.work_dir or {DEFAULT_OUT_DIR})")
    sp.add_argument("--config", default=None, help="Build settings (YAML)")
    sp.add_argument("--log", default=None, help="Log file path")
    sp.add_argument("--workers", type=int, default=None, help="Parallel targets (default: parallel.max_workers)")
    sp.add_argument("--fail-fast", action="store_true", help="Do not start more targets once one fails")
    sp.add_argument("--dry-run", action="store_true")
    sp.add_argument("-v", "--verbose", action="store_true", help="Show DEBUG output (tool output included) on the console")
    sp.set_defaults(func=cmd_build)

    sp = sub.add_parser("resolve", help="Print the package set for an architecture")
    sp.add_argument("--manifest", required=True)
    sp.add_argument("--arch", required=True)
    sp.set_defaults(func=cmd_resolve)

    sp = sub.add_parser("render", help="Render the bootloader menu to stdout")
    sp.add_argument("--manifest", required=True)
    sp.add_argument("--arch", required=True)
    sp.add_argument("--template", required=True)
    sp.add_argument("--config", default=None)
    sp.add_argument("--no-validate", action="store_true", help="Skip menu structure checks")
    sp.set_defaults(func=cmd_render)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    try:
        return int(args.func(args))
    except LiveImgError as e:
        logger.error("%s", e)
        print(f"ERROR: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        return 130
    finally:
        reset_logging()


if __name__ == "__main__":
    raise SystemExit(main())
