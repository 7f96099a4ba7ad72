from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from .build_config import BuildConfig
from .lib.chroot import chroot_binds
from .lib.pkg import dnf_install
from .lib.users import add_user
from .manifest import Manifest, check_architecture, resolve_excludes, resolve_packages
from .scripts import ScriptSequencer
from .template import context_for_target, render, validate_menu

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildCtx:
    cfg: BuildConfig
    manifest: Manifest
    arch: str
    template_text: str
    out_dir: str
    dry_run: bool

    @property
    def target_dir(self) -> Path:
        return Path(self.out_dir) / self.arch

    @property
    def rootfs_dir(self) -> Path:
        return self.target_dir / "rootfs"

    @property
    def boot_config_file(self) -> Path:
        return self.rootfs_dir / self.cfg.boot_config_path.lstrip("/")

    def sequencer(self) -> ScriptSequencer:
        return ScriptSequencer(
            scripts_dir=self.cfg.scripts_dir,
            shell=self.cfg.script_shell,
            arch=self.arch,
            dry_run=self.dry_run,
        )


def _done(state: Dict[str, Any], step_id: str) -> None:
    state.setdefault("steps", []).append(step_id)


def step_00_prepare_root(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    step_id = "00_prepare_root"
    logger.info("[%s] %s", ctx.arch, step_id)

    check_architecture(ctx.manifest, ctx.arch)

    # Every script body must resolve before the root is touched.
    seq = ctx.sequencer()
    seq.preflight([*ctx.manifest.pre_scripts, *ctx.manifest.post_scripts])

    ctx.rootfs_dir.mkdir(parents=True, exist_ok=True)

    if ctx.manifest.pre_scripts:
        result = seq.run(ctx.manifest.pre_scripts, ctx.rootfs_dir)
        state["pre_scripts"] = result.to_dict()
        result.raise_for_failure(arch=ctx.arch)

    _done(state, step_id)


def step_10_install_packages(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    step_id = "10_install_packages"
    logger.info("[%s] %s", ctx.arch, step_id)

    packages = resolve_packages(ctx.manifest, ctx.arch)
    state["packages"] = packages.as_list()
    dnf = ctx.manifest.dnf

    dnf_install(
        target_root=str(ctx.rootfs_dir.resolve()),
        packages=packages.as_list(),
        arch=ctx.arch,
        releasever=dnf.releasever,
        repodir=str(dnf.repodir) if dnf.repodir else None,
        options=dnf.options,
        exclude=resolve_excludes(ctx.manifest, ctx.arch),
        dnf_binary=ctx.cfg.dnf_binary,
        serialize=ctx.cfg.serialize_package_manager,
        dry_run=ctx.dry_run,
    )

    _done(state, step_id)


def step_20_add_users(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    step_id = "20_add_users"
    users = ctx.manifest.users
    if not users:
        logger.info("[%s] skip %s (no users)", ctx.arch, step_id)
        return

    logger.info("[%s] %s", ctx.arch, step_id)
    root = str(ctx.rootfs_dir)
    with chroot_binds(root, dry_run=ctx.dry_run):
        for user in users:
            add_user(root, user, dry_run=ctx.dry_run)

    state["users"] = [u.username for u in users]
    _done(state, step_id)


def step_30_render_menu(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    step_id = "30_render_menu"
    logger.info("[%s] %s", ctx.arch, step_id)

    context = context_for_target(
        ctx.manifest,
        ctx.arch,
        kernel_name=ctx.cfg.kernel_name,
        initramfs_name=ctx.cfg.initramfs_name,
    )
    menu = render(ctx.template_text, context)
    validate_menu(menu)

    state["menu"] = menu
    state["menu_path"] = str(ctx.boot_config_file)

    if ctx.dry_run:
        logger.info("[%s] would write boot menu -> %s", ctx.arch, ctx.boot_config_file)
    else:
        ctx.boot_config_file.parent.mkdir(parents=True, exist_ok=True)
        ctx.boot_config_file.write_text(menu, encoding="utf-8")
        logger.info("[%s] wrote boot menu -> %s", ctx.arch, ctx.boot_config_file)

    _done(state, step_id)


def step_40_post_install(*, ctx: BuildCtx, state: Dict[str, Any]) -> None:
    step_id = "40_post_install"
    logger.info("[%s] %s", ctx.arch, step_id)

    result = ctx.sequencer().run(ctx.manifest.post_scripts, ctx.rootfs_dir)
    state["post_scripts"] = result.to_dict()
    result.raise_for_failure(arch=ctx.arch)

    _done(state, step_id)


ALL_STEPS = [
    step_00_prepare_root,
    step_10_install_packages,
    step_20_add_users,
    step_30_render_menu,
    step_40_post_install,
]
