from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import yaml

from .errors import (
    DuplicateScriptIdError,
    InvalidScriptDescriptorError,
    ParseError,
    UnknownArchitectureError,
    UnsupportedBuilderError,
)

logger = logging.getLogger(__name__)

SUPPORTED_BUILDERS = frozenset({"dnf"})
DEFAULT_BUILDER = "dnf"
DEFAULT_VOLID = "LIVEOS"

# Architectures dnf can target. Anything listed under arch_packages is accepted as well.
KNOWN_ARCHITECTURES = frozenset({"x86_64", "aarch64", "i686", "ppc64le", "s390x", "riscv64", "armv7hl"})

# Script ids name the staged script file, so no path separators.
SCRIPT_ID_RE = re.compile(r"[A-Za-z0-9_][A-Za-z0-9._-]*")


@dataclass(frozen=True)
class ScriptDescriptor:
    id: str
    name: str
    inline: Optional[str] = None
    file: Optional[str] = None
    chroot: bool = True
    # Directory of the manifest that declared the script; file references are relative to it.
    base_dir: Optional[Path] = None


@dataclass(frozen=True)
class User:
    username: str
    password: Optional[str] = None
    groups: Tuple[str, ...] = ()
    create_home: bool = True
    shell: Optional[str] = None
    uid: Optional[int] = None
    gid: Optional[int] = None
    ssh_keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DnfSettings:
    releasever: Optional[str] = None
    repodir: Optional[Path] = None
    options: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    packages: Tuple[str, ...] = ()
    arch_packages: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    arch_exclude: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class Manifest:
    path: Path
    builder: str = DEFAULT_BUILDER
    distro: Optional[str] = None
    out_file: Optional[str] = None
    kernel_cmdline: Optional[str] = None
    volume_id: Optional[str] = None
    imports: Tuple[Path, ...] = ()
    users: Tuple[User, ...] = ()
    pre_scripts: Tuple[ScriptDescriptor, ...] = ()
    post_scripts: Tuple[ScriptDescriptor, ...] = ()
    dnf: DnfSettings = field(default_factory=DnfSettings)

    @property
    def base_dir(self) -> Path:
        return self.path.parent

    @property
    def volid(self) -> str:
        return self.volume_id or DEFAULT_VOLID


@dataclass(frozen=True)
class PackageSet:
    """Base packages followed by the overlay of one architecture.

    Repeats are kept; dnf tolerates them.
    """

    arch: str
    packages: Tuple[str, ...]

    def __iter__(self) -> Iterator[str]:
        return iter(self.packages)

    def __len__(self) -> int:
        return len(self.packages)

    def as_list(self) -> List[str]:
        return list(self.packages)


def _str_list(value: Any, what: str, path: Path) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ParseError(f"{what} must be a list", path=str(path))
    out: List[str] = []
    for item in value:
        if isinstance(item, (dict, list)) or item is None:
            raise ParseError(f"{what} entries must be scalars, got {item!r}", path=str(path))
        out.append(str(item))
    return tuple(out)


def _str_list_map(value: Any, what: str, path: Path) -> Dict[str, Tuple[str, ...]]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"{what} must be a mapping of architecture -> list", path=str(path))
    return {str(k): _str_list(v, f"{what}.{k}", path) for k, v in value.items()}


def _opt_str(value: Any, what: str, path: Path) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        raise ParseError(f"{what} must be a scalar", path=str(path))
    return str(value)


def _mapping(value: Any, what: str, path: Path) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"{what} must be a mapping", path=str(path))
    return value


def _parse_script(obj: Any, *, index: int, phase: str, base_dir: Path) -> ScriptDescriptor:
    if not isinstance(obj, dict):
        raise InvalidScriptDescriptorError(f"scripts.{phase}[{index}] must be a mapping")

    script_id = obj.get("id")
    if not isinstance(script_id, str) or not script_id.strip():
        raise InvalidScriptDescriptorError(f"scripts.{phase}[{index}] is missing an id")
    if not SCRIPT_ID_RE.fullmatch(script_id):
        raise InvalidScriptDescriptorError(
            "id may only contain letters, digits, '.', '_' and '-'", script_id=script_id
        )

    inline = obj.get("inline")
    file = obj.get("file")
    if inline is not None and file is not None:
        raise InvalidScriptDescriptorError("inline and file are mutually exclusive", script_id=script_id)
    if inline is None and file is None:
        raise InvalidScriptDescriptorError("either inline or file is required", script_id=script_id)
    if inline is not None and not isinstance(inline, str):
        raise InvalidScriptDescriptorError("inline must be a string", script_id=script_id)
    if file is not None and (not isinstance(file, str) or not file.strip()):
        raise InvalidScriptDescriptorError("file must be a non-empty path", script_id=script_id)

    # Pre scripts run before the root has a userland to chroot into.
    chroot = obj.get("chroot", phase == "post")
    if not isinstance(chroot, bool):
        raise InvalidScriptDescriptorError("chroot must be true or false", script_id=script_id)

    return ScriptDescriptor(
        id=script_id,
        name=str(obj.get("name") or script_id),
        inline=inline,
        file=file,
        chroot=chroot,
        base_dir=base_dir,
    )


def _parse_user(obj: Any, *, index: int, path: Path) -> User:
    if not isinstance(obj, dict) or not obj.get("username"):
        raise ParseError(f"users[{index}] must be a mapping with a username", path=str(path))

    def _opt_int(key: str) -> Optional[int]:
        v = obj.get(key)
        if v is None:
            return None
        try:
            return int(v)
        except (TypeError, ValueError) as e:
            raise ParseError(f"users[{index}].{key} must be an integer", path=str(path)) from e

    create_home = obj.get("create_home", True)
    if not isinstance(create_home, bool):
        raise ParseError(f"users[{index}].create_home must be true or false", path=str(path))

    return User(
        username=str(obj["username"]),
        password=_opt_str(obj.get("password"), f"users[{index}].password", path),
        groups=_str_list(obj.get("groups"), f"users[{index}].groups", path),
        create_home=create_home,
        shell=_opt_str(obj.get("shell"), f"users[{index}].shell", path),
        uid=_opt_int("uid"),
        gid=_opt_int("gid"),
        ssh_keys=_str_list(obj.get("ssh_keys"), f"users[{index}].ssh_keys", path),
    )


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ParseError(f"cannot read manifest: {e.strerror or e}", path=str(path)) from e

    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ParseError(f"invalid YAML: {e}", path=str(path)) from e

    if not isinstance(raw, dict):
        raise ParseError("manifest must contain a mapping/object", path=str(path))
    return raw


def parse_manifest(raw: Dict[str, Any], path: Path) -> Manifest:
    """Build a Manifest from one already-parsed YAML document, ignoring imports' contents."""

    base_dir = path.parent

    builder = raw.get("builder")
    builder = DEFAULT_BUILDER if builder is None else str(builder)
    if builder not in SUPPORTED_BUILDERS:
        raise UnsupportedBuilderError(builder, SUPPORTED_BUILDERS)

    imports = tuple(base_dir / p for p in _str_list(raw.get("import"), "import", path))

    scripts = _mapping(raw.get("scripts"), "scripts", path)
    pre_raw = scripts.get("pre") or []
    post_raw = scripts.get("post") or []
    if not isinstance(pre_raw, list) or not isinstance(post_raw, list):
        raise ParseError("scripts.pre and scripts.post must be lists", path=str(path))

    users_raw = raw.get("users") or []
    if not isinstance(users_raw, list):
        raise ParseError("users must be a list", path=str(path))

    iso = _mapping(raw.get("iso"), "iso", path)

    dnf_raw = _mapping(raw.get("dnf"), "dnf", path)
    repodir = _opt_str(dnf_raw.get("repodir"), "dnf.repodir", path)
    dnf = DnfSettings(
        releasever=_opt_str(dnf_raw.get("releasever"), "dnf.releasever", path),
        repodir=(base_dir / repodir) if repodir else None,
        options=_str_list(dnf_raw.get("options"), "dnf.options", path),
        exclude=_str_list(dnf_raw.get("exclude"), "dnf.exclude", path),
        packages=_str_list(dnf_raw.get("packages"), "dnf.packages", path),
        arch_packages=MappingProxyType(_str_list_map(dnf_raw.get("arch_packages"), "dnf.arch_packages", path)),
        arch_exclude=MappingProxyType(_str_list_map(dnf_raw.get("arch_exclude"), "dnf.arch_exclude", path)),
    )

    return Manifest(
        path=path,
        builder=builder,
        distro=_opt_str(raw.get("distro"), "distro", path),
        out_file=_opt_str(raw.get("out_file"), "out_file", path),
        kernel_cmdline=_opt_str(raw.get("kernel_cmdline"), "kernel_cmdline", path),
        volume_id=_opt_str(iso.get("volume_id"), "iso.volume_id", path),
        imports=imports,
        users=tuple(_parse_user(u, index=i, path=path) for i, u in enumerate(users_raw)),
        pre_scripts=tuple(_parse_script(s, index=i, phase="pre", base_dir=base_dir) for i, s in enumerate(pre_raw)),
        post_scripts=tuple(_parse_script(s, index=i, phase="post", base_dir=base_dir) for i, s in enumerate(post_raw)),
        dnf=dnf,
    )


def _merge_arch_map(
    base: Mapping[str, Tuple[str, ...]], over: Mapping[str, Tuple[str, ...]]
) -> Mapping[str, Tuple[str, ...]]:
    merged: Dict[str, Tuple[str, ...]] = dict(base)
    for arch, pkgs in over.items():
        merged[arch] = merged.get(arch, ()) + tuple(pkgs)
    return MappingProxyType(merged)


def merge_manifests(base: Manifest, over: Manifest) -> Manifest:
    """Layer `over` on top of `base`: lists concatenate, scalars from `over` win when set."""

    dnf = DnfSettings(
        releasever=over.dnf.releasever or base.dnf.releasever,
        repodir=over.dnf.repodir or base.dnf.repodir,
        options=base.dnf.options + over.dnf.options,
        exclude=base.dnf.exclude + over.dnf.exclude,
        packages=base.dnf.packages + over.dnf.packages,
        arch_packages=_merge_arch_map(base.dnf.arch_packages, over.dnf.arch_packages),
        arch_exclude=_merge_arch_map(base.dnf.arch_exclude, over.dnf.arch_exclude),
    )
    return replace(
        over,
        distro=over.distro or base.distro,
        out_file=over.out_file or base.out_file,
        kernel_cmdline=over.kernel_cmdline or base.kernel_cmdline,
        volume_id=over.volume_id or base.volume_id,
        users=base.users + over.users,
        pre_scripts=base.pre_scripts + over.pre_scripts,
        post_scripts=base.post_scripts + over.post_scripts,
        dnf=dnf,
    )


def _check_unique_ids(scripts: Sequence[ScriptDescriptor], phase: str) -> None:
    seen: set[str] = set()
    for s in scripts:
        if s.id in seen:
            raise DuplicateScriptIdError(s.id, phase=phase)
        seen.add(s.id)


def _load(path: Path, stack: Tuple[Path, ...]) -> Manifest:
    p = path.resolve()
    if p in stack:
        chain = " -> ".join(str(s) for s in (*stack, p))
        raise ParseError(f"import cycle: {chain}", path=str(p))

    own = parse_manifest(_read_yaml(p), p)

    merged: Optional[Manifest] = None
    for imp in own.imports:
        logger.debug("Import %s (from %s)", imp, p)
        child = _load(imp, (*stack, p))
        merged = child if merged is None else merge_manifests(merged, child)

    manifest = own if merged is None else merge_manifests(merged, own)
    _check_unique_ids(manifest.pre_scripts, "pre")
    _check_unique_ids(manifest.post_scripts, "post")
    return manifest


def load_manifest(path: str | Path) -> Manifest:
    """Load a manifest and everything it imports.

    Imports are loaded first and the importing file is layered on top, so
    its packages and scripts come after those of its imports.
    """

    manifest = _load(Path(path), ())
    logger.info(
        "Loaded manifest %s (builder=%s packages=%d post_scripts=%d)",
        manifest.path,
        manifest.builder,
        len(manifest.dnf.packages),
        len(manifest.post_scripts),
    )
    return manifest


def check_architecture(manifest: Manifest, arch: str) -> None:
    if arch not in manifest.dnf.arch_packages and arch not in KNOWN_ARCHITECTURES:
        raise UnknownArchitectureError(arch)


def resolve_packages(manifest: Manifest, arch: str) -> PackageSet:
    """Base package list followed by the overlay for `arch`, both in declared order."""

    check_architecture(manifest, arch)
    overlay = manifest.dnf.arch_packages.get(arch, ())
    return PackageSet(arch=arch, packages=tuple(manifest.dnf.packages) + tuple(overlay))


def resolve_excludes(manifest: Manifest, arch: str) -> Tuple[str, ...]:
    check_architecture(manifest, arch)
    return tuple(manifest.dnf.exclude) + tuple(manifest.dnf.arch_exclude.get(arch, ()))
