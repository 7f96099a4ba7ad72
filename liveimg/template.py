from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from .errors import MissingVariableError, ParseError, StructuralValidationError
from .manifest import Manifest

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
# Anything between double braces, including tokens that are not valid names.
TOKEN_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)

REQUIRED_KEYS = ("distro", "volid", "vmlinuz", "initramfs", "cmd")

EXPECTED_SUBMENUS = 2


@dataclass(frozen=True)
class TemplateContext:
    """Values substituted into the bootloader menu of one target."""

    distro: Optional[str] = None
    volid: Optional[str] = None
    vmlinuz: Optional[str] = None
    initramfs: Optional[str] = None
    cmd: Optional[str] = None
    extra: Mapping[str, str] = field(default_factory=dict)

    def as_mapping(self) -> Dict[str, str]:
        # Unset required keys are left out so rendering reports them as missing.
        out = {k: str(v) for k, v in self.extra.items()}
        for key in REQUIRED_KEYS:
            value = getattr(self, key)
            if value is not None:
                out[key] = str(value)
        return out


def context_for_target(
    manifest: Manifest,
    arch: str,
    *,
    kernel_name: str = "vmlinuz",
    initramfs_name: str = "initramfs.img",
) -> TemplateContext:
    return TemplateContext(
        distro=manifest.distro,
        volid=manifest.volid,
        vmlinuz=kernel_name,
        initramfs=initramfs_name,
        cmd=manifest.kernel_cmdline or "",
        extra={"arch": arch},
    )


def placeholders(template_text: str) -> List[str]:
    """Placeholder names in order of first appearance."""
    seen: List[str] = []
    for m in PLACEHOLDER_RE.finditer(template_text):
        if m.group(1) not in seen:
            seen.append(m.group(1))
    return seen


def unrecognized_tokens(template_text: str) -> List[str]:
    """`{{ ... }}` tokens that are not a plain `{{ name }}`, e.g. `{{ kernel-cmd }}` or `{{ distro|upper }}`."""
    bad: List[str] = []
    for m in TOKEN_RE.finditer(template_text):
        if PLACEHOLDER_RE.fullmatch(m.group(0)):
            continue
        token = m.group(1).strip()
        if token not in bad:
            bad.append(token)
    return bad


def render(template_text: str, context: Union[TemplateContext, Mapping[str, str]]) -> str:
    """Substitute every `{{ name }}` in the template.

    All names absent from the context are reported together; nothing is
    rendered unless every placeholder resolves. A `{{ ... }}` token that is
    not a plain name can never resolve and is reported the same way.
    """

    values = context.as_mapping() if isinstance(context, TemplateContext) else dict(context)

    missing = [name for name in placeholders(template_text) if name not in values]
    missing.extend(unrecognized_tokens(template_text))
    if missing:
        raise MissingVariableError(missing)

    return PLACEHOLDER_RE.sub(lambda m: str(values[m.group(1)]), template_text)


def load_template(path: Union[str, Path]) -> str:
    p = Path(path)
    try:
        return p.read_text(encoding="utf-8")
    except OSError as e:
        raise ParseError(f"cannot read template: {e.strerror or e}", path=str(p)) from e


@dataclass
class SubMenuEntry:
    title: str
    parent_options: str = ""
    directives: Dict[str, str] = field(default_factory=dict)

    @property
    def add_options(self) -> str:
        return self.directives.get("add_options", "")

    @property
    def effective_options(self) -> str:
        return " ".join(p for p in (self.parent_options, self.add_options) if p)


@dataclass
class MenuEntry:
    title: str
    directives: Dict[str, str] = field(default_factory=dict)
    submenus: List[SubMenuEntry] = field(default_factory=list)

    @property
    def options(self) -> str:
        return self.directives.get("options", "")

    @property
    def volume(self) -> Optional[str]:
        return self.directives.get("volume")

    @property
    def loader(self) -> Optional[str]:
        return self.directives.get("loader")

    @property
    def initrd(self) -> Optional[str]:
        return self.directives.get("initrd")


@dataclass
class MenuConfig:
    directives: Dict[str, str] = field(default_factory=dict)
    entries: List[MenuEntry] = field(default_factory=list)


_BLOCK_RE = re.compile(r'^(menuentry|submenuentry)\s+(?:"([^"]*)"|(\S+))\s*\{$')
_DIRECTIVE_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)(?:\s+(.*))?$")


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def parse_menu(text: str) -> MenuConfig:
    """Parse a rendered rEFInd-style menu.

    Submenu entries see their parent's `options` so `effective_options`
    reflects what the firmware would boot with.
    """

    menu = MenuConfig()
    entry: Optional[MenuEntry] = None
    sub: Optional[SubMenuEntry] = None

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        if line == "}":
            if sub is not None and entry is not None:
                entry.submenus.append(sub)
                sub = None
            elif entry is not None:
                for s in entry.submenus:
                    s.parent_options = entry.options
                menu.entries.append(entry)
                entry = None
            else:
                raise StructuralValidationError(f"line {lineno}: unexpected '}}'")
            continue

        m = _BLOCK_RE.match(line)
        if m:
            kind, title = m.group(1), m.group(2) if m.group(2) is not None else m.group(3)
            if kind == "menuentry":
                if entry is not None:
                    raise StructuralValidationError(f"line {lineno}: menuentry cannot be nested")
                entry = MenuEntry(title=title)
            else:
                if entry is None or sub is not None:
                    raise StructuralValidationError(f"line {lineno}: submenuentry must be inside a menuentry")
                sub = SubMenuEntry(title=title)
            continue

        d = _DIRECTIVE_RE.match(line)
        if not d:
            raise StructuralValidationError(f"line {lineno}: cannot parse {line!r}")
        key, value = d.group(1), _unquote(d.group(2) or "")
        target = sub.directives if sub is not None else entry.directives if entry is not None else menu.directives
        target[key] = value

    if entry is not None or sub is not None:
        raise StructuralValidationError("unterminated menuentry block")

    return menu


def validate_menu(text: str, *, expected_submenus: int = EXPECTED_SUBMENUS) -> MenuConfig:
    """Check the rendered menu would boot.

    One menuentry with options, exactly `expected_submenus` sub-entries
    (the live image ships "Check Image" and "nomodeset"), each of which
    only appends options.
    """

    menu = parse_menu(text)

    if len(menu.entries) != 1:
        raise StructuralValidationError(f"expected exactly one menuentry, found {len(menu.entries)}")

    entry = menu.entries[0]
    if "options" not in entry.directives:
        raise StructuralValidationError(f"menuentry {entry.title!r} has no options")
    if len(entry.submenus) != expected_submenus:
        raise StructuralValidationError(
            f"menuentry {entry.title!r} has {len(entry.submenus)} submenuentry blocks, expected {expected_submenus}"
        )

    for s in entry.submenus:
        if "options" in s.directives:
            raise StructuralValidationError(
                f"submenuentry {s.title!r} replaces options; use add_options to extend them"
            )
        if "add_options" not in s.directives:
            raise StructuralValidationError(f"submenuentry {s.title!r} has no add_options")

    logger.debug("Menu validated (%s, %d sub-entries)", entry.title, len(entry.submenus))
    return menu
