"""liveimg: a manifest-driven live image build interpreter.

Core design goals:
- Declarative manifests (YAML) with architecture overlays
- Deterministic bootloader menu rendering
- Ordered post-install hooks that stop on the first failure
- External tools (dnf, chroot, useradd) do the heavy lifting
- Centralized logging
"""

__all__ = []
