from __future__ import annotations

import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional


_PACKAGE_SHADERS = Path(__file__).parent / "shaders"


def _default_cache_dir() -> Path:
    return Path(tempfile.gettempdir()) / "raspmat-spv"


@dataclass(frozen=True)
class SessionConfig:
    """Settings for a :class:`~raspmat.session.ComputeSession`.

    - kernel_dir: where kernel sources are looked up by file name.
    - cache_dir: where compiled SPIR-V is cached.
    - glslc: shader compiler executable.
    - fence_timeout_ns: bound on blocking waits; ``None`` waits forever.
    - echo_results: print matrix-vector results after read-back.
    """

    kernel_dir: Path = _PACKAGE_SHADERS
    cache_dir: Path = field(default_factory=_default_cache_dir)
    glslc: str = "glslc"
    fence_timeout_ns: Optional[int] = None
    echo_results: bool = False

    def with_overrides(self, **overrides: Any) -> "SessionConfig":
        return replace(self, **overrides)

    def kernel_path(self, source: str) -> Path:
        return Path(self.kernel_dir) / source
