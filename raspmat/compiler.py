from __future__ import annotations

"""GLSL -> SPIR-V build step for kernel programs (via ``glslc``)."""

import hashlib
import logging
import os
import subprocess
import tempfile
from pathlib import Path

from .errors import BuildFailure


logger = logging.getLogger(__name__)


def _spv_path(source: Path, cache_dir: Path) -> Path:
    # Sources from different kernel dirs may share a file name.
    tag = hashlib.sha1(str(source.resolve()).encode("utf-8")).hexdigest()[:10]
    return cache_dir / f"{source.stem}-{tag}.spv"


def compile_glsl(source: Path, *, cache_dir: Path, glslc: str = "glslc") -> bytes:
    """Return SPIR-V for ``source``, compiling it if the cached copy is stale."""

    source = Path(source)
    if not source.exists():
        raise BuildFailure(source.name, f"missing kernel source: {source}")

    spv_path = _spv_path(source, Path(cache_dir))
    try:
        if spv_path.exists() and spv_path.stat().st_mtime >= source.stat().st_mtime:
            cached = spv_path.read_bytes()
            if _is_spirv_words(cached):
                logger.debug("Using cached SPIR-V %s", spv_path)
                return cached
            logger.warning("Ignoring malformed cached SPIR-V %s", spv_path)
    except OSError:
        pass

    try:
        spv_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f"{spv_path.stem}-", suffix=".tmp", dir=spv_path.parent)
        os.close(fd)
    except OSError as e:
        raise BuildFailure(source.name, f"cannot use SPIR-V cache {spv_path.parent}: {e}") from e

    # glslc writes a temp file; only a complete module is renamed into the cache.
    tmp_path = Path(tmp_name)
    try:
        try:
            subprocess.run(
                [glslc, "-fshader-stage=compute", str(source), "-o", str(tmp_path)],
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise BuildFailure(source.name, f"{glslc} not found; install shader compiler tools") from e
        except subprocess.CalledProcessError as e:
            log = (e.stderr or b"").decode("utf-8", errors="replace")
            raise BuildFailure(source.name, log) from e
        except OSError as e:
            raise BuildFailure(source.name, f"cannot run {glslc}: {e}") from e

        try:
            spv = _check_words(source.name, tmp_path.read_bytes())
            os.replace(tmp_path, spv_path)
        except OSError as e:
            raise BuildFailure(source.name, f"cannot store SPIR-V {spv_path}: {e}") from e
    finally:
        tmp_path.unlink(missing_ok=True)

    logger.info("Compiled %s -> %s", source.name, spv_path.name)
    return spv


def _is_spirv_words(spv: bytes) -> bool:
    return bool(spv) and len(spv) % 4 == 0


def _check_words(name: str, spv: bytes) -> bytes:
    if not _is_spirv_words(spv):
        raise BuildFailure(name, f"SPIR-V output is {len(spv)} bytes; expected a non-empty multiple of 4")
    return spv
