"""Production packaging: bundle, copy static assets, pre-compress."""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

from ..build.artifacts import ArtifactCopier
from .bundler import BundleOptions, EsbuildBundler

logger = logging.getLogger(__name__)

COMPRESSIBLE_EXTENSIONS: Final[frozenset[str]] = frozenset(
    {".js", ".mjs", ".css", ".html", ".wasm", ".json", ".svg", ".map", ".txt"}
)
GZIP_LEVEL: int = 9


@dataclass
class PackageResult:
    """Files produced by one production run."""

    bundled: list[Path] = field(default_factory=list)
    assets: list[Path] = field(default_factory=list)
    compressed: list[Path] = field(default_factory=list)

    def to_summary(self) -> str:
        return (
            f"{len(self.bundled)} bundled, {len(self.assets)} static asset(s), "
            f"{len(self.compressed)} compressed"
        )


async def copy_static_assets(
    public_dir: str | os.PathLike[str],
    outdir: str | os.PathLike[str],
    copier: ArtifactCopier | None = None,
) -> list[Path]:
    """Copy ``public_dir/*`` verbatim into ``outdir``."""
    copier = copier or ArtifactCopier()
    return await copier.copy(os.path.join(os.fspath(public_dir), "*"), outdir)


def _gzip_file(path: Path, level: int) -> Path:
    target = path.with_name(path.name + ".gz")
    with open(path, "rb") as src, gzip.open(target, "wb", compresslevel=level) as dst:
        shutil.copyfileobj(src, dst)
    return target


async def compress_outputs(
    files: Iterable[Path],
    extensions: Iterable[str] = COMPRESSIBLE_EXTENSIONS,
    level: int = GZIP_LEVEL,
) -> list[Path]:
    """Write a ``.gz`` sibling next to every eligible file.

    Returns:
        Paths of the written ``.gz`` files
    """
    allowed = {ext.lower() for ext in extensions}
    eligible = [f for f in files if f.suffix.lower() in allowed]
    compressed = await asyncio.gather(
        *(asyncio.to_thread(_gzip_file, f, level) for f in eligible)
    )
    return list(compressed)


async def package(
    bundler: EsbuildBundler,
    options: BundleOptions,
    public_dir: str | os.PathLike[str] | None,
    copier: ArtifactCopier | None = None,
    compress: bool = True,
) -> PackageResult:
    """Run the one-shot production pipeline.

    Args:
        bundler: Bundler to invoke
        options: Production bundle options
        public_dir: Static assets copied into the output directory
        copier: Artifact copier
        compress: Whether to write gzip siblings for bundled files

    Returns:
        Summary of produced files
    """
    result = PackageResult()
    result.bundled = await bundler.bundle(options)

    if public_dir is not None and Path(public_dir).is_dir():
        result.assets = await copy_static_assets(public_dir, options.outdir, copier)

    if compress:
        result.compressed = await compress_outputs(result.bundled)

    logger.info(f"Package ready in {options.outdir}: {result.to_summary()}")
    return result
