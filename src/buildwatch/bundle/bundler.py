"""Bundler invocation - esbuild driven through its command line."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path

from ..build.process import ProcessRunner
from ..build.state import BundleError

logger = logging.getLogger(__name__)

DEFAULT_LOADERS: Mapping[str, str] = {".wasm": "file"}


@dataclass(frozen=True)
class BundleOptions:
    """Settings for one bundler run."""

    entry_points: tuple[Path, ...]
    outdir: Path
    format: str = "esm"
    target: str = "esnext"
    entry_names: str = "[name]"
    platform: str = "browser"
    loaders: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_LOADERS))
    minify: bool = False
    sourcemap: bool = False
    splitting: bool = False

    @classmethod
    def production(cls, entry_points: Sequence[str | os.PathLike[str]], outdir: str | os.PathLike[str]) -> BundleOptions:
        """Minified, no source maps."""
        return cls(
            entry_points=tuple(Path(p) for p in entry_points),
            outdir=Path(outdir),
            minify=True,
            sourcemap=False,
        )

    @classmethod
    def development(cls, entry_points: Sequence[str | os.PathLike[str]], outdir: str | os.PathLike[str]) -> BundleOptions:
        """Source maps and code splitting, unminified."""
        return cls(
            entry_points=tuple(Path(p) for p in entry_points),
            outdir=Path(outdir),
            sourcemap=True,
            splitting=True,
        )

    def with_outdir(self, outdir: str | os.PathLike[str]) -> BundleOptions:
        return replace(self, outdir=Path(outdir))


class EsbuildBundler:
    """Runs the esbuild executable for a set of bundle options.

    ``executable`` may hold several words (``"npx esbuild"``).
    """

    def __init__(
        self,
        executable: str | Sequence[str] = "esbuild",
        runner: ProcessRunner | None = None,
        cwd: str | os.PathLike[str] | None = None,
    ):
        if isinstance(executable, str):
            executable = shlex.split(executable)
        self._executable = tuple(executable)
        self._runner = runner or ProcessRunner()
        self._cwd = Path(cwd) if cwd is not None else None

    @property
    def runner(self) -> ProcessRunner:
        return self._runner

    @property
    def executable(self) -> tuple[str, ...]:
        return self._executable

    def command(self, options: BundleOptions) -> list[str]:
        """Build the esbuild argument vector for ``options``."""
        cmd = [*self._executable, *(str(p) for p in options.entry_points)]
        cmd += [
            "--bundle",
            f"--format={options.format}",
            f"--target={options.target}",
            f"--platform={options.platform}",
            f"--entry-names={options.entry_names}",
            f"--outdir={options.outdir}",
        ]
        for ext, loader in sorted(options.loaders.items()):
            cmd.append(f"--loader:{ext}={loader}")
        if options.minify:
            cmd.append("--minify")
        if options.sourcemap:
            cmd.append("--sourcemap")
        if options.splitting:
            # esbuild only supports splitting for ESM output
            cmd.append("--splitting")
        return cmd

    def _snapshot(self, outdir: Path) -> dict[Path, tuple[int, int]]:
        """Modification time and size of every file under ``outdir``."""
        if not outdir.is_dir():
            return {}
        snapshot: dict[Path, tuple[int, int]] = {}
        for path in outdir.rglob("*"):
            if path.is_file():
                stat = path.stat()
                snapshot[path] = (stat.st_mtime_ns, stat.st_size)
        return snapshot

    def _outputs(self, outdir: Path, before: Mapping[Path, tuple[int, int]]) -> list[Path]:
        """Files the bundler run created or rewrote.

        Leftovers of earlier runs (copied static assets, ``.gz`` siblings)
        are unchanged since ``before`` and are not reported.
        """
        after = self._snapshot(outdir)
        return sorted(path for path, stamp in after.items() if before.get(path) != stamp)

    async def bundle(self, options: BundleOptions) -> list[Path]:
        """Bundle ``options.entry_points`` into ``options.outdir``.

        Returns:
            Files the run created or rewrote in the output directory

        Raises:
            BundleError: If the bundler exits nonzero
            SpawnError: If the bundler executable is missing
        """
        outdir = options.outdir
        if not outdir.is_absolute() and self._cwd is not None:
            outdir = self._cwd / outdir
        await asyncio.to_thread(outdir.mkdir, parents=True, exist_ok=True)
        before = await asyncio.to_thread(self._snapshot, outdir)

        info = await self._runner.run(self.command(options), cwd=self._cwd)
        if not info.success:
            raise BundleError(
                f"Bundler failed with exit code {info.returncode}",
                exit_code=info.returncode,
            )

        outputs = await asyncio.to_thread(self._outputs, outdir, before)
        logger.info(f"Bundled {len(outputs)} file(s) into {outdir} ({info.duration_ms:.0f}ms)")
        return outputs
