"""Pytest fixtures for buildwatch tests."""

import asyncio
import os
import sys
import textwrap

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from buildwatch.build.process import ProcessRunner  # noqa: E402
from buildwatch.build.state import ExitInfo  # noqa: E402


class InstantRunner(ProcessRunner):
    """Runner that records commands and exits immediately."""

    def __init__(self, returncode=0):
        super().__init__()
        self.returncode = returncode
        self.calls = []

    async def run(self, argv, cwd=None, env=None):
        self.calls.append((tuple(argv), cwd))
        await asyncio.sleep(0)
        return ExitInfo(argv=tuple(argv), returncode=self.returncode)


class GatedRunner(ProcessRunner):
    """Runner whose commands block until ``release`` is set."""

    def __init__(self, returncode=0):
        super().__init__()
        self.returncode = returncode
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    async def run(self, argv, cwd=None, env=None):
        self.calls.append((tuple(argv), cwd))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        return ExitInfo(argv=tuple(argv), returncode=self.returncode)


class RecordingHook:
    """Post-build hook counting its calls."""

    def __init__(self, error=None):
        self.calls = 0
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error


FAKE_ESBUILD = textwrap.dedent(
    """
    import os
    import sys

    args = sys.argv[1:]
    outdir = next(a.split("=", 1)[1] for a in args if a.startswith("--outdir="))
    entries = [a for a in args if not a.startswith("--")]
    os.makedirs(outdir, exist_ok=True)
    for entry in entries:
        name = os.path.splitext(os.path.basename(entry))[0]
        with open(os.path.join(outdir, name + ".js"), "w") as f:
            f.write("console.log('bundled %s');\\n" % name)
            if "--minify" in args:
                f.write("// minified\\n")
    sys.exit(int(os.environ.get("FAKE_ESBUILD_EXIT", "0")))
    """
)


@pytest.fixture
def instant_runner():
    return InstantRunner()


@pytest.fixture
def gated_runner():
    return GatedRunner()


@pytest.fixture
def fake_esbuild(tmp_path):
    """Command line of a stand-in bundler that writes ``<entry>.js`` files."""
    script = tmp_path / "fake_esbuild.py"
    script.write_text(FAKE_ESBUILD)
    return [sys.executable, str(script)]


@pytest.fixture
def web_project(tmp_path):
    """Project with an entry script, static assets and two native targets."""
    root = tmp_path / "project"
    (root / "viewer-app").mkdir(parents=True)
    (root / "viewer-app" / "main.ts").write_text("console.log('app');\n")
    (root / "public").mkdir()
    (root / "public" / "index.html").write_text("<html><body><h1>map</h1></body></html>")
    (root / "public" / "favicon.svg").write_text("<svg/>")
    (root / "model" / "target").mkdir(parents=True)
    (root / "viewer-lib" / "pkg").mkdir(parents=True)
    return root
