"""Orchestrator - initial builds, then production packaging or serve mode.

State machine:
INITIALIZING → ONESHOT_BUILDING → DONE
INITIALIZING → SERVING_SETUP → SERVING
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterable, Sequence
from enum import Enum
from pathlib import Path

from .build.artifacts import ArtifactCopier
from .build.process import ProcessRunner
from .build.state import BuildMode, SpawnError
from .build.target import WatchTarget
from .build.task import RebuildTask
from .bundle.bundler import BundleOptions, EsbuildBundler
from .bundle.packaging import PackageResult, package
from .bundle.server import DevServer
from .config import ProjectConfig, StageSettings
from .watcher import Changes, FileWatcher

logger = logging.getLogger(__name__)

WatcherFactory = Callable[..., FileWatcher]


class OrchestratorState(str, Enum):
    """Orchestrator lifecycle states."""

    INITIALIZING = "initializing"
    ONESHOT_BUILDING = "oneshot_building"
    DONE = "done"
    SERVING_SETUP = "serving_setup"
    SERVING = "serving"


class _BundleHook:
    """Post-build hook of the dev bundle task: reload connected browsers."""

    def __init__(self, server: DevServer):
        self._server = server

    async def __call__(self) -> None:
        self._server.notify_reload()


class Orchestrator:
    """Wires watch targets, the bundler and the dev server together.

    Usage:
        orchestrator = Orchestrator.from_config(config, settings, BuildMode.SERVE, root)
        await orchestrator.run()
    """

    def __init__(
        self,
        tasks: Sequence[RebuildTask],
        mode: BuildMode,
        bundler: EsbuildBundler,
        production_options: BundleOptions,
        development_options: BundleOptions | None = None,
        public_dir: str | os.PathLike[str] | None = None,
        project_root: str | os.PathLike[str] | None = None,
        copier: ArtifactCopier | None = None,
        compress: bool = True,
        server: DevServer | None = None,
        watcher_factory: WatcherFactory = FileWatcher,
    ):
        self._tasks = list(tasks)
        self._mode = mode
        self._bundler = bundler
        self._production_options = production_options
        self._development_options = development_options
        self._public_dir = Path(public_dir) if public_dir is not None else None
        self._project_root = Path(project_root or os.getcwd()).resolve()
        self._copier = copier or ArtifactCopier()
        self._compress = compress
        self._server = server
        self._watcher_factory = watcher_factory
        self._watchers: list[FileWatcher] = []
        self._bundle_task: RebuildTask | None = None
        self._state = OrchestratorState.INITIALIZING
        self._stop_requested = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: ProjectConfig,
        settings: StageSettings,
        mode: BuildMode,
        project_root: str | os.PathLike[str],
        port: int | None = None,
    ) -> Orchestrator:
        """Build an orchestrator for a loaded project configuration.

        Raises:
            ConfigurationError: If a target root is missing
        """
        root = Path(project_root).resolve()
        runner = ProcessRunner(toolchain_log_level=settings.toolchain_log_level)
        copier = ArtifactCopier()
        targets = config.watch_targets(root, copier)
        entry_points = [config.resolve(root, p) for p in config.entry_points]
        public_dir = config.resolve(root, config.public_dir)

        server = None
        development_options = None
        if mode == BuildMode.SERVE:
            serve_outdir = config.resolve(root, config.serve_outdir)
            development_options = BundleOptions.development(entry_points, serve_outdir)
            server = DevServer(
                [serve_outdir, public_dir],
                host=config.host,
                port=config.port if port is None else port,
            )

        return cls(
            tasks=[RebuildTask(target, runner) for target in targets],
            mode=mode,
            bundler=EsbuildBundler(config.bundler, runner, cwd=root),
            production_options=BundleOptions.production(
                entry_points, config.resolve(root, config.outdir)
            ),
            development_options=development_options,
            public_dir=public_dir,
            project_root=root,
            copier=copier,
            compress=config.compress,
            server=server,
        )

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def mode(self) -> BuildMode:
        return self._mode

    @property
    def tasks(self) -> list[RebuildTask]:
        return list(self._tasks)

    @property
    def watchers(self) -> list[FileWatcher]:
        return list(self._watchers)

    @property
    def bundle_task(self) -> RebuildTask | None:
        return self._bundle_task

    def _set_state(self, new_state: OrchestratorState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.debug(f"Orchestrator state: {old_state.value} -> {new_state.value}")

    async def run(self) -> PackageResult | None:
        """Run the selected mode.

        Returns:
            Package result in one-shot mode; serve mode returns only after
            ``request_stop()`` or cancellation

        Raises:
            SpawnError: If a target's command could not be started
            BuildwatchError: Any failure of the one-shot pipeline
        """
        self._set_state(OrchestratorState.INITIALIZING)
        await self.initial_build()

        if self._mode == BuildMode.ONESHOT:
            return await self.build_production()

        await self.serve()
        return None

    async def initial_build(self) -> None:
        """Build every target once, concurrently, and wait for all to settle."""
        names = ", ".join(task.name for task in self._tasks) or "none"
        logger.info(f"Initial build of {len(self._tasks)} target(s): {names}")

        outcomes = await asyncio.gather(
            *(task.trigger() for task in self._tasks),
            return_exceptions=True,
        )

        failures = [
            (task, outcome)
            for task, outcome in zip(self._tasks, outcomes)
            if isinstance(outcome, Exception)
        ]
        for task, error in failures:
            logger.error(f"Initial build of {task.name} failed: {error}")

        for _, error in failures:
            if isinstance(error, SpawnError):
                raise error
        if failures and self._mode == BuildMode.ONESHOT:
            raise failures[0][1]

    async def build_production(self) -> PackageResult:
        """Bundle with production settings, copy static assets, compress."""
        self._set_state(OrchestratorState.ONESHOT_BUILDING)
        result = await package(
            self._bundler,
            self._production_options,
            self._public_dir,
            self._copier,
            compress=self._compress,
        )
        self._set_state(OrchestratorState.DONE)
        return result

    def _report_failure(self, task: RebuildTask) -> Callable[[asyncio.Future[None]], None]:
        def done(future: asyncio.Future[None]) -> None:
            if future.cancelled():
                return
            error = future.exception()
            if error is not None:
                logger.error(f"Rebuild of {task.name} failed: {error}")

        return done

    def _trigger_on_change(self, task: RebuildTask) -> Callable[[Changes], None]:
        """Watch callback: trigger ``task`` without waiting for it."""

        def on_change(changes: Changes) -> None:
            logger.debug(f"{len(changes)} change(s) for {task.name}")
            task.trigger().add_done_callback(self._report_failure(task))

        return on_change

    def _attach(self, root: Path, excluded: Iterable[Path], on_change: Callable[[Changes], None]) -> None:
        watcher = self._watcher_factory(root, excluded, on_change)
        watcher.start()
        self._watchers.append(watcher)

    def _entry_dirs(self, options: BundleOptions) -> list[Path]:
        dirs: list[Path] = []
        for entry in options.entry_points:
            parent = (self._project_root / entry).parent.resolve()
            if parent not in dirs:
                dirs.append(parent)
        return dirs

    async def _setup_bundle(self, server: DevServer) -> None:
        """Build the dev bundle once, then rebuild it when entry sources change."""
        options = self._development_options
        if options is None:
            return

        target = WatchTarget.create(
            root=self._project_root,
            command=self._bundler.command(options),
            on_success=_BundleHook(server),
            name="bundle",
        )
        self._bundle_task = RebuildTask(target, self._bundler.runner)
        try:
            await self._bundle_task.trigger()
        except SpawnError:
            raise
        except Exception as e:
            logger.error(f"Initial dev bundle failed: {e}")

        for entry_dir in self._entry_dirs(options):
            self._attach(entry_dir, [options.outdir], self._trigger_on_change(self._bundle_task))

        if self._public_dir is not None and self._public_dir.is_dir():
            self._attach(self._public_dir, [], lambda changes: server.notify_reload())

    async def serve(self) -> None:
        """Attach watchers, start the dev server and block until stopped."""
        if self._server is None:
            raise ValueError("Serve mode requires a dev server")

        self._set_state(OrchestratorState.SERVING_SETUP)
        try:
            for task in self._tasks:
                self._attach(task.target.root, task.target.excluded, self._trigger_on_change(task))
            await self._setup_bundle(self._server)

            await self._server.start()
            self._set_state(OrchestratorState.SERVING)
            await self._stop_requested.wait()
        finally:
            await self.teardown()

    def request_stop(self) -> None:
        """Make ``serve()`` return after tearing down."""
        self._stop_requested.set()

    async def teardown(self) -> None:
        """Stop watchers, cancel in-flight rebuilds and stop the dev server."""
        watchers, self._watchers = self._watchers, []
        for watcher in watchers:
            await watcher.stop()

        tasks = list(self._tasks)
        if self._bundle_task is not None:
            tasks.append(self._bundle_task)
        await asyncio.gather(*(task.cancel() for task in tasks))

        if self._server is not None and self._state == OrchestratorState.SERVING:
            await self._server.stop()
        self._set_state(OrchestratorState.DONE)
