"""File watching for rebuild targets.

Wraps ``watchfiles.awatch`` so that changes below excluded subpaths (the
toolchain's own output and cache directories) never reach the callback.
Batching is left to watchfiles: raw events are grouped every
``WATCH_STEP_MS`` and a batch is yielded within ``WATCH_DEBOUNCE_MS`` (200 ms)
of its first event. Nothing else is layered on top; guarding against
overlapping builds is the rebuild task's job.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Callable, Iterable
from pathlib import Path
from typing import Any

from watchfiles import Change, awatch

logger = logging.getLogger(__name__)

# watchfiles batches raw events per step, then waits out the debounce window
WATCH_STEP_MS: int = 50
WATCH_DEBOUNCE_MS: int = 200

Changes = set[tuple[Change, str]]
ChangeCallback = Callable[[Changes], Any]
WatchSource = Callable[..., AsyncIterator[Changes]]


class ExcludedPathFilter:
    """Watch filter rejecting paths at or below any excluded directory."""

    def __init__(self, excluded: Iterable[str | os.PathLike[str]] = ()):
        self.excluded = tuple(os.path.abspath(p) for p in excluded)

    def is_excluded(self, path: str | os.PathLike[str]) -> bool:
        path = os.path.abspath(path)
        for excluded in self.excluded:
            if path == excluded or path.startswith(excluded + os.sep):
                return True
        return False

    def __call__(self, change: Change, path: str) -> bool:
        return not self.is_excluded(path)

    def __repr__(self) -> str:
        return f"ExcludedPathFilter({list(self.excluded)!r})"


class FileWatcher:
    """Calls ``on_change`` for create/modify/delete events under ``root``.

    Usage:
        watcher = FileWatcher("lib", ["lib/target"], lambda changes: task.trigger())
        watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        root: str | os.PathLike[str],
        excluded: Iterable[str | os.PathLike[str]],
        on_change: ChangeCallback,
        watch_source: WatchSource = awatch,
    ):
        self._root = Path(root).resolve()
        self._filter = ExcludedPathFilter(excluded)
        self._on_change = on_change
        self._watch_source = watch_source
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def root(self) -> Path:
        return self._root

    @property
    def filter(self) -> ExcludedPathFilter:
        return self._filter

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the watch loop as a background task."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(
            self._watch(), name=f"watch:{self._root.name}"
        )
        logger.info(f"Watching {self._root}")

    async def stop(self) -> None:
        """Stop watching and wait for the loop to exit."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.debug(f"Stopped watching {self._root}")

    def dispatch(self, changes: Changes) -> bool:
        """Forward the non-excluded part of a batch to the callback.

        Returns:
            True if the callback was invoked
        """
        relevant = {(change, path) for change, path in changes if self._filter(change, path)}
        if not relevant:
            return False
        for change, path in sorted(relevant, key=lambda c: c[1]):
            logger.debug(f"{change.name}: {path}")
        try:
            self._on_change(relevant)
        except Exception:
            logger.exception(f"Change handler failed for {self._root}")
        return True

    async def _watch(self) -> None:
        async for changes in self._watch_source(
            self._root,
            watch_filter=self._filter,
            stop_event=self._stop_event,
            step=WATCH_STEP_MS,
            debounce=WATCH_DEBOUNCE_MS,
        ):
            self.dispatch(changes)
