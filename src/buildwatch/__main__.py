"""Entry point for the buildwatch orchestrator."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Iterator

from .build.state import BuildMode, BuildwatchError, ConfigurationError
from .config import CONFIG_FILENAME, StageSettings, load_project_config
from .orchestrator import Orchestrator


def find_project_root(root: str | Path | None = None) -> str:
    """Find the project root by walking up from CWD.

    Searches for project markers in this order:
    1. buildwatch.toml
    2. package.json (the bundler's project)
    3. .git (git root as fallback)

    Falls back to CWD if no marker is found.

    Args:
        root: If provided, constrains search to this directory and below.
              Search stops at this boundary.

    Returns:
        Absolute path to project root
    """
    current = Path.cwd().resolve()
    boundary = Path(root).resolve() if root is not None else None

    def ancestors() -> Iterator[Path]:
        """Yield current directory and ancestors up to boundary."""
        yield current
        if boundary is not None and current == boundary:
            return
        for parent in current.parents:
            yield parent
            if boundary is not None and parent == boundary:
                return

    for marker in (CONFIG_FILENAME, "package.json", ".git"):
        for directory in ancestors():
            if (directory / marker).exists():
                return str(directory)

    return str(current)


def configure_logging() -> None:
    """Configure logging based on environment."""
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="buildwatch",
        description="Build native targets, then package the app or serve it with live reload",
    )
    parser.add_argument(
        "--server",
        action="store_true",
        default=False,
        help="Watch targets and run the live-reloading dev server instead of "
        "producing a production build.",
    )
    parser.add_argument(
        "--project",
        type=str,
        default=None,
        help="Project root. Defaults to the nearest directory above CWD holding "
        f"{CONFIG_FILENAME}, package.json or .git.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help=f"Config file (default: <project>/{CONFIG_FILENAME} if present).",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Dev server port (default 8080).",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Process exit code
    """
    configure_logging()
    logger = logging.getLogger(__name__)

    args = parse_args(argv)
    mode = BuildMode.SERVE if args.server else BuildMode.ONESHOT

    try:
        settings = StageSettings.from_env()
        project_root = args.project or find_project_root()
        config = load_project_config(project_root, args.config)
        orchestrator = Orchestrator.from_config(
            config, settings, mode, project_root, port=args.port
        )
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if mode == BuildMode.ONESHOT:
        logger.info(f"Building frontend for {settings.stage}")
    else:
        logger.info(f"Starting dev mode (project: {project_root})")

    try:
        result = await orchestrator.run()
    except BuildwatchError as e:
        logger.error(f"Build failed: {e}")
        return 1

    if result is not None:
        logger.info(f"Done: {result.to_summary()}")
    return 0


def run() -> None:
    """Run the orchestrator."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
