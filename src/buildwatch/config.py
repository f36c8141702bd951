"""Stage settings and project configuration.

The project layout comes from ``buildwatch.toml`` at the project root when
present, otherwise from built-in defaults:

    entry_points = ["viewer-app/main.ts"]
    public_dir = "public"
    outdir = "dist"

    [[targets]]
    root = "viewer-lib"
    command = "wasm-pack build --target=web --no-default-features --release"
    exclude = ["target", "pkg"]
    hook = { kind = "copy", source = "pkg/small_world_viewer_bg.*", destination = "public" }

``exclude`` entries and a copy hook's ``source`` are relative to the target
root; every other path is relative to the project root.
"""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .build.artifacts import ArtifactCopier
from .build.hooks import CopyArtifacts, NoopHook, PostBuildHook, WriteBuildStamp
from .build.process import DEFAULT_TOOLCHAIN_LOG_LEVEL, TOOLCHAIN_LOG_VAR
from .build.state import ConfigurationError
from .build.target import WatchTarget

logger = logging.getLogger(__name__)

CONFIG_FILENAME: str = "buildwatch.toml"
STAGE_VAR: str = "swm_stage"
ALLOWED_STAGES: frozenset[str] = frozenset({"prod"})


class StageSettings(BaseModel):
    """Settings read from the environment."""

    model_config = ConfigDict(frozen=True)

    stage: str = "prod"
    toolchain_log_level: str = DEFAULT_TOOLCHAIN_LOG_LEVEL

    @field_validator("stage")
    @classmethod
    def _check_stage(cls, value: str) -> str:
        if value not in ALLOWED_STAGES:
            raise ValueError(f"Invalid stage: {value}")
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> StageSettings:
        """Read and validate settings.

        Raises:
            ConfigurationError: If the stage is not accepted
        """
        environ = os.environ if environ is None else environ
        try:
            return cls(
                stage=environ.get(STAGE_VAR, "prod"),
                toolchain_log_level=environ.get(TOOLCHAIN_LOG_VAR, DEFAULT_TOOLCHAIN_LOG_LEVEL),
            )
        except ValidationError as e:
            raise ConfigurationError(_first_error(e)) from e


class NoHookConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["none"] = "none"


class CopyHookConfig(BaseModel):
    """Copy files matching ``source`` (target-relative) into ``destination``."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["copy"]
    source: str
    destination: str


class StampHookConfig(BaseModel):
    """Rewrite a build-date module at ``path`` (project-relative)."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["stamp"]
    path: str


HookConfig = Annotated[
    Union[NoHookConfig, CopyHookConfig, StampHookConfig],
    Field(discriminator="kind"),
]


class TargetConfig(BaseModel):
    """One watch target as written in the config file."""

    model_config = ConfigDict(extra="forbid")

    root: str
    command: str | list[str]
    name: str | None = None
    exclude: list[str] = Field(default_factory=lambda: ["target"])
    hook: HookConfig = Field(default_factory=NoHookConfig)

    @field_validator("command")
    @classmethod
    def _check_command(cls, value: str | list[str]) -> str | list[str]:
        if not (value.strip() if isinstance(value, str) else value):
            raise ValueError("command must not be empty")
        return value

    @property
    def display_name(self) -> str:
        return self.name or Path(self.root).name


class ProjectConfig(BaseModel):
    """Project layout, targets and bundler settings."""

    model_config = ConfigDict(extra="forbid")

    targets: list[TargetConfig] = Field(default_factory=list)
    entry_points: list[str] = Field(default_factory=lambda: ["viewer-app/main.ts"])
    public_dir: str = "public"
    outdir: str = "dist"
    serve_outdir: str = ".buildwatch/serve"
    bundler: str | list[str] = "esbuild"
    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=0, le=65535)
    compress: bool = True

    @model_validator(mode="after")
    def _check_unique_names(self) -> ProjectConfig:
        seen: set[str] = set()
        for target in self.targets:
            if target.display_name in seen:
                raise ValueError(f"Duplicate target name: {target.display_name}")
            seen.add(target.display_name)
        return self

    def resolve(self, project_root: str | os.PathLike[str], rel: str) -> Path:
        path = Path(rel)
        return path if path.is_absolute() else Path(project_root).resolve() / path

    def _make_hook(
        self,
        hook: NoHookConfig | CopyHookConfig | StampHookConfig,
        project_root: Path,
        target_root: Path,
        copier: ArtifactCopier,
    ) -> PostBuildHook:
        if isinstance(hook, CopyHookConfig):
            return CopyArtifacts(
                target_root / hook.source,
                self.resolve(project_root, hook.destination),
                copier,
            )
        if isinstance(hook, StampHookConfig):
            return WriteBuildStamp(self.resolve(project_root, hook.path))
        return NoopHook()

    def watch_targets(
        self,
        project_root: str | os.PathLike[str],
        copier: ArtifactCopier | None = None,
    ) -> list[WatchTarget]:
        """Build the immutable watch targets for ``project_root``.

        Raises:
            ConfigurationError: If a target root does not exist
        """
        copier = copier or ArtifactCopier()
        root = Path(project_root).resolve()
        targets: list[WatchTarget] = []
        for cfg in self.targets:
            target_root = self.resolve(root, cfg.root)
            if not target_root.is_dir():
                raise ConfigurationError(f"Target root not found: {target_root}")
            targets.append(
                WatchTarget.create(
                    root=target_root,
                    command=cfg.command,
                    excluded=cfg.exclude,
                    on_success=self._make_hook(cfg.hook, root, target_root, copier),
                    name=cfg.display_name,
                )
            )
        return targets


def default_project_config() -> ProjectConfig:
    """Layout of the map viewer repository: two native targets."""
    return ProjectConfig(
        targets=[
            TargetConfig(
                root="model",
                command="cargo run --release --bin nc_to_image",
                exclude=["target"],
                hook=StampHookConfig(kind="stamp", path="viewer-app/build-date.ts"),
            ),
            TargetConfig(
                root="viewer-lib",
                command="wasm-pack build --target=web --no-default-features --release",
                exclude=["target", "pkg"],
                hook=CopyHookConfig(
                    kind="copy",
                    source="pkg/small_world_viewer_bg.*",
                    destination="public",
                ),
            ),
        ],
    )


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return str(error)
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", str(error))
    return f"{location}: {message}" if location else message


def load_project_config(
    project_root: str | os.PathLike[str],
    config_path: str | os.PathLike[str] | None = None,
) -> ProjectConfig:
    """Load ``buildwatch.toml``, falling back to the built-in layout.

    Args:
        project_root: Project root directory
        config_path: Explicit config file; must exist if given

    Raises:
        ConfigurationError: If the file is unreadable or invalid
    """
    if config_path is None:
        candidate = Path(project_root) / CONFIG_FILENAME
        if not candidate.is_file():
            logger.debug(f"No {CONFIG_FILENAME} in {project_root}, using defaults")
            return default_project_config()
        config_path = candidate

    path = Path(config_path)
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e

    try:
        config = ProjectConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {path.name}: {_first_error(e)}") from e

    logger.info(f"Loaded {path} ({len(config.targets)} target(s))")
    return config
