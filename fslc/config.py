"""Project configuration.

Settings come from three layers: command-line options override the
configuration file (``fslc.yaml``), which overrides the defaults below.
Relative paths in the file are resolved against the file's directory.
"""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from fslc.build.driver import BuildOptions
from fslc.compiler.errors import ConfigError
from fslc.compiler.lowering import RootSignatures
from fslc.compiler.models import Platform

DEFAULT_CONFIG_FILE = "fslc.yaml"
DEFAULT_RELOAD_PORT = 6543

_PATH_KEYS = ("output_dir", "binary_dir", "reflection_dir", "cache_dir")


def parse_platforms(values: str | list[str] | tuple[str, ...]) -> list[Platform]:
    """Parse platform names; ``all`` selects every platform.

    Raises:
        ConfigError: If a name is not a known platform
    """
    if isinstance(values, str):
        values = [values]
    names = [n for v in values for n in str(v).replace(",", " ").split()]
    platforms: list[Platform] = []
    for value in names:
        name = value.strip().upper()
        if name == "ALL":
            return list(Platform)
        try:
            platform = Platform[name]
        except KeyError:
            known = ", ".join(p.name for p in Platform)
            raise ConfigError(
                f"unknown platform '{value}' (expected all or {known})"
            ) from None
        if platform not in platforms:
            platforms.append(platform)
    return platforms


@dataclass
class ReloadSettings:
    """Address and queueing of the hot-reload server."""

    host: str = "127.0.0.1"
    port: int = DEFAULT_RELOAD_PORT
    queue_timeout: float = 10.0


@dataclass
class ProjectSettings:
    """A named group of input files the reload server can rebuild."""

    files: list[Path] = field(default_factory=list)
    include_dirs: list[Path] = field(default_factory=list)
    platforms: list[Platform] | None = None


@dataclass
class Config:
    """Resolved configuration of one invocation."""

    platforms: list[Platform] = field(default_factory=lambda: list(Platform))
    include_dirs: list[Path] = field(default_factory=list)
    output_dir: Path = Path("out")
    binary_dir: Path = Path("out/bin")
    reflection_dir: Path = Path("out/reflection")
    cache_dir: Path = Path(".fslc-cache")
    jobs: int = 1
    compile: bool = True
    debug: bool = False
    graphics_root_signature: str = "DefaultRootSignature"
    compute_root_signature: str = "ComputeRootSignature"
    compilers: dict[str, str] = field(default_factory=dict)
    reload: ReloadSettings = field(default_factory=ReloadSettings)
    projects: dict[str, ProjectSettings] = field(default_factory=dict)
    source: Path | None = None

    def with_overrides(self, **overrides: Any) -> "Config":
        """Copy of the configuration with every non-None override applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        unknown = set(values) - {f.name for f in fields(self)}
        if unknown:
            names = ", ".join(sorted(unknown))
            raise ConfigError(f"unknown configuration option(s): {names}")
        if "platforms" in values:
            platforms = values["platforms"]
            if not all(isinstance(p, Platform) for p in platforms):
                values["platforms"] = parse_platforms(platforms)
        for key in _PATH_KEYS:
            if key in values:
                values[key] = Path(values[key])
        if "include_dirs" in values:
            values["include_dirs"] = [Path(d) for d in values["include_dirs"]]
        return replace(self, **values)

    @property
    def root_signatures(self) -> RootSignatures:
        return RootSignatures(self.graphics_root_signature, self.compute_root_signature)

    def build_options(self, incremental: bool = False) -> BuildOptions:
        return BuildOptions(
            platforms=list(self.platforms),
            output_dir=self.output_dir,
            binary_dir=self.binary_dir,
            reflection_dir=self.reflection_dir,
            cache_dir=self.cache_dir,
            include_dirs=list(self.include_dirs),
            jobs=self.jobs,
            incremental=incremental,
            compile=self.compile,
            debug=self.debug,
            root_signatures=self.root_signatures,
        )


def _expect(value: Any, expected: type | tuple, key: str) -> Any:
    if not isinstance(value, expected):
        names = (
            " or ".join(t.__name__ for t in expected)
            if isinstance(expected, tuple)
            else expected.__name__
        )
        raise ConfigError(f"'{key}' must be a {names}, got {type(value).__name__}")
    return value


def _path_list(value: Any, key: str, base: Path) -> list[Path]:
    if isinstance(value, str):
        value = [value]
    return [base / _expect(v, str, key) for v in _expect(value, list, key)]


def _reload_settings(data: Any) -> ReloadSettings:
    data = _expect(data, dict, "reload")
    unknown = set(data) - {"host", "port", "queue_timeout"}
    if unknown:
        raise ConfigError(f"unknown reload setting(s): {', '.join(sorted(unknown))}")
    settings = ReloadSettings()
    if "host" in data:
        settings.host = _expect(data["host"], str, "reload.host")
    if "port" in data:
        settings.port = _expect(data["port"], int, "reload.port")
    if "queue_timeout" in data:
        settings.queue_timeout = float(
            _expect(data["queue_timeout"], (int, float), "reload.queue_timeout")
        )
    return settings


def _project_settings(name: str, data: Any, base: Path) -> ProjectSettings:
    data = _expect(data, dict, f"projects.{name}")
    project = ProjectSettings(
        files=_path_list(data.get("files", []), f"projects.{name}.files", base),
        include_dirs=_path_list(
            data.get("include_dirs", []), f"projects.{name}.include_dirs", base
        ),
    )
    if "platforms" in data:
        project.platforms = parse_platforms(data["platforms"])
    return project


def config_from_dict(data: dict[str, Any], base: Path | None = None) -> Config:
    """Build a configuration from the parsed contents of a config file.

    Args:
        data: Mapping loaded from YAML
        base: Directory relative paths are resolved against

    Raises:
        ConfigError: If a key is unknown or a value has the wrong type
    """
    base = base or Path.cwd()
    config = Config()
    known = {f.name for f in fields(Config)} - {"source"}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"unknown configuration key(s): {', '.join(sorted(unknown))}")

    for key, value in data.items():
        match key:
            case "platforms":
                config.platforms = parse_platforms(value)
            case "include_dirs":
                config.include_dirs = _path_list(value, key, base)
            case "output_dir" | "binary_dir" | "reflection_dir" | "cache_dir":
                setattr(config, key, base / _expect(value, str, key))
            case "jobs":
                config.jobs = _expect(value, int, key)
                if config.jobs < 1:
                    raise ConfigError("'jobs' must be at least 1")
            case "compile" | "debug":
                setattr(config, key, _expect(value, bool, key))
            case "graphics_root_signature" | "compute_root_signature":
                setattr(config, key, _expect(value, str, key))
            case "compilers":
                compilers = _expect(value, dict, key)
                unknown_families = set(compilers) - {"dxc", "glslang", "xcrun"}
                if unknown_families:
                    raise ConfigError(
                        f"unknown compiler(s): {', '.join(sorted(unknown_families))}"
                    )
                config.compilers = {k: str(v) for k, v in compilers.items()}
            case "reload":
                config.reload = _reload_settings(value)
            case "projects":
                config.projects = {
                    str(name): _project_settings(str(name), project, base)
                    for name, project in _expect(value, dict, key).items()
                }
    return config


def load_config(path: str | Path | None = None) -> Config:
    """Load the configuration file.

    Without an explicit path, ``fslc.yaml`` in the working directory is used
    when present and the defaults otherwise.

    Raises:
        ConfigError: If the file is missing (explicit path), unreadable or invalid
    """
    if path is None:
        candidate = Path(DEFAULT_CONFIG_FILE)
        if not candidate.exists():
            logger.debug("No configuration file, using defaults")
            return Config()
        path = candidate

    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read configuration file {path}: {e}") from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    config = config_from_dict(data, path.resolve().parent)
    config.source = path
    logger.debug(f"Loaded configuration from {path}")
    return config
