"""
Configuration management for jobsmith.

Loads and validates the jobsmith.yaml configuration file. Every setting
has a default, so a project without a config file builds with the
conventional layout (sources under src/, artifacts under dist/).

The resulting JobsmithConfig is passed explicitly into discovery,
synthesis, the builder and the runner.
"""

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


CONFIG_FILENAME = "jobsmith.yaml"

MODES = ("per-job", "grouped")
REFERENCE_STRATEGIES = ("scope", "text")
LOG_FORMATS = ("pretty", "structured")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_PATH_FIELDS = ("project_root", "source_root", "out_dir", "scratch_dir", "log_file")


class ConfigError(Exception):
    """Configuration validation error."""
    pass


@dataclass
class JobsmithConfig:
    """
    Complete jobsmith configuration.

    Relative paths are resolved against ``project_root``.

    Attributes:
        project_root: Directory holding pyproject.toml and jobsmith.yaml
        source_root: Import root of the job sources (default "src")
        job_glob: Pattern selecting job sources under source_root
        out_dir: Where artifacts and the manifest are written
        scratch_dir: Where synthesized entry modules are written
        manifest_name: Manifest file name inside out_dir
        job_decorator: Decorator name marking a job class
        group_decorator: Decorator name assigning a job to a group
        mode: "per-job" or "grouped"
        reference_strategy: "scope" (symtable analysis) or "text"
            (whole-word search, overapproximates)
        target: Minimum Python version the artifacts are built for
        externals: Top-level modules never inlined into artifacts, in
            addition to the standard library
        entry_method: No-argument method invoked on a job instance
        workers: Thread pool size for discovery and synthesis
        log_level: Logging level
        log_format: "pretty" (rich console) or "structured" (JSON lines)
        log_file: Optional log file
    """
    project_root: Path = field(default_factory=Path.cwd)
    source_root: Path = Path("src")
    job_glob: str = "**/*_job.py"
    out_dir: Path = Path("dist")
    scratch_dir: Path = Path("dist/.jobsmith/entries")
    manifest_name: str = "manifest.json"
    job_decorator: str = "job"
    group_decorator: str = "group"
    mode: str = "per-job"
    reference_strategy: str = "scope"
    target: str = f"{sys.version_info.major}.{sys.version_info.minor}"
    externals: list[str] = field(default_factory=list)
    entry_method: str = "run"
    workers: int = 4
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[Path] = None

    def __post_init__(self):
        for name in _PATH_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, Path):
                setattr(self, name, Path(value))
        self.project_root = self.project_root.expanduser().resolve()
        for name in _PATH_FIELDS[1:]:
            value = getattr(self, name)
            if value is not None:
                value = value.expanduser()
                if not value.is_absolute():
                    value = self.project_root / value
                setattr(self, name, value)

    @property
    def manifest_path(self) -> Path:
        """Absolute path of the manifest file."""
        return self.out_dir / self.manifest_name

    @property
    def grouped(self) -> bool:
        return self.mode == "grouped"

    def with_mode(self, mode: str) -> "JobsmithConfig":
        """Return a copy of this config with a different build mode."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["mode"] = mode
        config = JobsmithConfig(**data)
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration values."""
        if self.mode not in MODES:
            raise ConfigError(f"Invalid mode '{self.mode}'. Expected one of: {', '.join(MODES)}")
        if self.reference_strategy not in REFERENCE_STRATEGIES:
            raise ConfigError(
                f"Invalid reference_strategy '{self.reference_strategy}'. "
                f"Expected one of: {', '.join(REFERENCE_STRATEGIES)}"
            )
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(
                f"Invalid log_format '{self.log_format}'. Expected one of: {', '.join(LOG_FORMATS)}"
            )
        if str(self.log_level).upper() not in LOG_LEVELS:
            raise ConfigError(
                f"Invalid log_level '{self.log_level}'. Expected one of: {', '.join(LOG_LEVELS)}"
            )
        for name in ("job_decorator", "group_decorator", "entry_method"):
            value = getattr(self, name)
            if not value or not value.isidentifier():
                raise ConfigError(f"{name} must be a Python identifier, got: {value!r}")
        if self.job_decorator == self.group_decorator:
            raise ConfigError("job_decorator and group_decorator must differ")
        if self.workers < 1:
            raise ConfigError(f"workers must be at least 1, got: {self.workers}")
        if not self.job_glob:
            raise ConfigError("job_glob must not be empty")
        try:
            parts = tuple(int(p) for p in self.target.split("."))
        except ValueError:
            parts = ()
        if len(parts) != 2:
            raise ConfigError(f"target must look like '3.11', got: {self.target!r}")

    def __repr__(self) -> str:
        return (
            f"JobsmithConfig(project_root={self.project_root}, mode={self.mode}, "
            f"source_root={self.source_root})"
        )


def default_config_data() -> dict[str, Any]:
    """Settings written by ``jobsmith init`` (project-relative)."""
    return {
        "source_root": "src",
        "job_glob": "**/*_job.py",
        "out_dir": "dist",
        "scratch_dir": "dist/.jobsmith/entries",
        "mode": "per-job",
        "reference_strategy": "scope",
        "externals": [],
        "entry_method": "run",
        "log_level": "INFO",
        "log_format": "pretty",
    }


def load_config(
    config_path: Optional[Path] = None,
    project_root: Optional[Path] = None,
) -> JobsmithConfig:
    """
    Load jobsmith configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to jobsmith.yaml in
            project_root; a missing default file means "all defaults".
        project_root: Project directory. Defaults to the config file's
            directory, or the current directory.

    Returns:
        Validated JobsmithConfig instance

    Raises:
        ConfigError: If an explicit config file is missing, or the config
            is invalid
    """
    explicit = config_path is not None
    if config_path is None:
        root = Path(project_root) if project_root else Path.cwd()
        config_path = root / CONFIG_FILENAME
    config_path = Path(config_path)

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {config_path}")
    elif explicit:
        raise ConfigError(f"Configuration file not found: {config_path}")

    known = {f.name for f in fields(JobsmithConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration keys in {config_path}: {', '.join(unknown)}")

    if "project_root" in data:
        root = Path(os.path.expanduser(str(data["project_root"])))
        if not root.is_absolute():
            root = config_path.parent / root
        data["project_root"] = root
    else:
        data["project_root"] = Path(project_root) if project_root else config_path.parent

    try:
        config = JobsmithConfig(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}")

    config.validate()
    return config
