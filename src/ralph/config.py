"""Configuration management for ralph."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from .hooks import HookPolicy, HookTrigger
from .stream import OutputConfig
from .worker import DEFAULT_WORKER_COMMAND

DEFAULT_RALPH_DIR = ".wrapix/ralph"
CONFIG_FILE_NAME = "config.yaml"

TRUE_VALUES = ("true", "1", "yes")


def _parse_timeout(value: object, source: str, errors: list[str]) -> Optional[float]:
    """Parse a timeout in seconds; zero or empty means no timeout."""
    if value is None or value == "":
        return None
    try:
        return float(value) or None
    except (TypeError, ValueError):
        errors.append(f"{source} must be a number of seconds: {value!r}")
        return None


@dataclass
class WorkerSettings:
    """Settings for the worker subprocess."""

    command: list[str] = field(default_factory=lambda: list(DEFAULT_WORKER_COMMAND))
    timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict, errors: Optional[list[str]] = None) -> WorkerSettings:
        """Create WorkerSettings from dictionary.

        ``command`` may be an argv list or a single shell-quoted string.
        Problems with the values are appended to ``errors``.
        """
        errors = errors if errors is not None else []
        command = data.get("command") or DEFAULT_WORKER_COMMAND
        if isinstance(command, str):
            command = shlex.split(command)
        return cls(
            command=[str(part) for part in command],
            timeout=_parse_timeout(data.get("timeout"), "worker.timeout", errors),
        )


@dataclass
class StoreSettings:
    """Settings for the issue store adapter."""

    command: str = "bd"
    strict: bool = False
    sync: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> StoreSettings:
        return cls(
            command=data.get("command", "bd"),
            strict=bool(data.get("strict", False)),
            sync=bool(data.get("sync", True)),
        )


def _hooks_from_dict(data: dict) -> dict[str, str]:
    """Collect hook commands, honoring legacy ``loop.pre-hook``/``loop.post-hook``."""
    hooks_data = data.get("hooks") or {}
    loop_data = data.get("loop") or {}
    legacy = {
        HookTrigger.PRE_STEP.value: loop_data.get("pre-hook"),
        HookTrigger.POST_STEP.value: loop_data.get("post-hook"),
    }

    hooks = {}
    for trigger in HookTrigger:
        command = hooks_data.get(trigger.value) or legacy.get(trigger.value) or ""
        if command:
            hooks[trigger.value] = str(command)
    return hooks


@dataclass
class RalphConfig:
    """Configuration settings for ralph."""

    # Paths
    ralph_dir: Path = field(default_factory=lambda: Path(DEFAULT_RALPH_DIR))
    specs_dir: Path = field(default_factory=lambda: Path("specs"))
    pinned_context: Path = field(default_factory=lambda: Path("specs/README.md"))
    template_dir: Optional[Path] = None
    metadata_dir: Optional[Path] = None

    # Hooks
    hooks: dict[str, str] = field(default_factory=dict)
    hooks_on_failure: HookPolicy = HookPolicy.BLOCK

    # Subsystems
    output: OutputConfig = field(default_factory=OutputConfig)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    store: StoreSettings = field(default_factory=StoreSettings)

    # Runtime Settings
    log_level: str = "INFO"
    debug: bool = False

    # Problems found while reading the file or environment
    load_errors: list[str] = field(default_factory=list, repr=False)

    @classmethod
    def from_dict(cls, data: dict, ralph_dir: Optional[Path] = None) -> RalphConfig:
        """Create RalphConfig from the parsed config.yaml contents."""
        errors = []
        policy = data.get("hooks-on-failure")
        if policy is not None and not isinstance(policy, str):
            errors.append(f"hooks-on-failure must be one of block, warn, skip: {policy!r}")
        return cls(
            ralph_dir=ralph_dir or Path(DEFAULT_RALPH_DIR),
            specs_dir=Path(data.get("specs-dir", "specs")),
            pinned_context=Path(data.get("pinned-context", "specs/README.md")),
            hooks=_hooks_from_dict(data),
            hooks_on_failure=HookPolicy.parse(policy),
            output=OutputConfig.from_dict(data.get("output") or {}),
            worker=WorkerSettings.from_dict(data.get("worker") or {}, errors),
            store=StoreSettings.from_dict(data.get("store") or {}),
            load_errors=errors,
        )

    @classmethod
    def load_from_file(cls, ralph_dir: Path) -> RalphConfig:
        """Load config from ``<ralph_dir>/config.yaml``; defaults if it doesn't exist."""
        config_path = ralph_dir / CONFIG_FILE_NAME
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                return cls(ralph_dir=ralph_dir, load_errors=[f"{config_path} must contain a mapping"])
            return cls.from_dict(data, ralph_dir=ralph_dir)
        return cls(ralph_dir=ralph_dir)

    @classmethod
    def from_env(cls, ralph_dir: Optional[Path] = None) -> RalphConfig:
        """Load configuration from the config file and environment variables.

        Args:
            ralph_dir: Optional ralph directory. Defaults to ``$RALPH_DIR``
                or ``.wrapix/ralph``.

        Returns:
            RalphConfig instance with environment overrides applied.
        """
        load_dotenv()

        directory = Path(ralph_dir) if ralph_dir else Path(os.getenv("RALPH_DIR", DEFAULT_RALPH_DIR))
        config = cls.load_from_file(directory)

        template_dir = os.getenv("RALPH_TEMPLATE_DIR")
        metadata_dir = os.getenv("RALPH_METADATA_DIR")
        config.template_dir = Path(template_dir) if template_dir else None
        config.metadata_dir = Path(metadata_dir) if metadata_dir else None

        worker_timeout = os.getenv("RALPH_WORKER_TIMEOUT")
        if worker_timeout:
            config.worker.timeout = _parse_timeout(worker_timeout, "RALPH_WORKER_TIMEOUT", config.load_errors)

        config.debug = os.getenv("RALPH_DEBUG", "").lower() in TRUE_VALUES
        config.log_level = "DEBUG" if config.debug else os.getenv("RALPH_LOG_LEVEL", "INFO").upper()
        return config

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = list(self.load_errors)

        if not self.worker.command:
            errors.append("worker.command must not be empty")

        if self.worker.timeout is not None and self.worker.timeout <= 0:
            errors.append(f"worker.timeout must be positive: {self.worker.timeout}")

        if self.template_dir is not None and not self.template_dir.is_dir():
            errors.append(f"RALPH_TEMPLATE_DIR does not exist: {self.template_dir}")

        if self.metadata_dir is not None and not self.metadata_dir.is_dir():
            errors.append(f"RALPH_METADATA_DIR does not exist: {self.metadata_dir}")

        return errors
