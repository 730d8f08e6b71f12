"""
Configuration loading for devmon.

Settings live in a YAML file (``~/.config/devmon/config.yaml`` by default,
or the path in ``$DEVMON_CONFIG``). A missing or unparseable file yields
the defaults; out-of-range values are corrected and logged.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DEVMON_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/devmon/config.yaml")

DEFAULT_PROCESS_PATTERN = "node|next-server|vite|webpack|esbuild|postcss|turbopack|ts-node|tsx"

DEFAULT_WHITELIST = [
    "mongod",
    "context7-mcp",
    "claude",
    "Spotify",
    "code-helper",
    "copilot",
    ".vscode",
    "prettier",
    "eslint_d",
]

DEFAULT_PROTECTED = [
    "WindowServer",
    "loginwindow",
    "kernel_task",
    "Finder",
    "Dock",
    "SystemUIServer",
    "launchd",
]


@dataclass(slots=True, frozen=True)
class CacheTargetConfig:
    """One cache root and its retention policy."""

    name: str
    path: Path
    max_age_days: int
    glob: str = "*"


def _default_cache_targets() -> list[CacheTargetConfig]:
    return [
        CacheTargetConfig("jetbrains", Path("~/Library/Caches/JetBrains"), 7),
        CacheTargetConfig("playwright", Path("~/Library/Caches/ms-playwright"), 14),
        CacheTargetConfig("node_modules", Path("~/dev"), 30, glob="*/node_modules"),
        CacheTargetConfig("homebrew", Path("~/Library/Caches/Homebrew"), 14),
    ]


@dataclass(slots=True)
class DevmonConfig:
    """Resolved devmon settings.

    Attributes:
        warn_threshold: Pressure percent at which the tier becomes WARN.
        emergency_threshold: Pressure percent at which the tier becomes CRITICAL.
        idle_normal_seconds: Orphan age that triggers a kill outside CRITICAL.
        idle_emergency_seconds: Orphan age that triggers a kill under CRITICAL.
        port_min: Lowest port reported as a dev port.
        port_max: Highest port reported as a dev port.
        process_pattern: Case-insensitive regex matched against command names.
        whitelist: Substrings of a command line that exempt a process entirely.
        protected: Process names that are never signalled.
        cache_targets: Cache roots pruned by ``devmon clean``.
        log_dir: Directory for the rotating log file.
        log_max_bytes: Size at which the log file rotates.
        log_keep: Number of rotated log files to keep.
        log_level: Level name for the file handler.
        state_dir: Directory holding the orphan ledger and pause state.
        notify: Whether pressure notifications are raised.
    """

    warn_threshold: int = 60
    emergency_threshold: int = 80
    idle_normal_seconds: int = 1800
    idle_emergency_seconds: int = 600
    port_min: int = 3000
    port_max: int = 9000
    process_pattern: str = DEFAULT_PROCESS_PATTERN
    whitelist: list[str] = field(default_factory=lambda: DEFAULT_WHITELIST.copy())
    protected: list[str] = field(default_factory=lambda: DEFAULT_PROTECTED.copy())
    cache_targets: list[CacheTargetConfig] = field(default_factory=_default_cache_targets)
    log_dir: Path = Path("~/Library/Logs/devmon")
    log_max_bytes: int = 5 * 1024 * 1024
    log_keep: int = 3
    log_level: str = "INFO"
    state_dir: Path = Path("~/.config/devmon/state")
    notify: bool = True

    @property
    def ledger_path(self) -> Path:
        """Location of the orphan ledger."""
        return self.state_dir.expanduser() / "orphans.txt"

    @property
    def state_path(self) -> Path:
        """Location of the persisted pause flag and alarm latch."""
        return self.state_dir.expanduser() / "state.yaml"


def resolve_config_path(path: str | Path | None = None) -> Path:
    """Pick the config file: explicit path, then $DEVMON_CONFIG, then the default."""
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def load_config(path: str | Path | None = None) -> DevmonConfig:
    """Load devmon configuration.

    Args:
        path: Optional explicit config file.

    Returns:
        DevmonConfig with values from the file, or defaults.
    """
    config_path = resolve_config_path(path)

    if not config_path.exists():
        return DevmonConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        logger.warning("Could not read config %s (%s); using defaults", config_path, e)
        return DevmonConfig()

    if not isinstance(data, dict):
        logger.warning("Config %s is not a mapping; using defaults", config_path)
        return DevmonConfig()

    return config_from_dict(data)


def config_from_dict(data: dict) -> DevmonConfig:
    """Build a validated DevmonConfig from parsed YAML data."""
    config = DevmonConfig()

    thresholds = _section(data, "thresholds")
    config.warn_threshold = _as_int(thresholds.get("warn"), config.warn_threshold)
    config.emergency_threshold = _as_int(thresholds.get("emergency"), config.emergency_threshold)

    idle = _section(data, "idle")
    config.idle_normal_seconds = _as_int(idle.get("normal_seconds"), config.idle_normal_seconds)
    config.idle_emergency_seconds = _as_int(
        idle.get("emergency_seconds"), config.idle_emergency_seconds
    )

    ports = _section(data, "ports")
    config.port_min = _as_int(ports.get("min"), config.port_min)
    config.port_max = _as_int(ports.get("max"), config.port_max)

    processes = _section(data, "processes")
    pattern = processes.get("pattern")
    if isinstance(pattern, str) and pattern.strip():
        config.process_pattern = pattern.strip()
    config.whitelist = _string_list(processes.get("whitelist"), config.whitelist)
    config.protected = _string_list(processes.get("protected"), config.protected)

    if "cache" in data:
        config.cache_targets = _cache_targets(data.get("cache"))

    log_section = _section(data, "logging")
    if log_section.get("dir"):
        config.log_dir = Path(str(log_section["dir"]))
    config.log_max_bytes = _as_int(log_section.get("max_bytes"), config.log_max_bytes)
    config.log_keep = _as_int(log_section.get("keep"), config.log_keep)
    level = log_section.get("level")
    if isinstance(level, str) and level.strip():
        config.log_level = level.strip().upper()

    if data.get("state_dir"):
        config.state_dir = Path(str(data["state_dir"]))
    if "notify" in data:
        config.notify = _as_bool(data["notify"], config.notify)

    _validate(config)
    return config


def _validate(config: DevmonConfig) -> None:
    """Correct out-of-range values in place."""
    for name in ("warn_threshold", "emergency_threshold"):
        value = getattr(config, name)
        clamped = min(100, max(0, value))
        if clamped != value:
            logger.warning("%s=%d out of range; clamped to %d", name, value, clamped)
            setattr(config, name, clamped)

    if config.warn_threshold > config.emergency_threshold:
        logger.warning(
            "warn threshold %d above emergency threshold %d; using %d for both",
            config.warn_threshold,
            config.emergency_threshold,
            config.emergency_threshold,
        )
        config.warn_threshold = config.emergency_threshold

    if config.port_min > config.port_max:
        logger.warning("port range %d-%d inverted; swapping", config.port_min, config.port_max)
        config.port_min, config.port_max = config.port_max, config.port_min

    config.idle_normal_seconds = max(0, config.idle_normal_seconds)
    config.idle_emergency_seconds = max(0, config.idle_emergency_seconds)
    config.log_max_bytes = max(0, config.log_max_bytes)
    config.log_keep = max(0, config.log_keep)

    try:
        re.compile(config.process_pattern)
    except re.error as e:
        logger.warning("Invalid process pattern %r (%s); using default", config.process_pattern, e)
        config.process_pattern = DEFAULT_PROCESS_PATTERN


def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _as_int(value, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Expected an integer, got %r; using %d", value, default)
        return default


def _as_bool(value, default: bool) -> bool:
    # YAML strings like "false" or "0" are truthy; only real booleans count
    if isinstance(value, bool):
        return value
    logger.warning("Expected true or false, got %r; using %s", value, default)
    return default


def _string_list(value, default: list[str]) -> list[str]:
    if value is None:
        return default
    if not isinstance(value, list):
        logger.warning("Expected a list, got %r; using defaults", value)
        return default
    return [item for item in value if isinstance(item, str) and item]


def _cache_targets(value) -> list[CacheTargetConfig]:
    if not isinstance(value, list):
        logger.warning("cache must be a list of targets; no cache targets configured")
        return []

    targets = []
    for item in value:
        if not isinstance(item, dict) or not item.get("path"):
            logger.warning("Ignoring malformed cache target %r", item)
            continue
        max_age = _as_int(item.get("max_age_days"), -1)
        if max_age < 0:
            logger.warning("Ignoring cache target %r without a valid max_age_days", item)
            continue
        path = Path(str(item["path"]))
        targets.append(
            CacheTargetConfig(
                name=str(item.get("name") or path.name),
                path=path,
                max_age_days=max_age,
                glob=str(item.get("glob") or "*"),
            )
        )
    return targets
