"""Persisted monitor state (the pause flag and the pressure-alarm latch)."""

import logging
import os
import tempfile
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


class PauseState:
    """
    Flags kept in one YAML file: ``paused`` and ``alarm_fired``.

    Both survive restarts, so separate ``monitor --once`` runs see the same
    pause setting and the same alarm latch. A missing or unreadable file
    means "not paused, alarm armed". Writing one flag keeps the other.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        """State file location."""
        return self._path

    def is_paused(self) -> bool:
        """Current persisted value."""
        return self._read().get("paused") is True

    def set_paused(self, paused: bool) -> None:
        """
        Persist the flag atomically.

        Raises:
            OSError: If the state file cannot be written.
        """
        self._update("paused", bool(paused))

    def alarm_fired(self) -> bool:
        """Whether the high-pressure alarm was latched by an earlier cycle."""
        return self._read().get("alarm_fired") is True

    def set_alarm_fired(self, fired: bool) -> None:
        """
        Persist the alarm latch atomically.

        Raises:
            OSError: If the state file cannot be written.
        """
        self._update("alarm_fired", bool(fired))

    def _read(self) -> dict:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            return {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Cannot read state %s: %s; using defaults", self._path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _update(self, key: str, value: bool) -> None:
        current = self._read()
        data = {name: current.get(name) is True for name in ("paused", "alarm_fired")}
        data[key] = value
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=self._path.name + ".", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f)
            os.replace(tmp_name, self._path)
        except OSError:
            os.unlink(tmp_name)
            raise
