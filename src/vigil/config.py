"""Configuration system for vigil."""

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

from vigil.inhibitor import InhibitMode


@dataclass
class DaemonConfig:
    """Daemon behaviour configuration."""

    mode: str = "auto"  # Inhibit mechanism, or "auto" to probe in preference order
    inbox_size: int = 1  # Pending control messages before callers block


@dataclass
class InhibitorConfig:
    """Settings shared by the inhibit mechanisms."""

    app_name: str = "vigil"  # Reported to logind / power managers
    reason: str = "user request"
    reset_interval: float = 60.0  # Seconds between `xset s reset` calls
    jitter_interval: float = 5.0  # Seconds between pointer samples
    jitter_window: float = 60.0  # Pointer must be still this long before a jitter
    command_timeout: float = 5.0  # Max seconds for one external command


@dataclass
class MonitorConfig:
    """Status watcher configuration."""

    retry_delay: float = 5.0  # Seconds between reconnect attempts


@dataclass
class SystemConfig:
    """Process-level configuration."""

    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    inhibitor: InhibitorConfig = field(default_factory=InhibitorConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "vigil"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "vigil"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for ephemeral files (PID, socket).

        Uses XDG_RUNTIME_DIR when the session provides one so the socket is
        per-user and cleared on logout.
        """
        xdg_runtime = os.environ.get("XDG_RUNTIME_DIR")
        if xdg_runtime:
            return Path(xdg_runtime) / "vigil"
        return Path(f"/tmp/vigil-{os.getuid()}")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    @property
    def socket_path(self) -> Path:
        """Unix socket path for daemon IPC."""
        return self.runtime_dir / "daemon.sock"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("daemon", "inhibitor", "monitor", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() on a missing file are identical.

        Raises:
            ValueError: If the file cannot be parsed or holds invalid values
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            daemon=_load_daemon_config(data.get("daemon", {})),
            inhibitor=_load_inhibitor_config(data.get("inhibitor", {})),
            monitor=_load_monitor_config(data.get("monitor", {})),
            system=_load_system_config(data.get("system", {})),
        )


def _number(data: dict, key: str, default: float) -> float:
    """Read a numeric setting, rejecting strings and booleans."""
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    return float(value)


def _integer(data: dict, key: str, default: int) -> int:
    """Read an integer setting, rejecting strings, floats and booleans."""
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return int(value)


def _load_daemon_config(data: dict) -> DaemonConfig:
    """Load daemon config from TOML data, using dataclass defaults for missing fields."""
    defaults = DaemonConfig()

    mode = str(data.get("mode", defaults.mode))
    valid_modes = [m.value for m in InhibitMode]
    if mode not in valid_modes:
        raise ValueError(f"Invalid mode: {mode!r}. Must be one of {valid_modes}")

    inbox_size = _integer(data, "inbox_size", defaults.inbox_size)
    if inbox_size < 1:
        raise ValueError(f"inbox_size must be >= 1, got {inbox_size}")

    return DaemonConfig(mode=mode, inbox_size=inbox_size)


def _load_inhibitor_config(data: dict) -> InhibitorConfig:
    """Load inhibitor config from TOML data."""
    d = InhibitorConfig()

    reset_interval = _number(data, "reset_interval", d.reset_interval)
    jitter_interval = _number(data, "jitter_interval", d.jitter_interval)
    jitter_window = _number(data, "jitter_window", d.jitter_window)
    command_timeout = _number(data, "command_timeout", d.command_timeout)

    if reset_interval <= 0:
        raise ValueError(f"reset_interval must be > 0, got {reset_interval}")
    if jitter_interval <= 0:
        raise ValueError(f"jitter_interval must be > 0, got {jitter_interval}")
    if jitter_window < jitter_interval:
        raise ValueError(
            f"jitter_window must be >= jitter_interval, got {jitter_window} < {jitter_interval}"
        )
    if command_timeout <= 0:
        raise ValueError(f"command_timeout must be > 0, got {command_timeout}")

    return InhibitorConfig(
        app_name=str(data.get("app_name", d.app_name)),
        reason=str(data.get("reason", d.reason)),
        reset_interval=reset_interval,
        jitter_interval=jitter_interval,
        jitter_window=jitter_window,
        command_timeout=command_timeout,
    )


def _load_monitor_config(data: dict) -> MonitorConfig:
    """Load monitor config from TOML data."""
    d = MonitorConfig()
    retry_delay = _number(data, "retry_delay", d.retry_delay)
    if retry_delay < 0:
        raise ValueError(f"retry_delay must be >= 0, got {retry_delay}")
    return MonitorConfig(retry_delay=retry_delay)


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    return SystemConfig(
        log_max_bytes=_integer(data, "log_max_bytes", d.log_max_bytes),
        log_backup_count=_integer(data, "log_backup_count", d.log_backup_count),
    )
