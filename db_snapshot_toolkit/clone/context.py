from __future__ import annotations

import json
import os
import time
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError as exc:  # pragma: no cover - Python < 3.11 guard
    raise SystemExit("python 3.11+ is required to load TOML clone configs") from exc

DEFAULT_ORACLE_BASE = "/u01/app/oracle"
DEFAULT_ASM_SID = "+ASM"
DEFAULT_SGA_TARGET = "512M"
DEFAULT_PGA_TARGET = "256M"
DEFAULT_REMOTE_TIMEOUT = 300
DEFAULT_REMOTE_DIR = "/tmp/db-snapshot"
DEFAULT_SSH_PORT = 22
DEFAULT_BUNDLE = "db-snapshot.tar.gz"
MAX_DB_NAME = 8

ENV_SOURCE_HOST = "DB_SNAPSHOT_SOURCE_HOST"
ENV_SNAPSHOT_CMD = "DB_SNAPSHOT_SNAPSHOT_CMD"
ENV_PREFIX = "DB_SNAPSHOT_PREFIX"
ENV_REMOTE_TIMEOUT = "DB_SNAPSHOT_REMOTE_TIMEOUT"

ENV_OVERRIDES = {
    ENV_SOURCE_HOST: "source_host",
    ENV_SNAPSHOT_CMD: "snapshot_command",
    ENV_PREFIX: "prefix",
    ENV_REMOTE_TIMEOUT: "remote_timeout",
}

PATH_KEYS = {"identity", "bundle"}
INT_KEYS = {"ssh_port", "remote_timeout"}
BOOL_KEYS = {"debug", "start", "dry_run", "verbose"}

# Settings whose command-line flag differs from the key name.
FLAG_NAMES = {
    "snapshot_command": "--snapshot-cmd",
    "ssh_port": "--port",
    "remote_timeout": "--timeout",
}


class CloneError(RuntimeError):
    """Raised when a clone stage cannot complete."""


class FatalStageError(CloneError):
    """A failure after which the pipeline cannot safely continue."""


class AdvisoryStageError(CloneError):
    """A failure that is reported but does not abort the pipeline."""


class ConfigError(CloneError):
    """Raised when the clone configuration is incomplete or inconsistent."""


class Mode(str, Enum):
    HOT = "hot"
    COLD = "cold"


@dataclass(slots=True)
class CloneConfig:
    """Everything a clone run needs to know, passed explicitly to each component."""

    source_sid: str | None = None
    target_sid: str | None = None
    source_host: str | None = None
    snapshot_command: str | None = None
    source_home: str | None = None
    oracle_home: str | None = None
    grid_home: str | None = None
    asm_sid: str = DEFAULT_ASM_SID
    asm_diskstring: str | None = None
    oracle_base: str = DEFAULT_ORACLE_BASE
    audit_dest: str | None = None
    controlfile_source: str | None = None
    prefix: str | None = None
    dest: str | None = None
    data_dest: str | None = None
    redo_dest: str | None = None
    temp_dest: str | None = None
    archive_dest: str | None = None
    temp_size: str | None = None
    sga_target: str = DEFAULT_SGA_TARGET
    pga_target: str = DEFAULT_PGA_TARGET
    mode: Mode = Mode.HOT
    debug: bool = False
    start: bool = True
    dry_run: bool = False
    verbose: bool = False
    ssh_user: str = "oracle"
    ssh_port: int = DEFAULT_SSH_PORT
    identity: Path | None = None
    remote_timeout: int = DEFAULT_REMOTE_TIMEOUT
    remote_dir: str = DEFAULT_REMOTE_DIR
    bundle: Path = Path(DEFAULT_BUNDLE)

    @property
    def target_prefix(self) -> str:
        if self.prefix:
            return self.prefix.upper()
        if not self.target_sid:
            raise ConfigError("A storage prefix requires --prefix or a target identifier.")
        return self.target_sid.upper()

    @property
    def source_oracle_home(self) -> str:
        home = self.source_home or self.oracle_home or os.environ.get("ORACLE_HOME")
        if not home:
            raise ConfigError("Unable to determine the source ORACLE_HOME; pass --source-home.")
        return home

    @property
    def target_oracle_home(self) -> str:
        home = self.oracle_home or os.environ.get("ORACLE_HOME")
        if not home:
            raise ConfigError("Unable to determine the target ORACLE_HOME; pass --oracle-home.")
        return home

    @property
    def asm_home(self) -> str:
        home = self.grid_home or os.environ.get("GRID_HOME")
        if not home:
            raise ConfigError("Unable to determine the grid infrastructure home; pass --grid-home.")
        return home

    def destination(self, kind: str) -> str:
        """Return the data/redo/temp/archive destination, falling back to the shared one."""

        value = getattr(self, f"{kind}_dest")
        if value:
            return value
        if self.dest:
            return self.dest
        return f"{self.oracle_base}/oradata/{self.target_sid}"

    def audit_destination(self) -> str:
        if self.audit_dest:
            return self.audit_dest
        return f"{self.oracle_base}/admin/{self.target_sid}/adump"

    def require(self, *names: str) -> None:
        missing = [name for name in names if not _present(getattr(self, name))]
        if missing:
            flags = ", ".join(
                FLAG_NAMES.get(name, "--" + name.replace("_", "-")) for name in missing
            )
            raise ConfigError(f"Missing required settings: {flags}")

    def validate(self) -> None:
        if self.source_sid and self.target_sid:
            if self.source_sid.casefold() == self.target_sid.casefold():
                raise ConfigError(
                    f"Source and target identifiers must differ (both are {self.source_sid})."
                )
        if self.target_sid and len(self.target_sid) > MAX_DB_NAME:
            raise ConfigError(
                f"Target identifier {self.target_sid} exceeds {MAX_DB_NAME} characters."
            )
        if self.remote_timeout <= 0:
            raise ConfigError(f"remote_timeout must be positive (received {self.remote_timeout}).")


def _present(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return bool(value)


def _coerce(name: str, value: Any) -> Any:
    if name == "mode":
        try:
            return Mode(str(value).lower())
        except ValueError as exc:
            raise ConfigError(f"Unsupported mode {value!r}; expected 'hot' or 'cold'.") from exc
    if name in INT_KEYS:
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{name} must be an integer (received {value!r}).") from exc
    if name in BOOL_KEYS:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if name in PATH_KEYS:
        return Path(str(value)).expanduser()
    return str(value)


def build_config(*layers: Mapping[str, Any] | None) -> CloneConfig:
    """Merge configuration layers, later layers overriding earlier ones.

    ``None`` values inside a layer are ignored so unset command-line flags do not mask
    values coming from the configuration file or the environment.
    """

    known = {item.name for item in fields(CloneConfig)}
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if value is None:
                continue
            if key not in known:
                raise ConfigError(f"Unknown configuration key: {key}")
            merged[key] = _coerce(key, value)
    config = CloneConfig(**merged)
    config.validate()
    return config


def load_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Clone configuration not found: {path}")
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Unable to parse {path}: {exc}") from exc
    section = data.get("clone", data)
    if not isinstance(section, dict):
        raise ConfigError(f"{path}: [clone] must be a table.")
    values = dict(section)
    for key in PATH_KEYS & values.keys():
        candidate = Path(str(values[key])).expanduser()
        if not candidate.is_absolute():
            candidate = (path.parent / candidate).resolve()
        values[key] = candidate
    return values


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    environ = os.environ if environ is None else environ
    return {key: environ[name] for name, key in ENV_OVERRIDES.items() if environ.get(name)}


@dataclass(slots=True)
class DatabaseSession:
    """An instance the toolkit talks to; source and target never share a sid."""

    sid: str
    home: str
    host: str = "localhost"


@dataclass(slots=True)
class ConsistencyWindow:
    """Redo boundaries of the backup-mode window that bounds the storage snapshot."""

    mode: Mode
    begin_sequence: int = 0
    end_sequence: int = 0
    begin_change: int = 0
    end_change: int | None = None
    opened_at: float | None = None
    snapshot_at: float | None = None
    closed_at: float | None = None

    @property
    def is_open(self) -> bool:
        return self.opened_at is not None and self.closed_at is None

    @property
    def change_marker(self) -> int | None:
        """Recovery target; ``None`` for cold clones that need no media recovery."""

        if self.mode is Mode.COLD:
            return None
        return self.end_change

    def to_json(self) -> str:
        payload = asdict(self)
        payload["mode"] = self.mode.value
        return json.dumps(payload, indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_json(cls, text: str) -> ConsistencyWindow:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise FatalStageError(f"Unable to parse window markers: {exc}") from exc
        payload["mode"] = Mode(payload.get("mode", Mode.HOT.value))
        return cls(**payload)


WINDOW_FILE = "window.json"
PARAMETER_FILE = "init.ora"
CONTROL_FILE = "control.sql"
INVENTORY_FILE = "disks.txt"
ARCHIVE_DIR = "arch"


@dataclass(frozen=True, slots=True)
class MetadataBundle:
    """Captured source metadata, read once from an extracted transfer archive."""

    parameter_text: str
    control_script: str
    disk_inventory: str
    archived_logs: tuple[Path, ...]
    window: ConsistencyWindow

    @property
    def begin_sequence(self) -> int:
        return self.window.begin_sequence

    @property
    def end_sequence(self) -> int:
        return self.window.end_sequence

    @property
    def change_marker(self) -> int | None:
        return self.window.change_marker

    @classmethod
    def load(cls, workdir: Path) -> MetadataBundle:
        missing = [
            name
            for name in (PARAMETER_FILE, CONTROL_FILE, WINDOW_FILE)
            if not (workdir / name).exists()
        ]
        if missing:
            raise FatalStageError(f"Capture area {workdir} is missing: {', '.join(missing)}")
        inventory = workdir / INVENTORY_FILE
        archive_dir = workdir / ARCHIVE_DIR
        logs = tuple(sorted(archive_dir.iterdir())) if archive_dir.is_dir() else ()
        return cls(
            parameter_text=(workdir / PARAMETER_FILE).read_text(encoding="utf-8"),
            control_script=(workdir / CONTROL_FILE).read_text(encoding="utf-8"),
            disk_inventory=inventory.read_text(encoding="utf-8") if inventory.exists() else "",
            archived_logs=logs,
            window=ConsistencyWindow.from_json(
                (workdir / WINDOW_FILE).read_text(encoding="utf-8")
            ),
        )


@dataclass(slots=True)
class CloneContext:
    """Per-run state: configuration, the exclusive scratch area, and captured markers."""

    config: CloneConfig
    workdir: Path
    window: ConsistencyWindow | None = None
    renamed_pools: dict[str, str] = field(default_factory=dict)
    start_time: float = field(default_factory=time.monotonic)

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def source_session(self) -> DatabaseSession:
        self.config.require("source_sid")
        return DatabaseSession(
            sid=self.config.source_sid or "",
            home=self.config.source_oracle_home,
            host=self.config.source_host or "localhost",
        )

    def target_session(self) -> DatabaseSession:
        self.config.require("target_sid")
        return DatabaseSession(
            sid=self.config.target_sid or "", home=self.config.target_oracle_home
        )
