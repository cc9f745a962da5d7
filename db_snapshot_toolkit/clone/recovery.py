from __future__ import annotations

from pathlib import Path
from typing import Iterable, Sequence

from .context import FatalStageError
from .sql import DatabaseStatus, OracleMessage, SqlChannel, SqlError

# Prompts for the next archived log; recovery keeps going past these.
BENIGN_RECOVERY_MESSAGES = frozenset(
    {
        OracleMessage.LOG_NOT_NEEDED,
        OracleMessage.LOG_NEEDED,
        OracleMessage.LOG_SEQUENCE,
        OracleMessage.LOG_SUGGESTION,
        OracleMessage.LOG_NOT_FOUND,
        OracleMessage.FILE_NOT_FOUND,
    }
)


class RecoveryError(FatalStageError):
    """Raised when the clone cannot be created, recovered, or opened."""


class RecoveryController:
    """Drive the clone instance from shut down to open on its own parameter file.

    ``DOWN -> STARTED (nomount) -> MOUNTED (control file created) -> recovered -> OPEN``
    """

    def __init__(self, channel: SqlChannel, database_name: str):
        self.channel = channel
        self.database_name = database_name.upper()

    def _run(
        self,
        statements: Sequence[str],
        action: str,
        allow: Iterable[OracleMessage] = (),
    ) -> None:
        try:
            self.channel.run(statements, allow=allow)
        except SqlError as exc:
            raise RecoveryError(f"{action} failed on {self.channel.sid}: {exc}") from exc

    def stop(self) -> None:
        """Abort any running clone instance; an instance that is already down is fine."""

        _log(f"Stopping {self.channel.sid}")
        self._run(["shutdown abort"], "Shutdown", allow={OracleMessage.NOT_AVAILABLE})

    def create(self, parameter_file: Path, control_script: Path) -> None:
        self.channel.require_status(DatabaseStatus.DOWN)
        _log(f"Starting {self.channel.sid} in nomount with {parameter_file.name}")
        self._run([f"startup nomount pfile='{parameter_file}'"], "Startup nomount")
        self.channel.require_status(DatabaseStatus.STARTED)
        _log("Creating the control file")
        self._run([f"@{control_script}"], "Control file creation")
        self.channel.require_status(DatabaseStatus.MOUNTED)

    def recover(self, change_marker: int | None, archive_dir: Path) -> None:
        """Apply archived redo from ``archive_dir`` up to exactly ``change_marker``."""

        if change_marker is None:
            _log("Cold snapshot; no media recovery required")
            return
        _log(f"Recovering until change {change_marker}")
        self._run(
            [
                f"alter database recover automatic from '{archive_dir}' database "
                f"until change {change_marker} using backup controlfile;"
            ],
            "Media recovery",
            allow=BENIGN_RECOVERY_MESSAGES,
        )

    def open(self, parameter_file: Path) -> None:
        _log("Opening with resetlogs")
        self._run(["alter database open resetlogs;"], "Open resetlogs")
        self._run([f"create spfile from pfile='{parameter_file}';"], "Creating the spfile")
        self.channel.require_status(DatabaseStatus.OPEN)

    def add_tempfiles(self, statements: Sequence[str]) -> None:
        if not statements:
            _log("No tempfiles to add")
            return
        _log(f"Adding {len(statements)} tempfiles")
        self._run(list(statements), "Tempfile creation")

    def restart(self, start: bool = True) -> None:
        """Bounce the clone on its spfile, or leave it down when ``start`` is off."""

        _log(f"Shutting down {self.channel.sid}")
        self._run(["shutdown immediate"], "Shutdown")
        if not start:
            _log(f"Leaving {self.channel.sid} shut down")
            return
        _log(f"Starting {self.channel.sid} from its spfile")
        self._run(["startup"], "Startup")
        self.channel.require_status(DatabaseStatus.OPEN)
        self.verify()

    def verify(self) -> None:
        if self.channel.dry_run:
            return
        rows = self.channel.query("select name from v$database;")
        name = rows[0].strip().upper() if rows else ""
        if name != self.database_name:
            raise RecoveryError(
                f"{self.channel.sid} reports database name {name or '<none>'}, "
                f"expected {self.database_name}"
            )


def _log(message: str) -> None:
    print(f"==> {message}", flush=True)
