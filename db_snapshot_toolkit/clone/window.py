"""Source-side work: the backup-mode window, the storage snapshot, and metadata capture."""

from __future__ import annotations

import contextlib
import shlex
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator

from .. import runner
from .context import (
    ARCHIVE_DIR,
    CONTROL_FILE,
    INVENTORY_FILE,
    PARAMETER_FILE,
    WINDOW_FILE,
    AdvisoryStageError,
    CloneConfig,
    CloneError,
    ConfigError,
    ConsistencyWindow,
    FatalStageError,
    Mode,
)
from .sql import OracleMessage, SqlChannel, SqlError

END_BACKUP_ATTEMPTS = 3

Clock = Callable[[], float]


class WindowController:
    """Own the source database's backup-mode flag for the duration of one run."""

    def __init__(
        self,
        channel: SqlChannel,
        mode: Mode,
        *,
        clock: Clock = time.time,
        attempts: int = END_BACKUP_ATTEMPTS,
    ):
        self.channel = channel
        self.mode = mode
        self.clock = clock
        self.attempts = attempts

    def begin(self) -> ConsistencyWindow:
        window = ConsistencyWindow(mode=self.mode)
        if self.mode is Mode.COLD:
            _log(f"Shutting down {self.channel.sid} for a cold snapshot")
            try:
                self.channel.run(["shutdown immediate"])
            except SqlError as exc:
                raise FatalStageError(f"Unable to shut down {self.channel.sid}: {exc}") from exc
            window.opened_at = self.clock()
            return window

        _log(f"Placing {self.channel.sid} into backup mode")
        try:
            window.begin_change = self.channel.query_int("select current_scn from v$database;")
            self.channel.run(["alter system checkpoint;"])
            window.begin_sequence = self.channel.query_int("select max(sequence#) from v$log;")
            self.channel.run(["alter system switch logfile;"])
            self.channel.run(["alter database begin backup;"])
        except SqlError as exc:
            raise FatalStageError(
                f"Unable to enter backup mode on {self.channel.sid}: {exc}"
            ) from exc
        window.opened_at = self.clock()
        _log(
            f"Backup mode entered at change {window.begin_change}, "
            f"sequence {window.begin_sequence}"
        )
        return window

    def end(self, window: ConsistencyWindow) -> ConsistencyWindow:
        """Close ``window``; a cold source that refuses to start again is only advisory."""

        if self.mode is Mode.COLD:
            window.closed_at = self.clock()
            self._start_source()
            return window

        self._end_backup()
        window.closed_at = self.clock()
        try:
            self.channel.run(["alter system archive log current;"])
            window.end_change = self.channel.query_int("select current_scn from v$database;")
            self.channel.run(["alter system archive log current;"])
            window.end_sequence = self.channel.query_int(
                "select max(sequence#) from v$archived_log "
                "where resetlogs_change# = (select resetlogs_change# from v$database);"
            )
        except SqlError as exc:
            raise FatalStageError(f"Unable to archive the window's redo: {exc}") from exc
        if window.end_change < window.begin_change:
            raise FatalStageError(
                f"Window end change {window.end_change} precedes begin change "
                f"{window.begin_change}"
            )
        _log(
            f"Backup mode released at change {window.end_change}, "
            f"sequence {window.end_sequence}"
        )
        return window

    def release(self) -> None:
        """Return the source to normal operation without recording any markers."""

        if self.mode is Mode.COLD:
            self._start_source()
        else:
            self._end_backup()

    def _end_backup(self) -> None:
        failure: SqlError | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                self.channel.run(
                    ["alter database end backup;"], allow={OracleMessage.NOT_IN_BACKUP}
                )
                return
            except SqlError as exc:
                failure = exc
                _warn(f"Ending backup mode failed (attempt {attempt}/{self.attempts}): {exc}")
        raise FatalStageError(
            f"{self.channel.sid} is still in backup mode after {self.attempts} attempts"
        ) from failure

    def _start_source(self) -> None:
        _log(f"Starting {self.channel.sid} again")
        try:
            self.channel.run(["startup"])
        except SqlError as exc:
            raise AdvisoryStageError(
                f"{self.channel.sid} did not start after the cold snapshot: {exc}"
            ) from exc

    @contextlib.contextmanager
    def guard(self) -> Iterator[ConsistencyWindow]:
        """Open a window and release the source if the body fails before closing it."""

        window = self.begin()
        try:
            yield window
        except BaseException as exc:
            if window.is_open:
                self.compensate(exc)
            raise

    def compensate(self, cause: BaseException) -> None:
        _warn(f"Releasing {self.channel.sid} after failure: {cause}")
        try:
            self.release()
        except CloneError as exc:
            raise FatalStageError(
                f"{cause}; releasing {self.channel.sid} also failed: {exc}"
            ) from exc


def invoke_snapshot(
    command: str,
    window: ConsistencyWindow,
    *,
    dry_run: bool = False,
    clock: Clock = time.time,
) -> None:
    """Run the storage snapshot command once, strictly inside ``window``."""

    if not window.is_open:
        raise FatalStageError("Storage snapshot requested outside an open consistency window")
    argv = shlex.split(command)
    if not argv:
        raise ConfigError("The snapshot command is empty.")
    _log("Taking the storage snapshot")
    try:
        runner.run_commands([argv], dry_run=dry_run)
    except runner.CommandError as exc:
        raise FatalStageError(f"Storage snapshot failed: {exc}") from exc
    except OSError as exc:
        raise FatalStageError(f"Unable to run the snapshot command {argv[0]}: {exc}") from exc
    window.snapshot_at = clock()


def capture_metadata(channel: SqlChannel, workdir: Path, config: CloneConfig) -> None:
    """Write the parameter text, control-file trace, and disk inventory into ``workdir``."""

    parameter_path = workdir / PARAMETER_FILE
    control_path = workdir / CONTROL_FILE
    spfile = [] if channel.dry_run else channel.query(
        "select value from v$parameter where name = 'spfile';"
    )
    source = "spfile" if spfile else "memory"
    _log(f"Capturing parameters from {source}")
    statements = [f"create pfile='{parameter_path}' from {source};"]
    if config.controlfile_source:
        _log(f"Using control-file trace {config.controlfile_source}")
        if not channel.dry_run:
            shutil.copyfile(config.controlfile_source, control_path)
    else:
        statements.append(
            f"alter database backup controlfile to trace as '{control_path}' reuse resetlogs;"
        )
    try:
        channel.run(statements)
        rows = channel.query(
            "select g.name || ' ' || d.path from v$asm_disk d "
            "join v$asm_diskgroup g on d.group_number = g.group_number "
            "order by g.name, d.path;"
        )
    except SqlError as exc:
        raise FatalStageError(f"Unable to capture source metadata: {exc}") from exc
    if not channel.dry_run:
        (workdir / INVENTORY_FILE).write_text("\n".join(rows) + "\n", encoding="utf-8")


def write_window(workdir: Path, window: ConsistencyWindow) -> Path:
    path = workdir / WINDOW_FILE
    path.write_text(window.to_json(), encoding="utf-8")
    return path


@dataclass(frozen=True, slots=True)
class ArchivedLog:
    thread: int
    sequence: int
    resetlogs_id: int
    name: str

    @property
    def key(self) -> tuple[int, int, int]:
        return (self.thread, self.sequence, self.resetlogs_id)

    @property
    def filename(self) -> str:
        # Matches log_archive_format '%t_%s_%r.dbf' in the clone's parameter file.
        return f"{self.thread}_{self.sequence}_{self.resetlogs_id}.dbf"

    @classmethod
    def parse(cls, row: str) -> ArchivedLog:
        parts = row.split(None, 3)
        if len(parts) != 4:
            raise FatalStageError(f"Unrecognized archived log row: {row!r}")
        thread, sequence, resetlogs_id, name = parts
        return cls(int(thread), int(sequence), int(resetlogs_id), name.strip())


def select_archived_logs(logs: Iterable[ArchivedLog], begin: int, end: int) -> list[ArchivedLog]:
    """Logs whose sequence lies in ``[begin, end]``, one copy per thread/sequence."""

    selected: dict[tuple[int, int, int], ArchivedLog] = {}
    for log in logs:
        if begin <= log.sequence <= end and log.key not in selected:
            selected[log.key] = log
    return sorted(selected.values(), key=lambda log: log.key)


def list_archived_logs(channel: SqlChannel, window: ConsistencyWindow) -> list[ArchivedLog]:
    rows = channel.query(
        "select thread# || ' ' || sequence# || ' ' || resetlogs_id || ' ' || name "
        "from v$archived_log where name is not null "
        "and resetlogs_change# = (select resetlogs_change# from v$database) "
        f"and sequence# between {window.begin_sequence} and {window.end_sequence} "
        "order by thread#, sequence#;"
    )
    logs = [ArchivedLog.parse(row) for row in rows]
    return select_archived_logs(logs, window.begin_sequence, window.end_sequence)


def copy_archived_logs(
    logs: Iterable[ArchivedLog], workdir: Path, config: CloneConfig
) -> list[Path]:
    """Copy ``logs`` into the capture area; ASM-resident logs go through ``asmcmd``."""

    target_dir = workdir / ARCHIVE_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    copied: list[Path] = []
    for log in logs:
        destination = target_dir / log.filename
        if log.name.startswith("+"):
            grid_home = config.asm_home
            runner.capture(
                [str(Path(grid_home) / "bin" / "asmcmd"), "cp", log.name, str(destination)],
                env={"ORACLE_SID": config.asm_sid, "ORACLE_HOME": grid_home},
                dry_run=config.dry_run,
                verbose=config.verbose,
            )
        elif config.dry_run:
            print(f"DRY-RUN: copy {log.name} -> {destination}", flush=True)
        else:
            shutil.copy2(log.name, destination)
        copied.append(destination)
    _log(f"Copied {len(copied)} archived logs")
    return copied


def _log(message: str) -> None:
    print(f"==> {message}", flush=True)


def _warn(message: str) -> None:
    print(f"WARNING: {message}", file=sys.stderr, flush=True)
