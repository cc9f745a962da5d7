"""Backup-mode window, snapshot invocation, and source metadata capture."""

from __future__ import annotations

import itertools
from pathlib import Path

import pytest

from db_snapshot_toolkit import runner
from db_snapshot_toolkit.clone import window as window_module
from db_snapshot_toolkit.clone.context import (
    AdvisoryStageError,
    ConsistencyWindow,
    FatalStageError,
    Mode,
)
from db_snapshot_toolkit.clone.sql import SqlChannel
from db_snapshot_toolkit.clone.window import (
    ArchivedLog,
    WindowController,
    capture_metadata,
    copy_archived_logs,
    invoke_snapshot,
    list_archived_logs,
    select_archived_logs,
)
from tests.helpers.fake_oracle import ScriptedDatabase

HOT_RESPONSES = {
    "current_scn": ["5000", "5100"],
    "max(sequence#) from v$log": "100",
    "from v$archived_log where resetlogs_change#": "104",
}


def _controller(database: ScriptedDatabase, mode: Mode = Mode.HOT, **kwargs) -> WindowController:
    clock = itertools.count(1000).__next__
    channel = SqlChannel("PROD", "/u01/home", transport=database)
    return WindowController(channel, mode, clock=clock, **kwargs)


def test_hot_window_orders_statements_and_records_markers() -> None:
    database = ScriptedDatabase(HOT_RESPONSES)
    controller = _controller(database)

    window = controller.begin()
    assert window.is_open
    controller.end(window)

    assert database.statements[:5] == [
        "select current_scn from v$database;",
        "alter system checkpoint;",
        "select max(sequence#) from v$log;",
        "alter system switch logfile;",
        "alter database begin backup;",
    ]
    assert database.statements[5:9] == [
        "alter database end backup;",
        "alter system archive log current;",
        "select current_scn from v$database;",
        "alter system archive log current;",
    ]
    assert (window.begin_change, window.end_change) == (5000, 5100)
    assert (window.begin_sequence, window.end_sequence) == (100, 104)
    assert window.change_marker == 5100
    assert not window.is_open


def test_begin_failure_is_fatal() -> None:
    database = ScriptedDatabase(
        {**HOT_RESPONSES, "begin backup": "ORA-01123: cannot start online backup"}
    )

    with pytest.raises(FatalStageError, match="Unable to enter backup mode"):
        _controller(database).begin()


def test_end_backup_retries_and_tolerates_not_in_backup(capsys) -> None:
    database = ScriptedDatabase(
        {
            **HOT_RESPONSES,
            "end backup": ["ORA-03113: end-of-file on communication channel", "ORA-01142"],
        }
    )
    controller = _controller(database)
    window = controller.begin()

    controller.end(window)

    assert database.statements.count("alter database end backup;") == 2
    assert "attempt 1/3" in capsys.readouterr().err


def test_end_backup_gives_up_after_bounded_attempts() -> None:
    database = ScriptedDatabase({"end backup": "ORA-03113: end-of-file"})
    controller = _controller(database, attempts=2)

    with pytest.raises(FatalStageError, match="still in backup mode after 2 attempts"):
        controller.release()

    assert database.statements.count("alter database end backup;") == 2


def test_guard_releases_source_when_body_fails() -> None:
    database = ScriptedDatabase(HOT_RESPONSES)
    controller = _controller(database)

    with pytest.raises(RuntimeError, match="snapshot exploded"):
        with controller.guard():
            raise RuntimeError("snapshot exploded")

    assert database.statements[-1] == "alter database end backup;"


def test_guard_reports_failed_compensation() -> None:
    database = ScriptedDatabase({**HOT_RESPONSES, "end backup": "ORA-03113: end-of-file"})
    controller = _controller(database)

    with pytest.raises(FatalStageError) as excinfo:
        with controller.guard():
            raise FatalStageError("snapshot exploded")

    message = str(excinfo.value)
    assert "snapshot exploded" in message
    assert "releasing PROD also failed" in message


def test_guard_leaves_closed_window_alone() -> None:
    database = ScriptedDatabase(HOT_RESPONSES)
    controller = _controller(database)

    with pytest.raises(KeyError):
        with controller.guard() as window:
            controller.end(window)
            raise KeyError("after close")

    assert database.statements.count("alter database end backup;") == 1


def test_cold_window_restart_failure_is_advisory() -> None:
    database = ScriptedDatabase({"startup": "ORA-01078: failure in processing parameters"})
    controller = _controller(database, Mode.COLD)

    window = controller.begin()
    with pytest.raises(AdvisoryStageError, match="did not start"):
        controller.end(window)

    assert database.statements == ["shutdown immediate", "startup"]
    assert window.closed_at is not None
    assert window.change_marker is None


def test_snapshot_runs_strictly_inside_the_window(monkeypatch: pytest.MonkeyPatch) -> None:
    recorded: list[list[str]] = []
    monkeypatch.setattr(
        window_module.runner,
        "run_commands",
        lambda commands, **_kwargs: recorded.extend(list(command) for command in commands),
    )
    clock = itertools.count(1000).__next__
    controller = WindowController(
        SqlChannel("PROD", "/u01/home", transport=ScriptedDatabase(HOT_RESPONSES)),
        Mode.HOT,
        clock=clock,
    )

    window = controller.begin()
    invoke_snapshot("snapctl take --volume 'prod data'", window, clock=clock)
    controller.end(window)

    assert recorded == [["snapctl", "take", "--volume", "prod data"]]
    assert window.opened_at < window.snapshot_at < window.closed_at


def test_snapshot_outside_window_is_fatal() -> None:
    closed = ConsistencyWindow(mode=Mode.HOT, opened_at=1.0, closed_at=2.0)

    with pytest.raises(FatalStageError, match="outside an open consistency window"):
        invoke_snapshot("snapctl take", closed)
    with pytest.raises(FatalStageError):
        invoke_snapshot("snapctl take", ConsistencyWindow(mode=Mode.HOT))


def test_snapshot_command_failure_is_fatal(monkeypatch: pytest.MonkeyPatch) -> None:
    def failing(commands, **_kwargs):
        raise runner.CommandError(list(commands)[0], 3, stderr="volume busy")

    monkeypatch.setattr(window_module.runner, "run_commands", failing)
    window = ConsistencyWindow(mode=Mode.HOT, opened_at=1.0)

    with pytest.raises(FatalStageError, match="volume busy"):
        invoke_snapshot("snapctl take", window)
    assert window.snapshot_at is None


def test_select_archived_logs_keeps_window_range_once() -> None:
    logs = [
        ArchivedLog(1, sequence, 77, f"/arch/1_{sequence}_77.dbf") for sequence in range(98, 107)
    ]
    logs.append(ArchivedLog(1, 102, 77, "+FRA/PROD/ARCHIVELOG/thread_1_seq_102.300"))

    selected = select_archived_logs(logs, 100, 104)

    assert [log.sequence for log in selected] == [100, 101, 102, 103, 104]
    assert selected[2].name == "/arch/1_102_77.dbf"


def test_list_archived_logs_parses_rows() -> None:
    database = ScriptedDatabase(
        {"thread# || ' '": "1 100 77 +FRA/PROD/1_100.arc\n1 101 77 +FRA/PROD/1_101.arc"}
    )
    channel = SqlChannel("PROD", "/u01/home", transport=database)
    window = ConsistencyWindow(mode=Mode.HOT, begin_sequence=100, end_sequence=104)

    logs = list_archived_logs(channel, window)

    assert [log.filename for log in logs] == ["1_100_77.dbf", "1_101_77.dbf"]
    assert "sequence# between 100 and 104" in database.statements[0]
    with pytest.raises(FatalStageError, match="Unrecognized archived log row"):
        ArchivedLog.parse("1 100")


def test_copy_archived_logs_uses_asmcmd_for_asm_paths(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, make_config
) -> None:
    captured: list[tuple[list[str], dict]] = []
    monkeypatch.setattr(
        window_module.runner,
        "capture",
        lambda command, **kwargs: captured.append((list(command), kwargs)) or "",
    )
    local = tmp_path / "1_101_77.arc"
    local.write_bytes(b"redo")
    logs = [
        ArchivedLog(1, 100, 77, "+FRA/PROD/ARCHIVELOG/thread_1_seq_100.300"),
        ArchivedLog(1, 101, 77, str(local)),
    ]
    workdir = tmp_path / "capture"
    workdir.mkdir()

    copied = copy_archived_logs(logs, workdir, make_config())

    assert [path.name for path in copied] == ["1_100_77.dbf", "1_101_77.dbf"]
    command, kwargs = captured[0]
    assert command == [
        "/u01/app/grid/bin/asmcmd",
        "cp",
        "+FRA/PROD/ARCHIVELOG/thread_1_seq_100.300",
        str(workdir / "arch" / "1_100_77.dbf"),
    ]
    assert kwargs["env"] == {"ORACLE_SID": "+ASM", "ORACLE_HOME": "/u01/app/grid"}
    assert (workdir / "arch" / "1_101_77.dbf").read_bytes() == b"redo"


def test_capture_metadata_writes_parameters_trace_and_inventory(
    tmp_path: Path, make_config
) -> None:
    database = ScriptedDatabase(
        {
            "name = 'spfile'": "+DATA/PROD/PARAMETERFILE/spfile.266.1101",
            "g.name || ' ' || d.path": "DATA /dev/mapper/prod_data01\nREDO /dev/mapper/prod_redo01",
        }
    )
    channel = SqlChannel("PROD", "/u01/home", transport=database)

    capture_metadata(channel, tmp_path, make_config())

    assert f"create pfile='{tmp_path / 'init.ora'}' from spfile;" in database.statements
    assert (
        f"alter database backup controlfile to trace as '{tmp_path / 'control.sql'}' "
        "reuse resetlogs;"
    ) in database.statements
    assert (tmp_path / "disks.txt").read_text(encoding="utf-8") == (
        "DATA /dev/mapper/prod_data01\nREDO /dev/mapper/prod_redo01\n"
    )


def test_capture_metadata_uses_supplied_control_trace(tmp_path: Path, make_config) -> None:
    trace = tmp_path / "supplied.sql"
    trace.write_text("CREATE CONTROLFILE ...\n;\n", encoding="utf-8")
    workdir = tmp_path / "capture"
    workdir.mkdir()
    database = ScriptedDatabase()
    channel = SqlChannel("PROD", "/u01/home", transport=database)

    capture_metadata(channel, workdir, make_config(controlfile_source=str(trace)))

    assert (workdir / "control.sql").read_text(encoding="utf-8") == trace.read_text(
        encoding="utf-8"
    )
    assert f"create pfile='{workdir / 'init.ora'}' from memory;" in database.statements
    assert not any("backup controlfile" in statement for statement in database.statements)
