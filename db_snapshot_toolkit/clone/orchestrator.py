"""Stage sequencing for a clone run.

Every entry point records one :class:`StageResult` per stage it reaches. An advisory
failure is reported and the run continues; a fatal failure moves the run to
``Stage.FAILED`` and nothing after it runs.
"""

from __future__ import annotations

import contextlib
import shutil
import signal
import sys
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from .. import runner
from .bridge import RemoteBridge, build_bundle, extract_bundle
from .context import (
    ARCHIVE_DIR,
    DEFAULT_BUNDLE,
    WINDOW_FILE,
    AdvisoryStageError,
    CloneConfig,
    CloneError,
    CloneContext,
    ConsistencyWindow,
    FatalStageError,
    MetadataBundle,
    Mode,
)
from .metadata import TargetLayout, build_namespace_map, extract_pools, transform
from .recovery import RecoveryController
from .sql import SqlChannel, StorageChannel
from .storage import StorageRenamer
from .window import (
    WindowController,
    capture_metadata,
    copy_archived_logs,
    invoke_snapshot,
    list_archived_logs,
    write_window,
)

SCRATCH_PREFIX = "db-snapshot-"
CLONE_DIR = "clone"
TARGET_PARAMETER_FILE = "init_clone.ora"
TARGET_CONTROL_FILE = "create_controlfile.sql"
TARGET_TEMPFILE_SCRIPT = "tempfiles.sql"
INTERRUPT_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


class Stage(Enum):
    INIT = "init"
    STOP = "stop"
    PREPARE = "prepare"
    SNAPSHOT = "snapshot"
    FINALIZE = "finalize"
    BUNDLE = "bundle"
    RELEASE = "release"
    TRANSFER = "transfer"
    RENAME = "rename"
    METADATA = "metadata"
    RECOVER = "recover"
    TEMPFIX = "tempfix"
    RESTART = "restart"
    DONE = "done"
    FAILED = "failed"


class StageOutcome(Enum):
    SUCCESS = "success"
    ADVISORY = "advisory"
    FATAL = "fatal"


@dataclass(slots=True)
class StageResult:
    stage: Stage
    outcome: StageOutcome
    output: str = ""


class StageFailed(FatalStageError):
    """A stage failed fatally and its result has already been recorded."""

    def __init__(self, stage: Stage, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage.value}: {cause}")


@contextlib.contextmanager
def scratch_area(*, debug: bool = False, prefix: str = SCRATCH_PREFIX) -> Iterator[Path]:
    """Create an exclusive working directory that is removed on every exit path.

    With ``debug`` set the directory is kept for inspection and its location is printed.
    """

    path = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        yield path
    finally:
        if debug:
            _log(f"Keeping scratch area {path}")
        else:
            shutil.rmtree(path, ignore_errors=True)


@contextlib.contextmanager
def interrupt_on_signals(signals=INTERRUPT_SIGNALS) -> Iterator[None]:
    """Turn termination signals into ``KeyboardInterrupt`` so cleanup handlers run."""

    def _interrupt(signum, _frame):
        raise KeyboardInterrupt(f"received signal {signal.Signals(signum).name}")

    previous = {signum: signal.signal(signum, _interrupt) for signum in signals}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class Orchestrator:
    """Run clone stages against explicit channels built from a :class:`CloneContext`.

    Channels and the bridge are created on first use; tests pass their own.
    """

    def __init__(
        self,
        context: CloneContext,
        *,
        source: SqlChannel | None = None,
        target: SqlChannel | None = None,
        storage: SqlChannel | None = None,
        bridge: RemoteBridge | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.context = context
        self.clock = clock
        self.state = Stage.INIT
        self.results: list[StageResult] = []
        self.bundle: MetadataBundle | None = None
        self._source = source
        self._target = target
        self._storage = storage
        self._bridge = bridge

    @property
    def config(self) -> CloneConfig:
        return self.context.config

    @property
    def source(self) -> SqlChannel:
        if self._source is None:
            session = self.context.source_session()
            self._source = SqlChannel(
                session.sid,
                session.home,
                dry_run=self.config.dry_run,
                verbose=self.config.verbose,
            )
        return self._source

    @property
    def target(self) -> SqlChannel:
        if self._target is None:
            session = self.context.target_session()
            self._target = SqlChannel(
                session.sid,
                session.home,
                dry_run=self.config.dry_run,
                verbose=self.config.verbose,
            )
        return self._target

    @property
    def storage(self) -> SqlChannel:
        if self._storage is None:
            self._storage = StorageChannel(
                self.config.asm_sid,
                self.config.asm_home,
                dry_run=self.config.dry_run,
                verbose=self.config.verbose,
            )
        return self._storage

    @property
    def bridge(self) -> RemoteBridge:
        if self._bridge is None:
            self._bridge = RemoteBridge(self.config, self.context.workdir)
        return self._bridge

    @property
    def clone_dir(self) -> Path:
        return self.context.workdir / CLONE_DIR

    def window_controller(self) -> WindowController:
        return WindowController(self.source, self.config.mode, clock=self.clock)

    def renamer(self) -> StorageRenamer:
        return StorageRenamer(
            self.storage,
            grid_home=self.storage.home,
            workdir=self.context.workdir,
            diskstring=self.config.asm_diskstring,
            verbose=self.config.verbose,
        )

    def recovery(self) -> RecoveryController:
        self.config.require("target_sid")
        return RecoveryController(self.target, self.config.target_sid or "")

    # Stage bookkeeping

    def _stage(self, stage: Stage, action: Callable[[], str | None]) -> StageResult:
        self.state = stage
        _log(f"Stage {stage.value}")
        try:
            output = action()
        except AdvisoryStageError as exc:
            _warn(f"{stage.value}: {exc}")
            result = StageResult(stage, StageOutcome.ADVISORY, str(exc))
        except (CloneError, runner.CommandError, OSError) as exc:
            self.results.append(StageResult(stage, StageOutcome.FATAL, str(exc)))
            raise StageFailed(stage, exc) from exc
        else:
            result = StageResult(stage, StageOutcome.SUCCESS, output or "")
        self.results.append(result)
        return result

    def _execute(self, body: Callable[[], None]) -> list[StageResult]:
        try:
            body()
        except StageFailed as exc:
            self.state = Stage.FAILED
            _error(str(exc))
        except FatalStageError as exc:
            # Compensation after a failed stage also failed.
            self.state = Stage.FAILED
            self.results.append(StageResult(Stage.FAILED, StageOutcome.FATAL, str(exc)))
            _error(str(exc))
        else:
            self.state = Stage.DONE
        return self.results

    @property
    def failed(self) -> bool:
        return any(result.outcome is StageOutcome.FATAL for result in self.results)

    # Entry points

    def stop(self) -> list[StageResult]:
        """Tear down a previous clone: abort the instance and drop its disk groups."""

        return self._execute(lambda: self._stage(Stage.STOP, self._stop))

    def prepare(self) -> list[StageResult]:
        """Open the window and capture metadata; the source stays in backup mode or shut down."""

        def body() -> None:
            with self._prepared_window(self.window_controller()):
                self._stage(Stage.BUNDLE, self._write_bundle)

        return self._execute(body)

    def finalize(self) -> list[StageResult]:
        """Close the window opened by ``prepare`` and add the window's archived redo."""

        def body() -> None:
            self._stage(Stage.FINALIZE, self._finalize_prepared)
            self._stage(Stage.BUNDLE, self._write_bundle)

        return self._execute(body)

    def release(self) -> list[StageResult]:
        """End backup mode (or restart a cold source) without capturing anything."""

        return self._execute(
            lambda: self._stage(Stage.RELEASE, lambda: self.window_controller().release())
        )

    def snapshot(self) -> list[StageResult]:
        """Source-side prepare, snapshot, and finalize under one guarded window."""

        return self._execute(self._source_stages)

    def clone(self) -> list[StageResult]:
        """Target-side stages, rename through restart, from the transfer archive."""

        return self._execute(lambda: self._clone_stages(self.config.bundle))

    def run(self) -> list[StageResult]:
        """Tear down any previous clone, produce a fresh archive, and build the clone."""

        def body() -> None:
            self.config.require("snapshot_command")
            self._stage(Stage.STOP, self._stop)
            if self.config.source_host:
                archive = self.context.workdir / DEFAULT_BUNDLE
                self._stage(Stage.TRANSFER, lambda: self._transfer(archive))
            else:
                archive = self.config.bundle
                self._source_stages()
            self._clone_stages(archive)

        return self._execute(body)

    # Source side

    def _source_stages(self) -> None:
        self.config.require("snapshot_command")
        controller = self.window_controller()
        with self._prepared_window(controller) as window:
            self._stage(
                Stage.SNAPSHOT,
                lambda: invoke_snapshot(
                    self.config.snapshot_command or "",
                    window,
                    dry_run=self.config.dry_run,
                    clock=self.clock,
                ),
            )
            self._stage(Stage.FINALIZE, lambda: self._finalize(controller))
        self._stage(Stage.BUNDLE, self._write_bundle)

    @contextlib.contextmanager
    def _prepared_window(self, controller: WindowController) -> Iterator[ConsistencyWindow]:
        """Guarded window with the source metadata captured.

        A cold source is captured before it is shut down; a hot one inside backup mode.
        """

        cold = self.config.mode is Mode.COLD
        if cold:
            self._stage(Stage.PREPARE, self._capture)
        with controller.guard() as window:
            self.context.window = window
            if not cold:
                self._stage(Stage.PREPARE, self._capture)
            write_window(self.context.workdir, window)
            yield window

    def _capture(self) -> str:
        capture_metadata(self.source, self.context.workdir, self.config)
        return f"metadata captured from {self.source.sid}"

    def _load_window(self) -> ConsistencyWindow:
        extract_bundle(self.config.bundle, self.context.workdir)
        path = self.context.workdir / WINDOW_FILE
        if not path.exists():
            raise FatalStageError(f"{self.config.bundle} does not contain window markers")
        window = ConsistencyWindow.from_json(path.read_text(encoding="utf-8"))
        if window.closed_at is not None:
            raise FatalStageError(f"The window in {self.config.bundle} is already closed")
        self.context.window = window
        return window

    def _finalize_prepared(self) -> str:
        window = self._load_window()
        if window.mode is not self.config.mode:
            _warn(
                f"Finalizing a {window.mode.value} window; "
                f"ignoring --mode {self.config.mode.value}"
            )
        return self._finalize(WindowController(self.source, window.mode, clock=self.clock))

    def _finalize(self, controller: WindowController) -> str:
        window = self.context.window
        if window is None:
            raise FatalStageError("No consistency window to finalize")
        advisory: AdvisoryStageError | None = None
        try:
            controller.end(window)
        except AdvisoryStageError as exc:
            advisory = exc
        write_window(self.context.workdir, window)
        if window.change_marker is not None:
            logs = list_archived_logs(self.source, window)
            copy_archived_logs(logs, self.context.workdir, self.config)
        if advisory is not None:
            raise advisory
        return f"window closed at sequence {window.end_sequence}"

    def _write_bundle(self) -> str:
        if self.config.dry_run:
            print(f"DRY-RUN: bundle {self.context.workdir} -> {self.config.bundle}", flush=True)
            return ""
        build_bundle(self.context.workdir, self.config.bundle)
        _log(f"Wrote {self.config.bundle}")
        return str(self.config.bundle)

    def _transfer(self, archive: Path) -> str:
        self.bridge.transfer(archive)
        return str(archive)

    # Target side

    def _stop(self) -> str:
        self.recovery().stop()
        dropped = self.renamer().teardown(self.config.target_prefix)
        return f"dropped {len(dropped)} disk groups"

    def _clone_stages(self, archive: Path) -> None:
        if self.config.dry_run and not archive.exists():
            self._stage(Stage.RENAME, lambda: self._skip(archive))
            return
        layout = TargetLayout.from_config(self.config)
        recovery = self.recovery()
        self._stage(Stage.RENAME, lambda: self._rename(archive, layout))
        bundle = self.bundle
        assert bundle is not None
        self._stage(Stage.METADATA, lambda: self._transform(bundle, layout))
        self._stage(Stage.RECOVER, lambda: self._recover(recovery, bundle))
        self._stage(Stage.TEMPFIX, lambda: self._tempfix(recovery))
        self._stage(Stage.RESTART, lambda: recovery.restart(self.config.start))

    def _skip(self, archive: Path) -> str:
        raise AdvisoryStageError(f"no transfer archive at {archive}; target stages skipped")

    def _rename(self, archive: Path, layout: TargetLayout) -> str:
        extract_bundle(archive, self.clone_dir)
        bundle = MetadataBundle.load(self.clone_dir)
        self.bundle = bundle
        self.context.window = bundle.window
        pools = extract_pools(bundle.control_script, bundle.disk_inventory)
        namespace = build_namespace_map(pools, layout.prefix)
        renamer = self.renamer()
        renamed = renamer.rename(namespace)
        renamer.mount(sorted(renamed.values()))
        self.context.renamed_pools = renamed
        return ", ".join(f"{old}->{new}" for old, new in renamed.items())

    def _transform(self, bundle: MetadataBundle, layout: TargetLayout) -> str:
        result = transform(
            bundle.parameter_text, bundle.control_script, bundle.disk_inventory, layout
        )
        (self.clone_dir / TARGET_PARAMETER_FILE).write_text(
            result.parameter_file, encoding="utf-8"
        )
        (self.clone_dir / TARGET_CONTROL_FILE).write_text(result.control_script, encoding="utf-8")
        (self.clone_dir / TARGET_TEMPFILE_SCRIPT).write_text(
            "".join(f"{statement}\n" for statement in result.tempfile_statements),
            encoding="utf-8",
        )
        return f"{len(result.tempfile_statements)} tempfile statements"

    def _recover(self, recovery: RecoveryController, bundle: MetadataBundle) -> str:
        parameter_file = self.clone_dir / TARGET_PARAMETER_FILE
        recovery.create(parameter_file, self.clone_dir / TARGET_CONTROL_FILE)
        recovery.recover(bundle.change_marker, self.clone_dir / ARCHIVE_DIR)
        recovery.open(parameter_file)
        marker = bundle.change_marker
        return "no media recovery" if marker is None else f"recovered until change {marker}"

    def _tempfix(self, recovery: RecoveryController) -> str:
        script = self.clone_dir / TARGET_TEMPFILE_SCRIPT
        statements = [line for line in script.read_text(encoding="utf-8").splitlines() if line]
        recovery.add_tempfiles(statements)
        return f"{len(statements)} tempfiles added"


def emit_summary(context: CloneContext, results: list[StageResult]) -> None:
    config = context.config
    elapsed = time.monotonic() - context.start_time
    print("Summary:")
    if config.source_sid:
        print(f"  source: {config.source_sid}@{config.source_host or 'localhost'}")
    if config.target_sid:
        print(f"  target: {config.target_sid}")
    window = context.window
    if window is not None:
        print(
            f"  window: {window.mode.value}, sequences {window.begin_sequence}-"
            f"{window.end_sequence}, change {window.change_marker}"
        )
    for old, new in context.renamed_pools.items():
        print(f"  pool: {old} -> {new}")
    for result in results:
        print(f"  {result.stage.value}: {result.outcome.value}")
    print(f"  elapsed: {elapsed:.1f}s")


def _log(message: str) -> None:
    print(f"==> {message}", flush=True)


def _warn(message: str) -> None:
    print(f"WARNING: {message}", file=sys.stderr, flush=True)


def _error(message: str) -> None:
    print(f"ERROR: {message}", file=sys.stderr, flush=True)
