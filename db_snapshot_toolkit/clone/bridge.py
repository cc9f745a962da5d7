"""Move captured metadata between hosts.

The capture area travels as one ``tar.gz`` archive. The remote leg pushes a
self-contained zipapp of this package to the source host, runs the source-side
``snapshot`` stage there under a wall-clock ceiling, and pulls the archive back.
"""

from __future__ import annotations

import shlex
import shutil
import sys
import tarfile
import zipapp
from pathlib import Path
from typing import Sequence

from .. import runner
from .context import DEFAULT_BUNDLE, CloneConfig, FatalStageError

PACKAGE_ROOT = Path(__file__).resolve().parent.parent
EXECUTABLE_NAME = "db-snapshot.pyz"
REMOTE_LOG = "remote.log"
BUNDLE_EXCLUDES = {EXECUTABLE_NAME, REMOTE_LOG}

ZIPAPP_MAIN = f"""import sys

from {PACKAGE_ROOT.name}.cli import main

sys.exit(main())
"""


class BridgeError(FatalStageError):
    """Raised when the remote leg fails, times out, or cannot move the archive."""


def build_bundle(workdir: Path, output: Path) -> Path:
    """Pack everything in ``workdir`` into ``output``."""

    output.parent.mkdir(parents=True, exist_ok=True)
    resolved = output.resolve()
    with tarfile.open(output, "w:gz") as bundle:
        for item in sorted(workdir.iterdir()):
            if item.name in BUNDLE_EXCLUDES or item.resolve() == resolved:
                continue
            bundle.add(item, arcname=item.name)
    return output


def extract_bundle(archive: Path, workdir: Path) -> Path:
    if not archive.exists():
        raise BridgeError(f"Transfer archive not found: {archive}")
    try:
        with tarfile.open(archive, "r:gz") as bundle:
            bundle.extractall(workdir, filter="data")
    except (tarfile.TarError, OSError) as exc:
        raise BridgeError(f"Unable to extract {archive}: {exc}") from exc
    return workdir


def build_executable(staging: Path) -> Path:
    """Write ``db-snapshot.pyz`` into ``staging``; it runs the CLI with the system python3."""

    source = staging / "zipapp"
    shutil.copytree(
        PACKAGE_ROOT,
        source / PACKAGE_ROOT.name,
        ignore=shutil.ignore_patterns("__pycache__", "*.pyc"),
    )
    (source / "__main__.py").write_text(ZIPAPP_MAIN, encoding="utf-8")
    target = staging / EXECUTABLE_NAME
    zipapp.create_archive(source, target, interpreter="/usr/bin/env python3")
    shutil.rmtree(source)
    return target


class RemoteBridge:
    """Run the source-side stages on ``config.source_host`` over ssh/scp."""

    def __init__(self, config: CloneConfig, workdir: Path):
        config.require("source_host", "source_sid")
        self.config = config
        self.workdir = workdir
        self.remote_dir = f"{config.remote_dir.rstrip('/')}/{workdir.name}"

    def ssh_prefix(self) -> list[str]:
        prefix = ["ssh", "-o", "BatchMode=yes", "-p", str(self.config.ssh_port)]
        if self.config.identity:
            prefix.extend(["-i", str(self.config.identity)])
        prefix.append(f"{self.config.ssh_user}@{self.config.source_host}")
        return prefix

    def scp_prefix(self) -> list[str]:
        prefix = ["scp", "-q", "-o", "BatchMode=yes", "-P", str(self.config.ssh_port)]
        if self.config.identity:
            prefix.extend(["-i", str(self.config.identity)])
        return prefix

    def remote_path(self, name: str) -> str:
        return f"{self.remote_dir}/{name}"

    def remote_location(self, name: str) -> str:
        return f"{self.config.ssh_user}@{self.config.source_host}:{self.remote_path(name)}"

    def remote_arguments(self, stage: str) -> list[str]:
        """Command line for the pushed executable running ``stage`` on the source host."""

        config = self.config
        arguments = [
            "python3",
            self.remote_path(EXECUTABLE_NAME),
            stage,
            "--source-sid",
            config.source_sid or "",
            "--mode",
            config.mode.value,
            "--bundle",
            self.remote_path(DEFAULT_BUNDLE),
        ]
        if stage != "release":
            arguments.extend(["--snapshot-cmd", config.snapshot_command or ""])
        optional = {
            "--source-home": config.source_home or config.oracle_home,
            "--grid-home": config.grid_home,
            "--controlfile-source": config.controlfile_source,
        }
        for flag, value in optional.items():
            if value:
                arguments.extend([flag, value])
        if config.dry_run:
            arguments.append("--dry-run")
        if config.verbose:
            arguments.append("--verbose")
        return arguments

    def _ssh(self, command: Sequence[str], *, timeout: float | None = None) -> str:
        quoted = " ".join(shlex.quote(part) for part in command)
        return runner.capture(
            [*self.ssh_prefix(), quoted],
            timeout=timeout,
            dry_run=self.config.dry_run,
            verbose=self.config.verbose,
        )

    def _scp(self, source: str, destination: str) -> None:
        runner.capture(
            [*self.scp_prefix(), source, destination],
            timeout=self.config.remote_timeout,
            dry_run=self.config.dry_run,
            verbose=self.config.verbose,
        )

    def push(self) -> None:
        executable = build_executable(self.workdir)
        _log(f"Pushing {executable.name} to {self.config.source_host}")
        self._ssh(["mkdir", "-p", self.remote_dir], timeout=self.config.remote_timeout)
        self._scp(str(executable), self.remote_location(EXECUTABLE_NAME))

    def execute(self, stage: str) -> str:
        """Run ``stage`` remotely; the whole call is bounded by ``remote_timeout``."""

        ceiling = self.config.remote_timeout
        command = ["timeout", str(ceiling), *self.remote_arguments(stage)]
        _log(f"Running {stage} on {self.config.source_host} (limit {ceiling}s)")
        try:
            output = self._ssh(command, timeout=ceiling)
        except runner.CommandError as exc:
            self._record(exc.stderr or "")
            raise
        self._record(output)
        return output

    def pull(self, destination: Path) -> Path:
        _log(f"Pulling {DEFAULT_BUNDLE} from {self.config.source_host}")
        self._scp(self.remote_location(DEFAULT_BUNDLE), str(destination))
        return destination

    def cleanup(self) -> None:
        try:
            self._ssh(["rm", "-rf", self.remote_dir], timeout=self.config.remote_timeout)
        except runner.CommandError as exc:
            _warn(f"Unable to remove {self.remote_dir} on {self.config.source_host}: {exc}")

    def compensate(self, cause: BaseException) -> None:
        _warn(f"Releasing {self.config.source_sid} on {self.config.source_host}: {cause}")
        try:
            self.execute("release")
        except runner.CommandError as exc:
            raise BridgeError(
                f"Remote stage failed: {cause}; releasing the source also failed: {exc}"
            ) from exc

    def transfer(self, destination: Path) -> Path:
        """Push, run the guarded source-side stages, and pull the archive to ``destination``.

        A timeout or non-zero exit anywhere in the remote leg is a total failure.
        """

        try:
            self.push()
            try:
                self.execute("snapshot")
            except runner.CommandError as exc:
                self.compensate(exc)
                raise BridgeError(
                    f"Remote stage failed on {self.config.source_host}: {exc}"
                ) from exc
            return self.pull(destination)
        except runner.CommandError as exc:
            raise BridgeError(f"Transfer with {self.config.source_host} failed: {exc}") from exc
        finally:
            self.cleanup()

    def _record(self, output: str) -> None:
        if output:
            (self.workdir / REMOTE_LOG).write_text(output, encoding="utf-8")


def _log(message: str) -> None:
    print(f"==> {message}", flush=True)


def _warn(message: str) -> None:
    print(f"WARNING: {message}", file=sys.stderr, flush=True)
