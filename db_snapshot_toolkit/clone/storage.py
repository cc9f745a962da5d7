from __future__ import annotations

import re
from pathlib import Path
from typing import Mapping, Sequence

from .. import runner
from .context import FatalStageError
from .sql import OracleMessage, SqlChannel, SqlError

KFOD_ROW = re.compile(
    r"^\s*\d+:\s+\d+\s+\S+\s+(?P<header>[A-Z]+)\s+(?P<path>\S+)(?:\s+(?P<group>\S+))?"
)


class StorageError(FatalStageError):
    """Raised when a storage pool cannot be renamed, mounted, or dropped."""


def parse_kfod(output: str) -> dict[str, list[str]]:
    """Map disk group names to member disk paths from ``kfod disks=all dscvgroup=true``."""

    members: dict[str, list[str]] = {}
    for line in output.splitlines():
        match = KFOD_ROW.match(line)
        if not match or match.group("header") != "MEMBER" or not match.group("group"):
            continue
        members.setdefault(match.group("group").upper(), []).append(match.group("path"))
    return members


class StorageRenamer:
    """Rename snapshot disk groups to ``<prefix>_<name>`` and mount them."""

    def __init__(
        self,
        channel: SqlChannel,
        *,
        grid_home: str,
        workdir: Path,
        diskstring: str | None = None,
        verbose: bool = False,
    ):
        self.channel = channel
        self.grid_home = grid_home
        self.workdir = workdir
        self.diskstring = diskstring
        self.verbose = verbose

    @property
    def dry_run(self) -> bool:
        return self.channel.dry_run

    def _env(self) -> dict[str, str]:
        return {"ORACLE_SID": self.channel.sid, "ORACLE_HOME": self.grid_home}

    def _tool(self, name: str) -> str:
        return str(Path(self.grid_home) / "bin" / name)

    def unmounted_disks(self) -> set[str]:
        rows = self.channel.query("select path from v$asm_disk where group_number = 0;")
        return set(rows)

    def discover_members(self, pool: str, unmounted: set[str] | None = None) -> list[str]:
        """Disks that still carry ``pool`` in their header and belong to no mounted group."""

        command = [self._tool("kfod"), "op=disks", "disks=all", "status=true", "dscvgroup=true"]
        if self.diskstring:
            command.append(f"asm_diskstring={self.diskstring}")
        output = runner.capture(
            command, env=self._env(), dry_run=self.dry_run, verbose=self.verbose
        )
        if self.dry_run:
            return []
        if unmounted is None:
            unmounted = self.unmounted_disks()
        return [path for path in parse_kfod(output).get(pool.upper(), []) if path in unmounted]

    def build_rename_command(self, pool: str, new_name: str, members: Sequence[str]) -> list[str]:
        config_file = self.workdir / f"renamedg-{pool.lower()}.conf"
        return [
            self._tool("renamedg"),
            "phase=both",
            f"dgname={pool}",
            f"newdgname={new_name}",
            f"config={config_file}",
            f"asm_diskstring={','.join(members)}",
            "verbose=true",
        ]

    def rename(self, namespace: Mapping[str, str]) -> dict[str, str]:
        """Rename every pool in ``namespace``; the first failure aborts the run.

        Pools renamed before a failure are left as they are.
        """

        renamed: dict[str, str] = {}
        unmounted = None if self.dry_run else self.unmounted_disks()
        for pool, new_name in namespace.items():
            if pool.upper() == new_name.upper():
                _log(f"{pool} already carries the target prefix; skipping rename")
                renamed[pool] = new_name
                continue
            members = self.discover_members(pool, unmounted)
            if not members and not self.dry_run:
                raise StorageError(f"No unmounted member disks found for disk group {pool}")
            _log(f"Renaming disk group {pool} to {new_name} ({len(members)} disks)")
            command = self.build_rename_command(pool, new_name, members)
            try:
                runner.capture(
                    command, env=self._env(), dry_run=self.dry_run, verbose=self.verbose
                )
            except runner.CommandError as exc:
                raise StorageError(
                    f"Renaming disk group {pool} to {new_name} failed: {exc}"
                ) from exc
            renamed[pool] = new_name
        return renamed

    def mounted(self) -> set[str]:
        rows = self.channel.query("select name from v$asm_diskgroup where state = 'MOUNTED';")
        return {row.upper() for row in rows}

    def mount(self, names: Sequence[str]) -> None:
        """Mount each renamed pool, reporting every pool that failed before aborting."""

        failures: dict[str, str] = {}
        for name in names:
            result = self.channel.execute([f"alter diskgroup {name} mount;"])
            unexpected = result.unexpected({OracleMessage.DISKGROUP_MOUNTED})
            if unexpected or result.client_errors:
                failures[name] = ", ".join(
                    [*(f"ORA-{code:05d}" for code in unexpected), *result.client_errors]
                )
        if not self.dry_run:
            mounted = self.mounted()
            for name in names:
                if name.upper() not in mounted and name not in failures:
                    failures[name] = "not reported as mounted"
        if failures:
            details = "; ".join(f"{name}: {reason}" for name, reason in failures.items())
            leftovers = self._dismount([name for name in names if name not in failures])
            if leftovers:
                details = f"{details} (dismount also failed for {', '.join(leftovers)})"
            raise StorageError(f"Disk groups failed to mount: {details}")

    def _dismount(self, names: Sequence[str]) -> list[str]:
        """Dismount ``names`` after a failed mount; returns the groups left mounted."""

        leftovers: list[str] = []
        for name in names:
            _log(f"Dismounting disk group {name}")
            result = self.channel.execute([f"alter diskgroup {name} dismount;"])
            if result.codes or result.client_errors:
                leftovers.append(name)
        return leftovers

    def teardown(self, prefix: str) -> list[str]:
        """Drop every mounted disk group carrying ``prefix``, contents included."""

        like = prefix.upper().replace("_", "\\_") + "\\_%"
        rows = self.channel.query(
            "select name from v$asm_diskgroup where state = 'MOUNTED' "
            f"and name like '{like}' escape '\\';"
        )
        dropped: list[str] = []
        for name in rows:
            _log(f"Dropping disk group {name}")
            try:
                self.channel.run([f"drop diskgroup {name} including contents;"])
            except SqlError as exc:
                raise StorageError(f"Dropping disk group {name} failed: {exc}") from exc
            dropped.append(name)
        return dropped


def _log(message: str) -> None:
    print(f"==> {message}", flush=True)
