"""Request/response channels to sqlplus for database and ASM administration."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Sequence

from .. import runner
from .context import FatalStageError

ERROR_PATTERN = re.compile(r"\bORA-(\d{5})\b")
CLIENT_ERROR_PATTERN = re.compile(r"\bSP2-\d{4}\b")
SESSION_SETTINGS = (
    "set heading off",
    "set feedback off",
    "set pagesize 0",
    "set linesize 32767",
    "set trimspool on",
    "set verify off",
    "set echo off",
)


class SqlError(FatalStageError):
    """Raised when a statement reports an error code the caller did not allow."""

    def __init__(
        self, sid: str, codes: Sequence[int], output: str, client_errors: Sequence[str] = ()
    ):
        self.sid = sid
        self.codes = list(codes)
        self.client_errors = list(client_errors)
        self.output = output
        listed = ", ".join([*(f"ORA-{code:05d}" for code in self.codes), *self.client_errors])
        super().__init__(f"{sid}: {listed}\n{output.strip()}")


class UnknownStateError(FatalStageError):
    """Raised when the instance reports a status outside the recognized set."""


class DatabaseStatus(Enum):
    DOWN = "down"
    STARTED = "started"
    MOUNTED = "mounted"
    OPEN = "open"
    UNKNOWN = "unknown"

    @classmethod
    def from_output(cls, output: str) -> DatabaseStatus:
        codes = set(parse_error_codes(output))
        if codes & {1034, 27101, 1090}:
            return cls.DOWN
        for line in output.splitlines():
            word = line.strip().upper()
            if word == "STARTED":
                return cls.STARTED
            if word == "MOUNTED":
                return cls.MOUNTED
            if word == "OPEN" or word.startswith("OPEN "):
                return cls.OPEN
        return cls.UNKNOWN


class OracleMessage(Enum):
    """Diagnostic codes the clone stages react to; everything else is ``UNKNOWN``."""

    LOG_NOT_NEEDED = 278
    LOG_NEEDED = 279
    LOG_SEQUENCE = 280
    LOG_SUGGESTION = 289
    LOG_NOT_FOUND = 308
    FILE_NOT_FOUND = 27037
    NOT_AVAILABLE = 1034
    NOT_IN_BACKUP = 1142
    ALREADY_IN_BACKUP = 1146
    DISKGROUP_MOUNTED = 15017
    UNKNOWN = 0

    @classmethod
    def from_code(cls, code: int) -> OracleMessage:
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN


def parse_error_codes(output: str) -> list[int]:
    return [int(match.group(1)) for match in ERROR_PATTERN.finditer(output)]


def parse_client_errors(output: str) -> list[str]:
    """sqlplus's own failures, such as SP2-0310 when a script cannot be opened."""

    return CLIENT_ERROR_PATTERN.findall(output)


@dataclass(slots=True)
class SqlResult:
    output: str
    codes: tuple[int, ...] = ()
    client_errors: tuple[str, ...] = ()

    @property
    def messages(self) -> list[OracleMessage]:
        return [OracleMessage.from_code(code) for code in self.codes]

    def unexpected(self, allowed: Iterable[OracleMessage] = ()) -> list[int]:
        allowed_codes = {message.value for message in allowed}
        return [code for code in self.codes if code not in allowed_codes]

    def lines(self) -> list[str]:
        return [
            line.strip()
            for line in self.output.splitlines()
            if line.strip()
            and not ERROR_PATTERN.search(line)
            and not CLIENT_ERROR_PATTERN.search(line)
        ]


Transport = Callable[[str], str]


class SqlChannel:
    """One administrative sqlplus session per call; statements in, text out."""

    connect = "connect / as sysdba"

    def __init__(
        self,
        sid: str,
        home: str,
        *,
        dry_run: bool = False,
        verbose: bool = False,
        transport: Transport | None = None,
    ):
        self.sid = sid
        self.home = home
        self.dry_run = dry_run
        self.verbose = verbose
        self._transport = transport or self._sqlplus

    def _sqlplus(self, script: str) -> str:
        command = [str(Path(self.home) / "bin" / "sqlplus"), "-S", "-L", "/nolog"]
        return runner.capture(
            command,
            input_text=script,
            env={"ORACLE_SID": self.sid, "ORACLE_HOME": self.home},
            verbose=self.verbose,
        )

    def render(self, statements: Sequence[str]) -> str:
        lines = [self.connect, *SESSION_SETTINGS, *statements, "exit"]
        return "\n".join(lines) + "\n"

    def execute(self, statements: Sequence[str]) -> SqlResult:
        if self.dry_run:
            for statement in statements:
                print(f"DRY-RUN: SQL[{self.sid}]> {statement}", flush=True)
            return SqlResult("")
        output = self._transport(self.render(statements))
        if self.verbose and output.strip():
            print(output.rstrip(), flush=True)
        return SqlResult(
            output, tuple(parse_error_codes(output)), tuple(parse_client_errors(output))
        )

    def run(
        self, statements: Sequence[str], *, allow: Iterable[OracleMessage] = ()
    ) -> SqlResult:
        result = self.execute(statements)
        unexpected = result.unexpected(allow)
        if unexpected or result.client_errors:
            raise SqlError(self.sid, unexpected, result.output, result.client_errors)
        return result

    def query(self, sql: str) -> list[str]:
        return self.run([sql]).lines()

    def query_int(self, sql: str) -> int:
        if self.dry_run:
            self.execute([sql])
            return 0
        rows = self.query(sql)
        if not rows:
            raise SqlError(self.sid, [], f"no rows returned for: {sql}")
        try:
            return int(rows[0].split()[0])
        except ValueError as exc:
            raise FatalStageError(
                f"{self.sid}: expected a number from {sql!r}, got {rows[0]!r}"
            ) from exc

    def status(self) -> DatabaseStatus:
        result = self.execute(["select status from v$instance;"])
        return DatabaseStatus.from_output(result.output)

    def require_status(self, *expected: DatabaseStatus) -> DatabaseStatus | None:
        """Check the instance state; unrecognized states are always fatal."""

        if self.dry_run:
            return None
        status = self.status()
        if status is DatabaseStatus.UNKNOWN:
            raise UnknownStateError(f"{self.sid}: unrecognized instance status")
        if expected and status not in expected:
            wanted = "/".join(item.value for item in expected)
            raise FatalStageError(f"{self.sid}: instance is {status.value}, expected {wanted}")
        return status


class StorageChannel(SqlChannel):
    """Same request/response shape as :class:`SqlChannel`, connected to ASM as sysasm."""

    connect = "connect / as sysasm"
