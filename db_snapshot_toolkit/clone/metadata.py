"""Turn captured parameter and control-file text into scripts for the clone.

Everything in this module is a pure function of its inputs: identical parameter text,
control-file trace, and :class:`TargetLayout` always produce byte-identical output, and
nothing here talks to a database.

The control-file trace is read with a small line grammar. A :class:`BlockGrammar` names
three predicates: ``opens`` starts a block, ``terminates`` ends it on the current line
(inclusive), and ``closes`` ends it just before the current line, which is then offered
to ``opens`` again. Three grammars cover the trace:

* ``CREATE_CONTROLFILE`` - the ``CREATE CONTROLFILE`` statement up to its standalone ``;``
* ``FILE_SECTION`` - ``LOGFILE``/``DATAFILE`` sections inside that statement
* ``TEMPFILE_STATEMENT`` - ``ALTER TABLESPACE ... ADD TEMPFILE ...;`` statements
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Sequence

from .context import CloneConfig, FatalStageError

POOL_REFERENCE = re.compile(r"'\+([A-Za-z0-9_$#]+)")
CREATE_HEADER = re.compile(
    r"^(\s*CREATE\s+CONTROLFILE\s+)(?:REUSE\s+)?(?:SET\s+)?DATABASE\s+\"?[^\"\s]+\"?",
    re.IGNORECASE,
)
ARCHIVELOG = re.compile(r"(?<![A-Z])ARCHIVELOG\b", re.IGNORECASE)
FORCE_LOGGING = re.compile(r"\s*\bFORCE\s+LOGGING\b", re.IGNORECASE)
NORESETLOGS = re.compile(r"\bNORESETLOGS\b", re.IGNORECASE)
REUSE = re.compile(r"\s+REUSE\b", re.IGNORECASE)
SIZE_CLAUSE = re.compile(r"\bSIZE\s+\S+", re.IGNORECASE)
FILE_SPEC = re.compile(r"'[^']*'")
ASM_FILE_SPEC = re.compile(r"'\+([A-Za-z0-9_$#]+)(?:/[^']*)?'")

ARCHIVE_LOG_FORMAT = "%t_%s_%r.dbf"

LOCATION_PARAMETERS = (
    "control_files",
    "db_create_file_dest",
    "db_create_online_log_dest_",
    "db_recovery_file_dest",
    "log_archive_dest",
    "spfile",
)
MEMORY_PARAMETERS = (
    "memory_target",
    "memory_max_target",
    "sga_target",
    "sga_max_size",
    "pga_aggregate_target",
    "pga_aggregate_limit",
    "db_cache_size",
    "shared_pool_size",
    "large_pool_size",
    "java_pool_size",
    "streams_pool_size",
    "__",
)
LOG_FORMAT_PARAMETERS = ("log_archive_format",)
SOURCE_IDENTITY_PARAMETERS = ("db_unique_name", "instance_name", "service_names", "dispatchers")
CLUSTER_PARAMETERS = (
    "cluster_database",
    "cluster_database_instances",
    "cluster_interconnects",
    "instance_number",
    "thread",
    "local_listener",
    "remote_listener",
)


class MetadataError(FatalStageError):
    """Raised when captured metadata cannot be turned into a storage mapping."""


@dataclass(frozen=True, slots=True)
class BlockGrammar:
    name: str
    opens: Callable[[str], bool]
    terminates: Callable[[str], bool] = lambda _line: False
    closes: Callable[[str], bool] = lambda _line: False


@dataclass(frozen=True, slots=True)
class Block:
    grammar: str
    start: int
    lines: tuple[str, ...]

    @property
    def header(self) -> str:
        return self.lines[0]


def _starts_with(*keywords: str) -> Callable[[str], bool]:
    pattern = re.compile(r"^\s*(?:" + "|".join(keywords) + r")\b", re.IGNORECASE)
    return lambda line: bool(pattern.match(line))


def _is_terminator(line: str) -> bool:
    return line.strip() == ";"


CREATE_CONTROLFILE = BlockGrammar(
    name="create-controlfile",
    opens=_starts_with(r"CREATE\s+CONTROLFILE"),
    terminates=_is_terminator,
    closes=_starts_with("RECOVER", "ALTER", "STARTUP", "SHUTDOWN"),
)
FILE_SECTION = BlockGrammar(
    name="file-section",
    opens=_starts_with("LOGFILE", "DATAFILE", "TEMPFILE"),
    closes=lambda line: _is_terminator(line)
    or line.lstrip().startswith("--")
    or _starts_with("LOGFILE", "DATAFILE", "TEMPFILE", r"CHARACTER\s+SET")(line),
)
TEMPFILE_STATEMENT = BlockGrammar(
    name="tempfile",
    opens=_starts_with(r"ALTER\s+TABLESPACE\s+\S+\s+ADD\s+TEMPFILE"),
    terminates=lambda line: line.rstrip().endswith(";"),
)


def scan_blocks(lines: Sequence[str], grammar: BlockGrammar) -> list[Block]:
    blocks: list[Block] = []
    start: int | None = None
    for index, line in enumerate(lines):
        if start is not None and grammar.closes(line):
            blocks.append(Block(grammar.name, start, tuple(lines[start:index])))
            start = None
        if start is None:
            if not grammar.opens(line):
                continue
            start = index
        if grammar.terminates(line):
            blocks.append(Block(grammar.name, start, tuple(lines[start : index + 1])))
            start = None
    if start is not None:
        raise MetadataError(f"Unterminated {grammar.name} block starting at line {start + 1}")
    return blocks


def prefixed_name(prefix: str, name: str) -> str:
    """Return ``<prefix>_<name>``, leaving names that already carry the prefix alone."""

    marker = f"{prefix.upper()}_"
    if name.upper().startswith(marker):
        return name.upper()
    return f"{marker}{name.upper()}"


def build_namespace_map(pools: Iterable[str], prefix: str) -> dict[str, str]:
    return {pool: prefixed_name(prefix, pool) for pool in sorted(set(pools))}


def rewrite_pools(text: str, prefix: str) -> str:
    return POOL_REFERENCE.sub(lambda match: f"'+{prefixed_name(prefix, match.group(1))}", text)


def find_create_block(control_script: str) -> Block:
    """Pick the RESETLOGS ``CREATE CONTROLFILE`` statement from a control-file trace."""

    blocks = scan_blocks(control_script.splitlines(), CREATE_CONTROLFILE)
    if not blocks:
        raise MetadataError("No CREATE CONTROLFILE statement found in the control-file script.")
    resetlogs = [block for block in blocks if not NORESETLOGS.search(block.header)]
    return (resetlogs or blocks)[-1]


@dataclass(frozen=True, slots=True)
class TargetLayout:
    """Target-side names, paths, and sizing the transformer substitutes in."""

    sid: str
    prefix: str
    audit_dest: str
    oracle_base: str
    data_dest: str
    redo_dest: str
    archive_dest: str
    temp_dest: str | None = None
    temp_size: str | None = None
    sga_target: str = "512M"
    pga_target: str = "256M"

    @classmethod
    def from_config(cls, config: CloneConfig) -> TargetLayout:
        config.require("target_sid")
        return cls(
            sid=(config.target_sid or "").upper(),
            prefix=config.target_prefix,
            audit_dest=config.audit_destination(),
            oracle_base=config.oracle_base,
            data_dest=config.destination("data"),
            redo_dest=config.destination("redo"),
            archive_dest=config.destination("archive"),
            temp_dest=config.temp_dest,
            temp_size=config.temp_size,
            sga_target=config.sga_target,
            pga_target=config.pga_target,
        )


def transform_control_script(control_script: str, layout: TargetLayout) -> str:
    """Rewrite the CREATE CONTROLFILE statement so it builds the clone's control file."""

    block = find_create_block(control_script)
    rendered: list[str] = []
    for index, line in enumerate(block.lines):
        if index == 0:
            header = CREATE_HEADER.sub(rf'\1SET DATABASE "{layout.sid}"', line)
            if header == line:
                raise MetadataError(f"Unrecognized CREATE CONTROLFILE header: {line.strip()}")
            line = NORESETLOGS.sub("RESETLOGS", header)
        if "'" not in line:
            line = FORCE_LOGGING.sub("", line)
            line = ARCHIVELOG.sub("NOARCHIVELOG", line)
        if not line.strip():
            continue
        rendered.append(rewrite_pools(line.rstrip(), layout.prefix))
    return "\n".join(rendered) + "\n"


def extract_tempfile_statements(control_script: str, layout: TargetLayout) -> list[str]:
    """Return the trace's tempfile additions, rewritten for the clone and deduplicated."""

    statements: list[str] = []
    for block in scan_blocks(control_script.splitlines(), TEMPFILE_STATEMENT):
        statement = " ".join(" ".join(line.split()) for line in block.lines)
        statement = REUSE.sub("", statement)
        if layout.temp_dest:
            statement = FILE_SPEC.sub(f"'{layout.temp_dest}'", statement, count=1)
        else:
            # ASM refuses fully qualified OMF names for new files; name the pool only.
            statement = ASM_FILE_SPEC.sub(
                lambda match: f"'+{prefixed_name(layout.prefix, match.group(1))}'",
                statement,
                count=1,
            )
        if layout.temp_size:
            statement = SIZE_CLAUSE.sub(f"SIZE {layout.temp_size}", statement, count=1)
        if statement not in statements:
            statements.append(statement)
    return statements


def parse_inventory(text: str) -> dict[str, tuple[str, ...]]:
    """Parse ``<pool> <disk path>`` rows from the disk inventory query."""

    members: dict[str, list[str]] = {}
    for raw_line in text.splitlines():
        parts = raw_line.split()
        if len(parts) != 2:
            continue
        pool, path = parts
        members.setdefault(pool.upper(), []).append(path)
    return {pool: tuple(paths) for pool, paths in sorted(members.items())}


def extract_pools(control_script: str, inventory: str = "") -> list[str]:
    """Distinct storage pools referenced by datafiles, redo logs, and tempfiles."""

    block = find_create_block(control_script)
    referenced: set[str] = set()
    for section in scan_blocks(block.lines, FILE_SECTION):
        for line in section.lines:
            referenced.update(match.upper() for match in POOL_REFERENCE.findall(line))
    for statement in scan_blocks(control_script.splitlines(), TEMPFILE_STATEMENT):
        for line in statement.lines:
            referenced.update(match.upper() for match in POOL_REFERENCE.findall(line))
    if not referenced:
        raise MetadataError("The control-file script does not reference any storage pools.")
    known = parse_inventory(inventory)
    if known:
        missing = sorted(referenced - known.keys())
        if missing:
            raise MetadataError(
                "Storage pools referenced by database files are missing from the disk "
                f"inventory: {', '.join(missing)}"
            )
    return sorted(referenced)


@dataclass(frozen=True, slots=True)
class Parameter:
    scope: str
    name: str
    value: str


def parse_parameters(text: str) -> list[Parameter]:
    """Parse a text parameter file, joining values continued over several lines."""

    entries: list[list[str]] = []
    continuing = False
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if continuing and entries:
            entries[-1][1] += line
        else:
            if "=" not in line:
                raise MetadataError(f"Malformed parameter line: {raw_line}")
            key, value = line.split("=", 1)
            entries.append([key.strip(), value.strip()])
        continuing = line.endswith(",")
    parameters: list[Parameter] = []
    for key, value in entries:
        scope, _, name = key.rpartition(".")
        parameters.append(Parameter(scope or "*", name.lower(), value))
    return parameters


def _matches(name: str, prefixes: Sequence[str]) -> bool:
    return any(name == prefix or name.startswith(prefix) for prefix in prefixes)


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def transform_parameters(parameter_text: str, layout: TargetLayout) -> str:
    """Regenerate the parameter file for the clone instance."""

    rendered: list[str] = []
    seen: set[str] = set()
    for parameter in parse_parameters(parameter_text):
        name = parameter.name
        if name in seen:
            continue
        seen.add(name)
        if _matches(name, LOCATION_PARAMETERS + MEMORY_PARAMETERS + LOG_FORMAT_PARAMETERS):
            continue
        if name in SOURCE_IDENTITY_PARAMETERS + CLUSTER_PARAMETERS:
            continue
        if name == "db_name":
            value = _quote(layout.sid)
        elif name == "audit_file_dest":
            value = _quote(layout.audit_dest)
        elif name == "diagnostic_dest":
            value = _quote(layout.oracle_base)
        else:
            value = rewrite_pools(parameter.value, layout.prefix)
        rendered.append(f"*.{name}={value}")
    if "db_name" not in seen:
        rendered.append(f"*.db_name={_quote(layout.sid)}")
    if "audit_file_dest" not in seen:
        rendered.append(f"*.audit_file_dest={_quote(layout.audit_dest)}")
    rendered.extend(
        [
            "*.control_files="
            + ",".join(
                _quote(f"{dest}/control{number:02d}.ctl")
                for number, dest in enumerate((layout.data_dest, layout.redo_dest), start=1)
            ),
            f"*.db_create_file_dest={_quote(layout.data_dest)}",
            f"*.db_create_online_log_dest_1={_quote(layout.redo_dest)}",
            f"*.log_archive_dest_1={_quote('LOCATION=' + layout.archive_dest)}",
            f"*.log_archive_format={_quote(ARCHIVE_LOG_FORMAT)}",
            f"*.sga_target={layout.sga_target}",
            f"*.pga_aggregate_target={layout.pga_target}",
        ]
    )
    return "\n".join(rendered) + "\n"


@dataclass(frozen=True, slots=True)
class TransformedMetadata:
    parameter_file: str
    control_script: str
    tempfile_statements: tuple[str, ...]
    namespace: Mapping[str, str]


def transform(
    parameter_text: str, control_script: str, inventory: str, layout: TargetLayout
) -> TransformedMetadata:
    pools = extract_pools(control_script, inventory)
    return TransformedMetadata(
        parameter_file=transform_parameters(parameter_text, layout),
        control_script=transform_control_script(control_script, layout),
        tempfile_statements=tuple(extract_tempfile_statements(control_script, layout)),
        namespace=build_namespace_map(pools, layout.prefix),
    )
