"""Entry points for the db-snapshot CLI."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Sequence

from .clone import (
    CloneConfig,
    CloneContext,
    ConfigError,
    Orchestrator,
    build_config,
    emit_summary,
    env_overrides,
    interrupt_on_signals,
    load_config_file,
    scratch_area,
)

STAGES = ("run", "stop", "prepare", "finalize", "clone", "snapshot", "release")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130

# (flag, config key, help) for plain string options.
STRING_OPTIONS = (
    ("--source-host", "source_host", "Host running the source database; omit for local."),
    ("--source-sid", "source_sid", "Instance name of the source database."),
    ("--target-sid", "target_sid", "Instance and database name for the clone."),
    ("--snapshot-cmd", "snapshot_command", "Command that snapshots the source storage."),
    ("--source-home", "source_home", "ORACLE_HOME on the source host."),
    ("--oracle-home", "oracle_home", "ORACLE_HOME used for the clone."),
    ("--grid-home", "grid_home", "Grid infrastructure home (asmcmd, kfod, renamedg)."),
    ("--asm-sid", "asm_sid", "ASM instance name (default +ASM)."),
    ("--asm-diskstring", "asm_diskstring", "Disk discovery string for snapshot disks."),
    ("--oracle-base", "oracle_base", "ORACLE_BASE for the clone's diagnostic files."),
    ("--audit-dest", "audit_dest", "audit_file_dest for the clone."),
    ("--controlfile-source", "controlfile_source", "Existing control-file trace to use."),
    ("--prefix", "prefix", "Disk group prefix (defaults to the target sid)."),
    ("--dest", "dest", "Shared destination for data, redo, temp, and archive files."),
    ("--data-dest", "data_dest", "Destination for datafiles and the first control file."),
    ("--redo-dest", "redo_dest", "Destination for online redo and the second control file."),
    ("--temp-dest", "temp_dest", "Location for re-created tempfiles."),
    ("--archive-dest", "archive_dest", "log_archive_dest_1 location for the clone."),
    ("--temp-size", "temp_size", "SIZE clause for re-created tempfiles, e.g. 2G."),
    ("--sga-target", "sga_target", "sga_target for the clone (default 512M)."),
    ("--pga-target", "pga_target", "pga_aggregate_target for the clone (default 256M)."),
    ("--ssh-user", "ssh_user", "SSH user on the source host (default oracle)."),
    ("--identity", "identity", "SSH identity file passed to ssh -i and scp -i."),
    ("--remote-dir", "remote_dir", "Working directory on the source host."),
    ("--bundle", "bundle", "Transfer archive written by prepare/finalize, read by clone."),
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-snapshot",
        description="Clone an Oracle database from an ASM storage snapshot.",
    )
    parser.add_argument(
        "stage",
        nargs="?",
        default="run",
        choices=STAGES,
        help=(
            "Stage to run: stop tears down a previous clone, prepare/finalize bracket a "
            "manual snapshot, clone builds the target from an archive; default runs all."
        ),
    )
    parser.add_argument("--config", type=Path, help="TOML file with a [clone] table.")
    for flag, key, help_text in STRING_OPTIONS:
        parser.add_argument(flag, dest=key, default=None, help=help_text)
    parser.add_argument(
        "--mode",
        choices=("hot", "cold"),
        default=None,
        help="hot keeps the source open in backup mode; cold shuts it down (default hot).",
    )
    parser.add_argument("--port", dest="ssh_port", type=int, default=None, help="SSH port.")
    parser.add_argument(
        "--timeout",
        dest="remote_timeout",
        type=int,
        default=None,
        help="Seconds the remote stage may run before the run fails (default 300).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Keep the scratch area for inspection instead of deleting it.",
    )
    parser.add_argument(
        "--no-start",
        dest="start",
        action="store_false",
        default=None,
        help="Leave the clone shut down after its final restart check.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Print SQL and commands without executing them.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=None,
        help="Echo sqlplus output and command stderr.",
    )
    return parser


def _cli_layer(args: argparse.Namespace) -> dict[str, Any]:
    layer = vars(args).copy()
    layer.pop("stage", None)
    layer.pop("config", None)
    return layer


def load_settings(args: argparse.Namespace) -> CloneConfig:
    file_layer = load_config_file(args.config) if args.config else None
    return build_config(file_layer, env_overrides(), _cli_layer(args))


def run_stage(stage: str, config: CloneConfig) -> int:
    orchestrator: Orchestrator | None = None
    try:
        with interrupt_on_signals(), scratch_area(debug=config.debug) as workdir:
            context = CloneContext(config=config, workdir=workdir)
            orchestrator = Orchestrator(context)
            results = getattr(orchestrator, stage)()
            emit_summary(context, results)
    except ConfigError as exc:
        print(exc, file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt as exc:
        print(f"Interrupted: {exc}", file=sys.stderr)
        return EXIT_INTERRUPTED
    if orchestrator is not None and orchestrator.failed:
        return EXIT_FATAL
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        config = load_settings(args)
    except ConfigError as exc:
        print(exc, file=sys.stderr)
        return EXIT_ERROR
    return run_stage(args.stage, config)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
