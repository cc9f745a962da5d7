"""Source capture, storage renaming, and recovery stages for database clones."""

from .bridge import BridgeError, RemoteBridge, build_bundle, extract_bundle
from .context import (
    AdvisoryStageError,
    CloneConfig,
    CloneContext,
    CloneError,
    ConfigError,
    ConsistencyWindow,
    FatalStageError,
    MetadataBundle,
    Mode,
    build_config,
    env_overrides,
    load_config_file,
)
from .metadata import MetadataError, TargetLayout, transform
from .orchestrator import (
    Orchestrator,
    Stage,
    StageOutcome,
    StageResult,
    emit_summary,
    interrupt_on_signals,
    scratch_area,
)
from .recovery import RecoveryController, RecoveryError
from .sql import DatabaseStatus, OracleMessage, SqlChannel, StorageChannel, UnknownStateError
from .storage import StorageError, StorageRenamer
from .window import WindowController, invoke_snapshot

__all__ = [
    "AdvisoryStageError",
    "BridgeError",
    "CloneConfig",
    "CloneContext",
    "CloneError",
    "ConfigError",
    "ConsistencyWindow",
    "DatabaseStatus",
    "FatalStageError",
    "MetadataBundle",
    "MetadataError",
    "Mode",
    "OracleMessage",
    "Orchestrator",
    "RecoveryController",
    "RecoveryError",
    "RemoteBridge",
    "SqlChannel",
    "Stage",
    "StageOutcome",
    "StageResult",
    "StorageChannel",
    "StorageError",
    "StorageRenamer",
    "TargetLayout",
    "UnknownStateError",
    "WindowController",
    "build_bundle",
    "build_config",
    "emit_summary",
    "env_overrides",
    "extract_bundle",
    "interrupt_on_signals",
    "invoke_snapshot",
    "load_config_file",
    "scratch_area",
    "transform",
]
