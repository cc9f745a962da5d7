"""Configuration layering and the shared clone data model."""

from __future__ import annotations

from pathlib import Path

import pytest

from db_snapshot_toolkit.clone.context import (
    CONTROL_FILE,
    PARAMETER_FILE,
    WINDOW_FILE,
    CloneConfig,
    ConfigError,
    ConsistencyWindow,
    FatalStageError,
    MetadataBundle,
    Mode,
    build_config,
    env_overrides,
    load_config_file,
)


def test_build_config_layers_in_order(tmp_path: Path) -> None:
    """Later layers win and unset command-line values do not mask earlier ones."""

    config = build_config(
        {"source_sid": "PROD", "target_sid": "COPY", "remote_timeout": 120},
        {"remote_timeout": "90", "prefix": "snap"},
        {"remote_timeout": None, "mode": "COLD"},
    )

    assert config.remote_timeout == 90
    assert config.mode is Mode.COLD
    assert config.target_prefix == "SNAP"
    assert config.sga_target == "512M"
    assert config.pga_target == "256M"


def test_build_config_rejects_shared_identifiers() -> None:
    with pytest.raises(ConfigError, match="must differ"):
        build_config({"source_sid": "PROD", "target_sid": "prod"})


def test_build_config_rejects_unknown_keys_and_bad_values() -> None:
    with pytest.raises(ConfigError, match="Unknown configuration key"):
        build_config({"flashback": True})
    with pytest.raises(ConfigError, match="integer"):
        build_config({"remote_timeout": "soon"})
    with pytest.raises(ConfigError, match="mode"):
        build_config({"mode": "warm"})
    with pytest.raises(ConfigError, match="exceeds"):
        build_config({"target_sid": "TOOLONGNAME"})


def test_load_config_file_resolves_relative_paths(tmp_path: Path) -> None:
    config_path = tmp_path / "clone.toml"
    config_path.write_text(
        "\n".join(
            [
                "[clone]",
                'source_sid = "PROD"',
                'target_sid = "COPY"',
                'identity = "keys/id_ed25519"',
                "debug = true",
            ]
        ),
        encoding="utf-8",
    )

    values = load_config_file(config_path)
    config = build_config(values)

    assert config.identity == (tmp_path / "keys" / "id_ed25519").resolve()
    assert config.debug is True


def test_load_config_file_reports_missing_and_invalid(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config_file(tmp_path / "absent.toml")

    broken = tmp_path / "broken.toml"
    broken.write_text("[clone\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Unable to parse"):
        load_config_file(broken)


def test_env_overrides_maps_known_variables() -> None:
    environ = {
        "DB_SNAPSHOT_SOURCE_HOST": "db1.example.com",
        "DB_SNAPSHOT_REMOTE_TIMEOUT": "45",
        "DB_SNAPSHOT_PREFIX": "",
        "UNRELATED": "value",
    }

    assert env_overrides(environ) == {"source_host": "db1.example.com", "remote_timeout": "45"}


def test_destinations_fall_back_to_shared_dest() -> None:
    config = CloneConfig(target_sid="COPY", dest="+COPY_DATA", redo_dest="+COPY_REDO")

    assert config.destination("data") == "+COPY_DATA"
    assert config.destination("redo") == "+COPY_REDO"
    assert CloneConfig(target_sid="COPY").destination("archive") == (
        "/u01/app/oracle/oradata/COPY"
    )
    assert config.audit_destination() == "/u01/app/oracle/admin/COPY/adump"


def test_require_names_missing_flags() -> None:
    with pytest.raises(ConfigError, match="--snapshot-cmd, --source-host"):
        CloneConfig().require("snapshot_command", "source_host")


def test_homes_require_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(ConfigError, match="grid infrastructure"):
        CloneConfig().asm_home
    monkeypatch.setenv("ORACLE_HOME", "/opt/oracle")
    assert CloneConfig().target_oracle_home == "/opt/oracle"
    assert CloneConfig(source_home="/src").source_oracle_home == "/src"


def test_window_round_trips_through_json() -> None:
    window = ConsistencyWindow(
        mode=Mode.HOT, begin_sequence=100, end_sequence=104, begin_change=5000, end_change=5100
    )

    restored = ConsistencyWindow.from_json(window.to_json())

    assert restored == window
    assert restored.change_marker == 5100
    assert ConsistencyWindow(mode=Mode.COLD, end_change=10).change_marker is None


def test_window_rejects_corrupt_markers() -> None:
    with pytest.raises(FatalStageError, match="window markers"):
        ConsistencyWindow.from_json("{not json")


def test_metadata_bundle_load_requires_captured_files(tmp_path: Path) -> None:
    with pytest.raises(FatalStageError, match="init.ora"):
        MetadataBundle.load(tmp_path)

    (tmp_path / PARAMETER_FILE).write_text("*.db_name='PROD'\n", encoding="utf-8")
    (tmp_path / CONTROL_FILE).write_text("CREATE CONTROLFILE\n", encoding="utf-8")
    (tmp_path / WINDOW_FILE).write_text(
        ConsistencyWindow(mode=Mode.HOT, begin_sequence=7, end_sequence=9).to_json(),
        encoding="utf-8",
    )
    (tmp_path / "arch").mkdir()
    (tmp_path / "arch" / "1_8_99.dbf").write_bytes(b"redo")

    bundle = MetadataBundle.load(tmp_path)

    assert bundle.begin_sequence == 7
    assert bundle.end_sequence == 9
    assert bundle.disk_inventory == ""
    assert [path.name for path in bundle.archived_logs] == ["1_8_99.dbf"]
