import pytest

from cryptvault import config
from cryptvault.config import ConfigError, Folder


def _write(tmp_path, text):
    path = tmp_path / "backup-hdd.yml"
    path.write_text(text, encoding="utf-8")
    return str(path)


DRIVES_YAML = """
source:
  path: /data
backup_drive_1:
  path: /mnt/backup1
  luks_device: /dev/sdb1
  compression_level: 6
  folders:
    - path: code
    - path: media
      subfolders: [photos, music]
  snapshots:
    enabled: true
    directory: .snapshots
    retention: 5
backup_drive_2:
  path: /mnt/backup2
rsync:
  delete: false
exclude:
  - "*.tmp"
  - .cache
"""


def test_load_drives_config_types_and_defaults(tmp_path):
    cfg = config.load(_write(tmp_path, DRIVES_YAML), config.DRIVES_SCHEMA)

    assert cfg["source.path"] == "/data"
    assert cfg["backup_drive_1.compression_level"] == 6
    assert cfg["backup_drive_1.snapshots.enabled"] is True
    assert cfg["backup_drive_1.snapshots.retention"] == 5
    assert cfg["backup_drive_1.folders"] == (
        Folder("code"),
        Folder("media", ("photos", "music")),
    )
    assert cfg["backup_drive_2.label"] == "Backup2"
    assert cfg["backup_drive_2.compression_level"] == 9
    assert cfg["rsync.delete"] is False
    assert cfg["rsync.progress"] is True
    assert cfg["exclude"] == ("*.tmp", ".cache")
    assert cfg.source.endswith("backup-hdd.yml")


def test_section_strips_prefix(tmp_path):
    cfg = config.load(_write(tmp_path, DRIVES_YAML), config.DRIVES_SCHEMA)
    drive = cfg.section("backup_drive_1")
    assert drive["path"] == "/mnt/backup1"
    assert drive["snapshots.directory"] == ".snapshots"


@pytest.mark.parametrize("literal", ["yes", "True", "on", "1"])
def test_bool_accepts_only_literal_words(literal):
    doc = {"source": {"path": "/data"}, "backup_drive_1": {"path": "/mnt/b1"}, "rsync": {"delete": literal}}
    with pytest.raises(ConfigError) as exc:
        config.validate(doc, config.DRIVES_SCHEMA)
    assert exc.value.errors == [f"rsync.delete must be 'true' or 'false' (got: '{literal}')"]


def test_yaml_yes_is_not_coerced(tmp_path):
    text = "source:\n  path: /data\nbackup_drive_1:\n  path: /mnt/b1\nrsync:\n  progress: yes\n"
    with pytest.raises(ConfigError) as exc:
        config.load(_write(tmp_path, text), config.DRIVES_SCHEMA)
    assert "rsync.progress must be 'true' or 'false' (got: 'yes')" in exc.value.errors


def test_all_errors_reported_together():
    doc = {
        "source": {"path": "relative/dir"},
        "backup_drive_1": {"compression_level": "high"},
        "backup_drive_2": {"snapshots": {"enabled": "true"}},
    }
    with pytest.raises(ConfigError) as exc:
        config.validate(doc, config.DRIVES_SCHEMA)
    errors = exc.value.errors
    assert "backup_drive_1.path is required" in errors
    assert "backup_drive_2.path is required" in errors
    assert "source.path must be an absolute path starting with / (got: 'relative/dir')" in errors
    assert "backup_drive_1.compression_level must be a number (got: 'high')" in errors
    assert (
        "backup_drive_2.snapshots.directory is required when backup_drive_2.snapshots.enabled is true"
        in errors
    )


def test_second_drive_optional_without_section():
    cfg = config.validate(
        {"source": {"path": "/data"}, "backup_drive_1": {"path": "/mnt/b1"}},
        config.DRIVES_SCHEMA,
    )
    assert "backup_drive_2.path" not in cfg


@pytest.mark.parametrize("value", ["", "~", "null"])
def test_absent_literals_count_as_missing(value):
    doc = {"source": {"path": value}, "backup_drive_1": {"path": "/mnt/b1"}}
    with pytest.raises(ConfigError) as exc:
        config.validate(doc, config.DRIVES_SCHEMA)
    assert exc.value.errors == ["source.path is required"]


def test_cross_field_path_conflicts():
    doc = {
        "source": {"path": "/mnt/b1/"},
        "backup_drive_1": {"path": "/mnt/b1"},
        "backup_drive_2": {"path": "/mnt/b1"},
    }
    with pytest.raises(ConfigError) as exc:
        config.validate(doc, config.DRIVES_SCHEMA)
    assert exc.value.errors == [
        "source.path cannot be the same as backup paths",
        "backup_drive_1.path and backup_drive_2.path cannot be the same",
    ]


def test_system_retention_advisory_is_a_warning():
    doc = {
        "backup": {"hdd_mount": "/mnt/hdd1", "backup_root": "/mnt/hdd1/backups"},
        "snapshots": {"retention": "0"},
    }
    cfg = config.validate(doc, config.SYSTEM_SCHEMA)
    assert cfg.warnings == ("snapshots.retention should be at least 1",)
    assert cfg["logging.file"] == "/var/log/backup-system.log"
    assert cfg["advanced.rsync_options"] == "-aAXHh --info=progress2 --stats"


def test_restore_target_disk_required_only_when_asked():
    doc = {"backup": {"hdd_mount": "/mnt/hdd1", "backup_root": "/mnt/hdd1/backups"}}
    cfg = config.validate(doc, config.RESTORE_SCHEMA)
    assert "restore.target_disk" not in cfg

    with pytest.raises(ConfigError) as exc:
        config.validate(doc, config.RESTORE_SCHEMA, require=config.TARGET_DISK_REQUIRED)
    assert exc.value.errors == ["restore.target_disk is required for full-disk mode"]


def test_missing_file_and_bad_yaml(tmp_path):
    with pytest.raises(ConfigError) as exc:
        config.load(str(tmp_path / "nope.yml"), config.DRIVES_SCHEMA)
    assert exc.value.errors[0].startswith("Configuration file not found")

    with pytest.raises(ConfigError) as exc:
        config.load(_write(tmp_path, "source: [unclosed\n"), config.DRIVES_SCHEMA)
    assert "not valid YAML" in exc.value.errors[0]


def test_non_mapping_document():
    with pytest.raises(ConfigError):
        config.validate(["a", "b"], config.DRIVES_SCHEMA)


def test_validated_config_is_read_only():
    cfg = config.validate(
        {"source": {"path": "/data"}, "backup_drive_1": {"path": "/mnt/b1"}},
        config.DRIVES_SCHEMA,
    )
    with pytest.raises(TypeError):
        cfg["source.path"] = "/other"  # type: ignore[index]


def test_folder_entry_without_path():
    doc = {
        "source": {"path": "/data"},
        "backup_drive_1": {"path": "/mnt/b1", "folders": [{"subfolders": ["x"]}, "plain"]},
    }
    with pytest.raises(ConfigError) as exc:
        config.validate(doc, config.DRIVES_SCHEMA)
    assert exc.value.errors == [
        "backup_drive_1.folders[0].path is required",
        "backup_drive_1.folders[1] must be a mapping with a path",
    ]
