"""Typed, schema-driven loading of the YAML configuration documents.

Every document is checked in a single pass. Missing required keys,
malformed values and cross-field conflicts are collected together and
raised as one :class:`ConfigError`, so an operator can fix the whole file
at once. Nothing in this module touches a device.

Booleans accept only the literal words ``true`` and ``false``. YAML 1.1
would quietly turn ``yes``, ``on`` or ``True`` into booleans, so documents
are parsed with :class:`_LiteralLoader`, which keeps every plain scalar as
the text the operator typed.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator

import yaml


class ConfigError(Exception):
    """The complete list of problems found in one configuration document."""

    def __init__(self, errors: Iterable[str], path: str | None = None) -> None:
        self.errors = list(errors)
        self.path = path
        super().__init__("; ".join(self.errors))


class _LiteralLoader(yaml.SafeLoader):
    """SafeLoader that resolves every plain scalar to ``str``."""


_LiteralLoader.yaml_implicit_resolvers = {}

_ABSENT_LITERALS = {"", "~", "null", "Null", "NULL"}
_DIGITS = re.compile(r"^[0-9]+$")
_MISSING = object()


@dataclass(frozen=True)
class Folder:
    path: str
    subfolders: tuple[str, ...] = ()


@dataclass(frozen=True)
class Field:
    key: str
    kind: str = "str"
    # True, False, or "section": required only when the parent section exists
    required: bool | str = False
    default: Any = None


@dataclass(frozen=True)
class Schema:
    name: str
    fields: tuple[Field, ...]
    checks: tuple[Callable[[dict], list[str]], ...] = ()
    advisories: tuple[Callable[[dict], list[str]], ...] = field(default=())


class ValidatedConfig(Mapping):
    """Read-only mapping from dotted keys to typed values."""

    def __init__(self, values: dict, source: str | None = None, warnings: Iterable[str] = ()) -> None:
        self._values = MappingProxyType(dict(values))
        self.source = source
        self.warnings = tuple(warnings)

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def section(self, prefix: str) -> dict:
        head = prefix.rstrip(".") + "."
        return {k[len(head):]: v for k, v in self._values.items() if k.startswith(head)}

    def __repr__(self) -> str:
        return f"ValidatedConfig({dict(self._values)!r})"


def _lookup(doc: Any, key: str) -> Any:
    node = doc
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    if node is None:
        return _MISSING
    if isinstance(node, str) and node.strip() in _ABSENT_LITERALS:
        return _MISSING
    return node


def _section_present(doc: Any, key: str) -> bool:
    parent = key.rsplit(".", 1)[0]
    node = doc
    for part in parent.split("."):
        if not isinstance(node, dict) or node.get(part) is None:
            return False
        node = node[part]
    return True


def _scalar(key: str, raw: Any, errors: list[str]) -> str | None:
    if isinstance(raw, (dict, list)):
        errors.append(f"{key} must be a single value")
        return None
    return str(raw).strip()


def _string_list(key: str, raw: Any, errors: list[str]) -> tuple[str, ...] | None:
    if not isinstance(raw, list):
        errors.append(f"{key} must be a list")
        return None
    items: list[str] = []
    for idx, item in enumerate(raw):
        if item is None:
            continue
        if isinstance(item, (dict, list)):
            errors.append(f"{key}[{idx}] must be a single value")
            continue
        text = str(item).strip()
        if text:
            items.append(text)
    return tuple(items)


def _folders(key: str, raw: Any, errors: list[str]) -> tuple[Folder, ...] | None:
    if not isinstance(raw, list):
        errors.append(f"{key} must be a list")
        return None
    folders: list[Folder] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            errors.append(f"{key}[{idx}] must be a mapping with a path")
            continue
        path = _lookup(item, "path")
        if path is _MISSING:
            errors.append(f"{key}[{idx}].path is required")
            continue
        subs = item.get("subfolders")
        subfolders: tuple[str, ...] = ()
        if subs is not None:
            subfolders = _string_list(f"{key}[{idx}].subfolders", subs, errors) or ()
        folders.append(Folder(str(path).strip().strip("/"), subfolders))
    return tuple(folders)


def _convert(fld: Field, raw: Any, errors: list[str]) -> Any:
    if fld.kind == "list":
        return _string_list(fld.key, raw, errors)
    if fld.kind == "folders":
        return _folders(fld.key, raw, errors)
    text = _scalar(fld.key, raw, errors)
    if text is None:
        return None
    if fld.kind == "bool":
        if text not in ("true", "false"):
            errors.append(f"{fld.key} must be 'true' or 'false' (got: '{text}')")
            return None
        return text == "true"
    if fld.kind == "int":
        if not _DIGITS.match(text):
            errors.append(f"{fld.key} must be a number (got: '{text}')")
            return None
        return int(text)
    if fld.kind == "path":
        if not text.startswith("/"):
            errors.append(f"{fld.key} must be an absolute path starting with / (got: '{text}')")
            return None
        return text
    return text


def validate(
    doc: Any,
    schema: Schema,
    *,
    require: Mapping[str, str] | None = None,
    source: str | None = None,
) -> ValidatedConfig:
    """Check ``doc`` against ``schema`` and return the typed result.

    ``require`` makes extra keys mandatory for this invocation, mapping each
    key to the message reported when it is absent.
    """

    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise ConfigError(["configuration document must be a mapping of sections"], source)

    extra = dict(require or {})
    missing: list[str] = []
    errors: list[str] = []
    values: dict[str, Any] = {}

    for fld in schema.fields:
        raw = _lookup(doc, fld.key)
        if raw is _MISSING:
            needed = fld.required is True or (
                fld.required == "section" and _section_present(doc, fld.key)
            )
            if needed:
                missing.append(f"{fld.key} is required")
            elif fld.key in extra:
                missing.append(extra.pop(fld.key))
            elif fld.default is not None:
                values[fld.key] = fld.default
            continue
        extra.pop(fld.key, None)
        converted = _convert(fld, raw, errors)
        if converted is not None:
            values[fld.key] = converted

    for key, message in extra.items():
        if _lookup(doc, key) is _MISSING:
            missing.append(message)

    # cross-field checks only see values that passed their own field check
    problems = missing + errors
    for check in schema.checks:
        problems.extend(check(values))
    if problems:
        raise ConfigError(problems, source)

    advisories: list[str] = []
    for advise in schema.advisories:
        advisories.extend(advise(values))
    return ValidatedConfig(values, source=source, warnings=advisories)


def load(path: str, schema: Schema, *, require: Mapping[str, str] | None = None) -> ValidatedConfig:
    if not os.path.isfile(path):
        raise ConfigError([f"Configuration file not found: {path}"], path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            doc = yaml.load(fh, Loader=_LiteralLoader)
    except OSError as exc:
        raise ConfigError([f"Configuration file not readable: {path} ({exc.strerror})"], path) from exc
    except yaml.YAMLError as exc:
        raise ConfigError([f"Configuration file is not valid YAML: {exc}"], path) from exc
    return validate(doc, schema, require=require, source=path)


def _same(a: str | None, b: str | None) -> bool:
    return bool(a and b) and os.path.normpath(a) == os.path.normpath(b)


def _check_drive_paths(values: dict) -> list[str]:
    errors = []
    src = values.get("source.path")
    d1 = values.get("backup_drive_1.path")
    d2 = values.get("backup_drive_2.path")
    if _same(src, d1) or _same(src, d2):
        errors.append("source.path cannot be the same as backup paths")
    if _same(d1, d2):
        errors.append("backup_drive_1.path and backup_drive_2.path cannot be the same")
    return errors


def _snapshot_dir_check(prefix: str) -> Callable[[dict], list[str]]:
    def _check(values: dict) -> list[str]:
        if values.get(f"{prefix}.enabled") and not values.get(f"{prefix}.directory"):
            return [f"{prefix}.directory is required when {prefix}.enabled is true"]
        return []
    return _check


def _retention_advisory(values: dict) -> list[str]:
    if values.get("snapshots.retention", 1) < 1:
        return ["snapshots.retention should be at least 1"]
    return []


def _logging_fields(default_file: str | None = None) -> tuple[Field, ...]:
    return (
        Field("logging.file", "path", default=default_file),
        Field("logging.max_size_mb", "int", default=50),
        Field("logging.retention", "int", default=5),
    )


def _drive_fields(n: int) -> tuple[Field, ...]:
    p = f"backup_drive_{n}"
    return (
        Field(f"{p}.path", "path", required=True if n == 1 else "section"),
        Field(f"{p}.label", default=f"Backup{n}"),
        Field(f"{p}.luks_device", "path"),
        Field(f"{p}.compression_level", "int", default=9),
        Field(f"{p}.folders", "folders", default=()),
        Field(f"{p}.snapshots.enabled", "bool", default=False),
        Field(f"{p}.snapshots.directory"),
        Field(f"{p}.snapshots.retention", "int", default=3),
        Field(f"{p}.snapshots.prefix", default="backup"),
    )


DRIVES_SCHEMA = Schema(
    name="drives",
    fields=(
        Field("source.path", "path", required=True),
        Field("source.label", default="Source"),
        *_drive_fields(1),
        *_drive_fields(2),
        Field("exclude", "list", default=()),
        Field("rsync.delete", "bool", default=True),
        Field("rsync.progress", "bool", default=True),
        Field("rsync.compress", "bool", default=False),
        Field("rsync.archive", "bool", default=True),
        Field("btrfs.scrub_after_backup", "bool", default=False),
        Field("btrfs.show_compression_stats", "bool", default=False),
        *_logging_fields(),
        Field("safety.confirm_before_start", "bool", default=True),
        Field("safety.check_disk_space", "bool", default=True),
        Field("safety.dry_run", "bool", default=False),
    ),
    checks=(
        _check_drive_paths,
        _snapshot_dir_check("backup_drive_1.snapshots"),
        _snapshot_dir_check("backup_drive_2.snapshots"),
    ),
)

SYSTEM_SCHEMA = Schema(
    name="system",
    fields=(
        Field("backup.hdd_mount", "path", required=True),
        Field("backup.backup_root", "path", required=True),
        Field("snapshots.enabled", "bool", default=False),
        Field("snapshots.directory", "path"),
        Field("snapshots.retention", "int", default=4),
        Field("exclusions.home", "list", default=()),
        Field("exclusions.system", "list", default=()),
        Field("exclusions.code", "list", default=()),
        *_logging_fields("/var/log/backup-system.log"),
        Field("advanced.rsync_options", default="-aAXHh --info=progress2 --stats"),
    ),
    checks=(_snapshot_dir_check("snapshots"),),
    advisories=(_retention_advisory,),
)

RESTORE_SCHEMA = Schema(
    name="restore",
    fields=(
        Field("backup.hdd_mount", "path", required=True),
        Field("backup.backup_root", "path", required=True),
        Field("restore.target_disk", "path"),
        *_logging_fields(),
    ),
)

TARGET_DISK_REQUIRED = {"restore.target_disk": "restore.target_disk is required for full-disk mode"}
