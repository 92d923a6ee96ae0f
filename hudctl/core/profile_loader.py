"""Driver profile loading and validation for YAML-based hudctl profiles."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from hudctl.core.errors import ProfileLoadError, ProfileValidationError
from hudctl.core.model import DriverProfile, MatchMode, MatchRules, TransportSpec

_USB_ID_RE = re.compile(r"^([0-9a-f]{4}):([0-9a-f]{4})$")
_VID_RE = re.compile(r"^[0-9a-f]{4}$")
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ProfileValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedProfiles:
    profiles: dict[str, DriverProfile]
    warnings: tuple[str, ...]

    def enabled(self) -> list[DriverProfile]:
        return [profile for profile in self.profiles.values() if profile.enabled]


def _load_schema_validator() -> Any:
    schema_text = resources.files("hudctl.schemas").joinpath("profile.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _profile_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "hudctl/profiles", xdg_data / "hudctl/profiles"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProfileLoadError(f"Could not read profile file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ProfileValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ProfileValidationError(f"Profile file {path} must contain a mapping at root")
    return loaded


def _normalize_usb_id(value: str, *, context: str) -> tuple[int, int]:
    match = _USB_ID_RE.match(value.strip().lower())
    if not match:
        raise ProfileValidationError(f"{context} must look like 'vvvv:pppp' (hex)")
    return int(match.group(1), 16), int(match.group(2), 16)


def _normalize_vendor_id(value: str, *, context: str) -> int:
    normalized = value.strip().lower()
    if not _VID_RE.match(normalized):
        raise ProfileValidationError(f"{context} must be a 4-digit hex vendor id")
    return int(normalized, 16)


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise ProfileValidationError(f"{context} must be boolean true/false")


def _build_profile(doc: dict[str, Any], source: Path | Traversable, validator: Any) -> DriverProfile:
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ProfileValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    profile_id = doc["id"]
    match_doc = doc["match"]
    match = MatchRules(
        mode=MatchMode(match_doc["mode"]),
        ids=tuple(
            _normalize_usb_id(value, context=f"{profile_id}.match.ids[{index}]")
            for index, value in enumerate(match_doc.get("ids", []))
        ),
        vendor_ids=tuple(
            _normalize_vendor_id(value, context=f"{profile_id}.match.vendor_ids[{index}]")
            for index, value in enumerate(match_doc.get("vendor_ids", []))
        ),
        interface_classes=tuple(int(c) for c in match_doc.get("interface_classes", [])),
    )
    if match.mode is MatchMode.EXACT and not match.ids:
        raise ProfileValidationError(
            f"{profile_id}.match: exact mode needs at least one entry in ids ({source})"
        )

    transport_doc = doc["transport"]
    transport = TransportSpec(
        type=transport_doc["type"],
        baudrate=int(transport_doc.get("baudrate", 115200)),
        timeout_s=float(transport_doc.get("timeout_s", 1.0)),
        interface=int(transport_doc.get("interface", 0)),
    )

    return DriverProfile(
        id=profile_id,
        name=doc["name"],
        manufacturer=doc.get("manufacturer", doc["name"]),
        match=match,
        transport=transport,
        enabled=_normalize_bool(doc.get("enabled", True), context=f"{profile_id}.enabled"),
    )


def _iter_packaged_profile_paths() -> list[Traversable]:
    profile_root = resources.files("hudctl.profiles")
    items = [item for item in profile_root.iterdir() if item.name.endswith((".yml", ".yaml"))]
    return sorted(items, key=lambda item: item.name)


def _iter_user_profile_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _profile_dirs():
        if directory.is_dir():
            paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def _override_warning(profile_id: str, origin: str, previous: tuple[str, Path | Traversable]) -> str:
    previous_origin, previous_path = previous
    if origin == "user" and previous_origin == "packaged":
        return f"User profile '{profile_id}' overrides packaged profile"
    return f"Profile '{profile_id}' overrides the one defined in {previous_path}"


def load_profiles() -> LoadedProfiles:
    """Load packaged profiles, then user profiles; later ids replace earlier ones."""
    validator = _load_schema_validator()
    sources: list[tuple[str, Path | Traversable]] = [
        *(("packaged", path) for path in _iter_packaged_profile_paths()),
        *(("user", path) for path in _iter_user_profile_paths()),
    ]

    profiles: dict[str, DriverProfile] = {}
    seen: dict[str, tuple[str, Path | Traversable]] = {}
    warnings: list[str] = []
    for origin, path in sources:
        profile = _build_profile(_read_yaml(path), path, validator)
        if profile.id in seen:
            warning = _override_warning(profile.id, origin, seen[profile.id])
            LOGGER.warning(warning)
            warnings.append(warning)
        profiles[profile.id] = profile
        seen[profile.id] = (origin, path)

    return LoadedProfiles(profiles=profiles, warnings=tuple(warnings))
