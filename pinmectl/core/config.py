"""Configuration loading and validation for pinmectl."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, replace
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from pinmectl.core.errors import ConfigLoadError, ConfigValidationError
from pinmectl.core.model import (
    BackendSettings,
    BLESettings,
    PinmeConfig,
    ProvisioningTimings,
    QualityRung,
    UploadSettings,
)

_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_QUOTE_TRIM_RE = re.compile(r"^['\"`\s]+|['\"`\s]+$")
LOGGER = logging.getLogger(__name__)

ENV_OVERRIDES = {
    "PINME_SUPABASE_URL": "url",
    "PINME_ANON_KEY": "anon_key",
    "PINME_ACCESS_TOKEN": "access_token",
    "PINME_OWNER_ID": "owner_id",
    "PINME_CA_BUNDLE": "ca_bundle",
    "PINME_TLS_INSECURE": "tls_insecure",
}


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
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedConfig:
    config: PinmeConfig
    warnings: tuple[str, ...]
    sources: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("pinmectl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def user_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "pinmectl" / "config.yaml"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _validate(doc: dict[str, Any], source: str) -> None:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def clean_secret(value: Any) -> str | None:
    """Strip whitespace and stray quote characters; empty becomes ``None``."""
    if value is None:
        return None
    cleaned = _QUOTE_TRIM_RE.sub("", str(value))
    return cleaned or None


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise ConfigValidationError(
            f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
        )
    return normalized


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes", "on"}:
            return True
        if lowered in {"false", "0", "no", "off", ""}:
            return False
    raise ConfigValidationError(f"{context} must be boolean true/false")


def _env_overrides() -> dict[str, Any]:
    backend: dict[str, Any] = {}
    for env_name, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is not None:
            backend[key] = value
    return {"backend": backend} if backend else {}


def _build_config(doc: dict[str, Any]) -> PinmeConfig:
    backend_doc = doc.get("backend", {})
    ble_doc = doc.get("ble", {})
    prov_doc = doc.get("provisioning", {})
    upload_doc = doc.get("upload", {})

    backend = BackendSettings(
        url=clean_secret(backend_doc.get("url")),
        anon_key=clean_secret(backend_doc.get("anon_key")),
        access_token=clean_secret(backend_doc.get("access_token")),
        owner_id=clean_secret(backend_doc.get("owner_id")),
        ca_bundle=(backend_doc.get("ca_bundle") or "").strip() or None,
        tls_insecure=_normalize_bool(
            backend_doc.get("tls_insecure", False),
            context="backend.tls_insecure",
        ),
    )
    if backend.url:
        backend = replace(backend, url=backend.url.rstrip("/"))

    defaults = BLESettings()
    ble = BLESettings(
        service_uuid=_normalize_uuid(
            ble_doc.get("service_uuid", defaults.service_uuid), context="ble.service_uuid"
        ),
        write_char_uuid=_normalize_uuid(
            ble_doc.get("write_char_uuid", defaults.write_char_uuid), context="ble.write_char_uuid"
        ),
        notify_char_uuid=_normalize_uuid(
            ble_doc.get("notify_char_uuid", defaults.notify_char_uuid), context="ble.notify_char_uuid"
        ),
        device_id_char_uuids=tuple(
            _normalize_uuid(u, context="ble.device_id_char_uuids")
            for u in ble_doc.get("device_id_char_uuids", defaults.device_id_char_uuids)
        ),
        name_prefix=ble_doc.get("name_prefix", defaults.name_prefix),
        scan_timeout_s=float(ble_doc.get("scan_timeout_s", defaults.scan_timeout_s)),
        connect_timeout_s=float(ble_doc.get("connect_timeout_s", defaults.connect_timeout_s)),
    )

    timings = ProvisioningTimings(
        **{
            key: type(getattr(ProvisioningTimings(), key))(value)
            for key, value in prov_doc.items()
        }
    )

    upload_defaults = UploadSettings()
    ladder = upload_defaults.ladder
    if "ladder" in upload_doc:
        ladder = tuple(
            QualityRung(max_width=int(rung["max_width"]), quality=float(rung["quality"]))
            for rung in upload_doc["ladder"]
        )
    upload = UploadSettings(
        bucket=upload_doc.get("bucket", upload_defaults.bucket),
        proxy_function=upload_doc.get("proxy_function", upload_defaults.proxy_function),
        hedge_delay_s=float(upload_doc.get("hedge_delay_s", upload_defaults.hedge_delay_s)),
        direct_timeout_s=float(upload_doc.get("direct_timeout_s", upload_defaults.direct_timeout_s)),
        proxy_timeout_s=float(upload_doc.get("proxy_timeout_s", upload_defaults.proxy_timeout_s)),
        ladder=ladder,
    )

    return PinmeConfig(backend=backend, ble=ble, provisioning=timings, upload=upload)


def load_config(path: Path | None = None) -> LoadedConfig:
    """Load packaged defaults, then the user file, ``path``, and environment overrides."""
    warnings: list[str] = []
    sources: list[str] = []

    packaged = resources.files("pinmectl.defaults").joinpath("pinmectl.yaml")
    doc = _read_yaml(packaged)
    _validate(doc, "packaged defaults")
    sources.append("packaged defaults")

    layers: list[Path] = []
    user_path = user_config_path()
    if user_path.is_file():
        layers.append(user_path)
    if path is not None:
        if not path.is_file():
            raise ConfigLoadError(f"Config file {path} does not exist")
        layers.append(path)

    for layer in layers:
        override = _read_yaml(layer)
        _validate(override, str(layer))
        if "backend" in override and "url" in override["backend"] and doc.get("backend", {}).get("url"):
            warning = f"{layer} overrides the packaged backend URL"
            LOGGER.warning(warning)
            warnings.append(warning)
        doc = _merge(doc, override)
        sources.append(str(layer))

    env = _env_overrides()
    if env:
        doc = _merge(doc, env)
        sources.append("environment")

    return LoadedConfig(config=_build_config(doc), warnings=tuple(warnings), sources=tuple(sources))
