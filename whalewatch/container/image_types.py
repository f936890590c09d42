"""Data types for the JSON documents of an OCI image layout."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

_CREATED_ANNOTATION = "org.opencontainers.image.created"


def _mapping(value: Any, what: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{what} must be a JSON object, got {type(value).__name__}")
    return value


def _items(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} must be a JSON array, got {type(value).__name__}")
    return value


def _str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return "" if value is None else str(value)


def _strings(data: Mapping[str, Any], key: str) -> list[str]:
    return [str(item) for item in _items(data.get(key), key)]


@dataclass
class Platform:
    architecture: str = ""
    os: str = ""


@dataclass
class Manifest:
    """One manifest entry of an image index."""

    media_type: str = ""
    digest: str = ""
    size: int = 0
    created: str = ""
    platform: Platform = field(default_factory=Platform)


@dataclass
class OCIImageIndex:
    schema_version: int = 0
    media_type: str = ""
    manifests: list[Manifest] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> OCIImageIndex:
        data = _mapping(data, "image index")
        manifests = []
        for raw in _items(data.get("manifests"), "manifests"):
            entry = _mapping(raw, "manifest")
            annotations = _mapping(entry.get("annotations"), "annotations")
            platform = _mapping(entry.get("platform"), "platform")
            manifests.append(
                Manifest(
                    media_type=_str(entry, "mediaType"),
                    digest=_str(entry, "digest"),
                    size=int(entry.get("size") or 0),
                    created=_str(annotations, _CREATED_ANNOTATION),
                    platform=Platform(
                        architecture=_str(platform, "architecture"),
                        os=_str(platform, "os"),
                    ),
                )
            )
        return cls(
            schema_version=int(data.get("schemaVersion") or 0),
            media_type=_str(data, "mediaType"),
            manifests=manifests,
        )


@dataclass
class ConfigDescriptor:
    """Reference from a manifest to the image configuration blob."""

    digest: str = ""
    media_type: str = ""
    size: int = 0


@dataclass
class LayerMetaData:
    digest: str = ""
    media_type: str = ""
    size: float = 0.0


@dataclass
class OCIImageManifest:
    config: ConfigDescriptor = field(default_factory=ConfigDescriptor)
    layers: list[LayerMetaData] = field(default_factory=list)
    media_type: str = ""
    schema_version: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> OCIImageManifest:
        data = _mapping(data, "image manifest")
        config = _mapping(data.get("config"), "config")
        layers = []
        for raw in _items(data.get("layers"), "layers"):
            layer = _mapping(raw, "layer")
            layers.append(
                LayerMetaData(
                    digest=_str(layer, "digest"),
                    media_type=_str(layer, "mediaType"),
                    size=float(layer.get("size") or 0),
                )
            )
        return cls(
            config=ConfigDescriptor(
                digest=_str(config, "digest"),
                media_type=_str(config, "mediaType"),
                size=int(config.get("size") or 0),
            ),
            layers=layers,
            media_type=_str(data, "mediaType"),
            schema_version=int(data.get("schemaVersion") or 0),
        )


@dataclass
class HistoryEntry:
    created: str = ""
    created_by: str = ""
    comment: str = ""
    empty_layer: bool = False


@dataclass
class ImageMetadata:
    """The image configuration blob: runtime settings, history and root filesystem."""

    architecture: str = ""
    env: list[str] = field(default_factory=list)
    entrypoint: list[str] = field(default_factory=list)
    working_dir: str = ""
    created: str = ""
    history: list[HistoryEntry] = field(default_factory=list)
    os: str = ""
    rootfs_type: str = ""
    diff_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> ImageMetadata:
        data = _mapping(data, "image config")
        config = _mapping(data.get("config"), "config")
        rootfs = _mapping(data.get("rootfs"), "rootfs")
        history = []
        for raw in _items(data.get("history"), "history"):
            entry = _mapping(raw, "history entry")
            history.append(
                HistoryEntry(
                    created=_str(entry, "created"),
                    created_by=_str(entry, "created_by"),
                    comment=_str(entry, "comment"),
                    empty_layer=bool(entry.get("empty_layer", False)),
                )
            )
        return cls(
            architecture=_str(data, "architecture"),
            env=_strings(config, "Env"),
            entrypoint=_strings(config, "Entrypoint"),
            working_dir=_str(config, "WorkingDir"),
            created=_str(data, "created"),
            history=history,
            os=_str(data, "os"),
            rootfs_type=_str(rootfs, "type"),
            diff_ids=_strings(rootfs, "diff_ids"),
        )