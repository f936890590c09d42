"""Application configuration loaded from YAML with environment overrides."""

from __future__ import annotations

import copy
import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_ENV_PREFIX = "WHALE_WATCHER_"
_CONFIG_PATH_ENV = f"{_ENV_PREFIX}CONFIG_PATH"
_DEFAULT_CONFIG_PATH = "./config.yaml"


class ConfigError(ValueError):
    """Raised when a configuration is invalid or cannot be parsed."""


@dataclass
class TargetConfig:
    repository_url: str = field(default="", metadata={"yaml": "repository", "env": "REPOSITORY_URL"})
    dockerfile_path: str = field(default="", metadata={"yaml": "dockerfile", "env": "DOCKERFILE_PATH"})
    image: str = field(default="", metadata={"yaml": "image", "env": "IMAGE"})
    branch: str = field(default="", metadata={"yaml": "branch", "env": "BRANCH"})
    oci_path: str = field(default="", metadata={"yaml": "ocipath", "env": "OCI_PATH"})
    docker_path: str = field(default="", metadata={"yaml": "dockerpath", "env": "DOCKER_PATH"})

    def validate(self) -> None:
        if not self.repository_url and not self.dockerfile_path:
            raise ConfigError("RepositoryURL and Dockerfilepath must be set!")
        if not self.image and (not self.oci_path or not self.docker_path):
            raise ConfigError("Either image identifier or tar paths must be set")
        if self.image and self.oci_path:
            raise ConfigError("Only image identifier OR oci path can be set at a time")


@dataclass
class GithubConfig:
    pat: str = field(default="", metadata={"yaml": "pat", "env": "PAT"})
    username: str = field(default="", metadata={"yaml": "username", "env": "USER_NAME"})

    def validate(self) -> None:
        if not self.pat:
            raise ConfigError("PAT must be set!")
        if not self.username:
            raise ConfigError("Username must be set!")


@dataclass
class BaseImageCacheConfig:
    base_images: list[str] = field(
        default_factory=list, metadata={"yaml": "base_images", "env": "BASE_IMAGES", "list": True}
    )
    cache_location: str = field(default="", metadata={"yaml": "cache_location", "env": "CACHE_LOCATION"})

    def validate(self) -> None:
        if self.base_images and not self.cache_location:
            raise ConfigError("Cache location must be provided")


@dataclass
class Config:
    github: GithubConfig = field(default_factory=GithubConfig)
    target: TargetConfig = field(default_factory=TargetConfig)
    base_image_cache: BaseImageCacheConfig = field(default_factory=BaseImageCacheConfig)
    target_list: str = ""
    log_level: int = 0

    def validate(self) -> None:
        self.github.validate()
        self.target.validate()


# (attribute, section class, yaml key, environment prefix)
_SECTIONS: tuple[tuple[str, type, str, str], ...] = (
    ("github", GithubConfig, "github", "GITHUB_"),
    ("target", TargetConfig, "target", "TARGET_"),
    ("base_image_cache", BaseImageCacheConfig, "base_image_cache", "BASE_IMAGE_CACHE"),
)

_LOG_LEVELS = {
    -1: logging.DEBUG,
    0: logging.DEBUG,
    1: logging.INFO,
    2: logging.WARNING,
    3: logging.ERROR,
    4: logging.CRITICAL,
    5: logging.CRITICAL,
}

_lock = threading.Lock()
_config: Config | None = None
_config_path: str | None = None


def _parse_section(cls: type, raw: Any) -> Any:
    if raw is None:
        return cls()
    if not isinstance(raw, Mapping):
        raise ConfigError(f"expected a mapping for {cls.__name__}, got {type(raw).__name__}")
    values: dict[str, Any] = {}
    for spec in fields(cls):
        value = raw.get(spec.metadata["yaml"])
        if value is None:
            continue
        if spec.metadata.get("list"):
            if not isinstance(value, list):
                raise ConfigError(f"{spec.metadata['yaml']} must be a list")
            values[spec.name] = [str(item) for item in value]
        else:
            values[spec.name] = str(value)
    return cls(**values)


def _parse_config(raw: Any) -> Config:
    if raw is None:
        return Config()
    if not isinstance(raw, Mapping):
        raise ConfigError("configuration must be a mapping")
    sections = {name: _parse_section(cls, raw.get(key)) for name, cls, key, _ in _SECTIONS}
    target_list = raw.get("target_list")
    log_level = raw.get("log_level")
    return Config(
        **sections,
        target_list="" if target_list is None else str(target_list),
        log_level=0 if log_level is None else int(log_level),
    )


def _apply_env_overrides(config: Config) -> Config:
    for name, _, _, prefix in _SECTIONS:
        section = getattr(config, name)
        for spec in fields(section):
            value = os.environ.get(f"{_ENV_PREFIX}{prefix}{spec.metadata['env']}", "")
            if not value:
                continue
            setattr(section, spec.name, value.split(",") if spec.metadata.get("list") else value)
    return config


def _build_config(data: bytes | str) -> Config:
    try:
        config = _parse_config(yaml.safe_load(data))
    except (yaml.YAMLError, ValueError, TypeError) as exc:
        logger.error("Could not parse config, initialising empty and trusting env fallback: %s", exc)
        config = Config()
    return _apply_env_overrides(config)


def _load_config_from_file(path: str) -> Config:
    try:
        with open(path, "rb") as handle:
            data = handle.read()
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return _apply_env_overrides(Config())
    return _build_config(data)


def _apply_log_level(level: int) -> None:
    if level > max(_LOG_LEVELS):
        python_level = logging.CRITICAL + 1
    else:
        python_level = _LOG_LEVELS.get(level, logging.DEBUG)
    logging.getLogger(__name__.split(".")[0]).setLevel(python_level)


def _resolve_config_path() -> str:
    if _config_path:
        return _config_path
    from_env = os.environ.get(_CONFIG_PATH_ENV, "")
    if from_env:
        logger.warning("Config path specified in env! Updating to %s", from_env)
        return from_env
    return _DEFAULT_CONFIG_PATH


def set_config_path(path: str) -> None:
    """Set the file the configuration is loaded from on next load."""
    global _config_path
    _config_path = path


def load_config_from_data(data: bytes | str) -> Config:
    """Parse YAML data, apply environment overrides and make it the active config."""
    global _config
    config = _build_config(data)
    _config = config
    return copy.deepcopy(config)


def get_config() -> Config:
    """Return the active configuration, loading it from file on first use."""
    global _config
    if _config is None:
        with _lock:
            if _config is None:
                config = _load_config_from_file(_resolve_config_path())
                try:
                    config.validate()
                except ConfigError as exc:
                    logger.error("Invalid config! %s", exc)
                _apply_log_level(config.log_level)
                _config = config
    return copy.deepcopy(_config)


def reset_config() -> None:
    """Forget the loaded configuration and any path set with set_config_path."""
    global _config, _config_path
    with _lock:
        _config = None
        _config_path = None


def should_interact_with_vsc() -> bool:
    """Return True when GitHub credentials are configured."""
    cfg = get_config()
    return bool(cfg.github.pat) and bool(cfg.github.username)