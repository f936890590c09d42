"""Fetching the Dockerfile and image tarballs that a rule set is checked against."""

from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import re
import subprocess
import tarfile
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import requests

from whalewatch.config import get_config

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("oci", "docker")

OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
_INDEX_TYPES = (OCI_INDEX, DOCKER_MANIFEST_LIST)
_ACCEPT = ", ".join((OCI_INDEX, DOCKER_MANIFEST_LIST, OCI_MANIFEST, DOCKER_MANIFEST))

_DEFAULT_REGISTRY = "index.docker.io"
_DOCKER_HUB_API = "registry-1.docker.io"
_DEFAULT_TAG = "latest"
_PLATFORM = ("linux", "amd64")
_OCI_LAYOUT = b'{"imageLayoutVersion":"1.0.0"}'
_TIMEOUT = 60
_CHUNK = 1 << 20
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class FetchError(RuntimeError):
    """Raised when an image or repository file cannot be fetched."""


@dataclass(frozen=True)
class _Reference:
    registry: str
    repository: str
    tag: str = ""
    digest: str = ""

    @property
    def identifier(self) -> str:
        return self.digest or self.tag

    @property
    def api_host(self) -> str:
        return _DOCKER_HUB_API if self.registry == _DEFAULT_REGISTRY else self.registry

    @property
    def scheme(self) -> str:
        host = self.registry.split(":", 1)[0]
        if host == "localhost" or host.startswith("127.") or host.endswith(".local"):
            return "http"
        return "https"

    def __str__(self) -> str:
        base = f"{self.registry}/{self.repository}"
        return f"{base}@{self.digest}" if self.digest else f"{base}:{self.tag}"


def _parse_reference(image: str) -> _Reference:
    if not image:
        raise FetchError("empty image reference")
    rest, _, digest = image.partition("@")
    tag = ""
    if ":" in rest.rsplit("/", 1)[-1]:
        rest, tag = rest.rsplit(":", 1)
    first, sep, remainder = rest.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry, repository = first, remainder
    else:
        registry, repository = _DEFAULT_REGISTRY, rest
    if registry == "docker.io":
        registry = _DEFAULT_REGISTRY
    if registry == _DEFAULT_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"
    if not repository or repository != repository.lower():
        raise FetchError(f"invalid image reference: {image}")
    if not digest and not tag:
        tag = _DEFAULT_TAG
    return _Reference(registry, repository, tag, digest)


@dataclass
class _FetchedImage:
    manifest: bytes
    media_type: str
    config_digest: str
    layer_digests: list[str]


def _sha256_digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


class _RegistryClient:
    """Minimal client for the pull side of the registry HTTP API."""

    def __init__(self, reference: _Reference) -> None:
        self.reference = reference
        self.session = requests.Session()
        self.base_url = f"{reference.scheme}://{reference.api_host}/v2/{reference.repository}"

    def __enter__(self) -> _RegistryClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.session.close()

    def _authenticate(self, challenge: str) -> None:
        scheme, _, params = challenge.partition(" ")
        if scheme.lower() != "bearer":
            raise FetchError(f"unsupported registry authentication: {challenge or 'none'}")
        values = dict(_CHALLENGE_PARAM.findall(params))
        realm = values.get("realm")
        if not realm:
            raise FetchError("registry authentication challenge has no realm")
        query = {"scope": values.get("scope", f"repository:{self.reference.repository}:pull")}
        if "service" in values:
            query["service"] = values["service"]
        response = self.session.get(realm, params=query, timeout=_TIMEOUT)
        if response.status_code >= 400:
            raise FetchError(f"token request failed with status {response.status_code}")
        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise FetchError("registry token response holds no token")
        self.session.headers["Authorization"] = f"Bearer {token}"

    def _get(self, path: str, accept: str | None = None, stream: bool = False) -> requests.Response:
        url = self.base_url + path
        headers = {"Accept": accept} if accept else {}
        response = self.session.get(url, headers=headers, stream=stream, timeout=_TIMEOUT)
        if response.status_code == 401 and "Authorization" not in self.session.headers:
            challenge = response.headers.get("WWW-Authenticate", "")
            response.close()
            self._authenticate(challenge)
            response = self.session.get(url, headers=headers, stream=stream, timeout=_TIMEOUT)
        if response.status_code >= 400:
            response.close()
            raise FetchError(f"registry returned status {response.status_code} for {url}")
        return response

    def _manifest(self, identifier: str) -> tuple[bytes, str, dict[str, Any]]:
        response = self._get(f"/manifests/{identifier}", accept=_ACCEPT)
        content = response.content
        if identifier.startswith("sha256:") and _sha256_digest(content) != identifier:
            raise FetchError(f"manifest digest mismatch for {identifier}")
        data = json.loads(content)
        if not isinstance(data, dict):
            raise FetchError("manifest is not a JSON object")
        header_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip()
        return content, data.get("mediaType") or header_type, data

    def fetch_image(self) -> _FetchedImage:
        """Resolve the reference (picking linux/amd64 from an index) to an image manifest."""
        content, media_type, data = self._manifest(self.reference.identifier)
        if media_type in _INDEX_TYPES or "manifests" in data:
            digest = next(
                (
                    entry.get("digest", "")
                    for entry in data.get("manifests") or []
                    if (
                        (entry.get("platform") or {}).get("os"),
                        (entry.get("platform") or {}).get("architecture"),
                    )
                    == _PLATFORM
                ),
                "",
            )
            if not digest:
                raise FetchError("no manifest for platform linux/amd64 in image index")
            content, media_type, data = self._manifest(digest)
        config = data.get("config")
        layers = data.get("layers")
        if not isinstance(config, Mapping) or not isinstance(layers, list):
            raise FetchError(f"unsupported manifest type: {media_type}")
        return _FetchedImage(
            manifest=content,
            media_type=media_type or OCI_MANIFEST,
            config_digest=str(config["digest"]),
            layer_digests=[str(layer["digest"]) for layer in layers],
        )

    def download_blob(self, digest: str, path: str) -> None:
        """Stream blob ``digest`` into ``path``, checking its content hash."""
        algorithm, _, expected = digest.partition(":")
        try:
            hasher = hashlib.new(algorithm)
        except ValueError as exc:
            raise FetchError(f"unsupported digest algorithm: {algorithm}") from exc
        with self._get(f"/blobs/{digest}", stream=True) as response, open(path, "wb") as handle:
            for chunk in response.iter_content(_CHUNK):
                hasher.update(chunk)
                handle.write(chunk)
        if hasher.hexdigest() != expected:
            raise FetchError(f"blob digest mismatch for {digest}")


def _blob_name(digest: str) -> str:
    return "blobs/" + digest.replace(":", "/")


def _add_bytes(archive: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = 0o644
    archive.addfile(info, io.BytesIO(data))


def _add_dir(archive: tarfile.TarFile, name: str) -> None:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    archive.addfile(info)


def _write_oci_tarball(
    destination: str, manifest: bytes, media_type: str, blob_files: Mapping[str, str]
) -> None:
    """Write an uncompressed OCI image layout tarball holding one image."""
    manifest_digest = _sha256_digest(manifest)
    index = {
        "schemaVersion": 2,
        "mediaType": OCI_INDEX,
        "manifests": [{"mediaType": media_type, "size": len(manifest), "digest": manifest_digest}],
    }
    algorithms = sorted({d.partition(":")[0] for d in (manifest_digest, *blob_files)})
    with tarfile.open(destination, "w", format=tarfile.PAX_FORMAT) as archive:
        _add_dir(archive, "blobs")
        for algorithm in algorithms:
            _add_dir(archive, f"blobs/{algorithm}")
        _add_bytes(archive, _blob_name(manifest_digest), manifest)
        for digest, path in blob_files.items():
            archive.add(path, arcname=_blob_name(digest), recursive=False)
        _add_bytes(archive, "index.json", json.dumps(index).encode())
        _add_bytes(archive, "oci-layout", _OCI_LAYOUT)


def _write_docker_tarball(
    destination: str,
    repo_tags: Sequence[str],
    config_digest: str,
    layer_digests: Sequence[str],
    blob_files: Mapping[str, str],
) -> None:
    """Write a tarball in the layout that ``docker load`` accepts."""
    config_name = f"{config_digest.partition(':')[2]}.json"
    layer_names = [f"{digest.partition(':')[2]}.tar" for digest in layer_digests]
    manifest = [{"Config": config_name, "RepoTags": list(repo_tags), "Layers": layer_names}]
    with tarfile.open(destination, "w", format=tarfile.PAX_FORMAT) as archive:
        archive.add(blob_files[config_digest], arcname=config_name, recursive=False)
        written: set[str] = set()
        for digest, name in zip(layer_digests, layer_names):
            if name not in written:
                archive.add(blob_files[digest], arcname=name, recursive=False)
                written.add(name)
        _add_bytes(archive, "manifest.json", json.dumps(manifest).encode())


def load_tar_to_path(image: str, destination: str, fmt: str) -> None:
    """Download ``image`` from its registry into a tarball of format 'oci' or 'docker'."""
    fmt = fmt.lower()
    if fmt not in SUPPORTED_FORMATS:
        raise FetchError(f"unsupported format: {fmt} (supported: 'oci', 'docker')")
    reference = _parse_reference(image)
    with _RegistryClient(reference) as client, tempfile.TemporaryDirectory(
        prefix="blobs"
    ) as blob_dir:
        fetched = client.fetch_image()
        blob_files: dict[str, str] = {}
        for digest in (fetched.config_digest, *fetched.layer_digests):
            if digest not in blob_files:
                path = os.path.join(blob_dir, digest.replace(":", "_"))
                client.download_blob(digest, path)
                blob_files[digest] = path
        if fmt == "docker":
            logger.info("Saving docker tarball for %s", image)
            tags = [] if reference.digest else [str(reference)]
            _write_docker_tarball(
                destination, tags, fetched.config_digest, fetched.layer_digests, blob_files
            )
        else:
            logger.info("Saving oci tarball for %s", image)
            _write_oci_tarball(destination, fetched.manifest, fetched.media_type, blob_files)


def _load_image_from_registry(image: str) -> tuple[str, str]:
    logger.info("Downloading image %s from registry", image)
    tmp_dir = tempfile.mkdtemp(prefix="filecache")
    oci_destination = os.path.join(tmp_dir, "image.tar")
    load_tar_to_path(image, oci_destination, "oci")
    docker_destination = os.path.join(tmp_dir, "image_docker.tar")
    load_tar_to_path(image, docker_destination, "docker")
    logger.info("Successful download of %s", image)
    return oci_destination, docker_destination


def _git(*args: str) -> None:
    try:
        result = subprocess.run(["git", *args], capture_output=True, text=True)
    except OSError as exc:
        raise FetchError(f"Could not run git: {exc}") from exc
    if result.returncode != 0:
        raise FetchError(f"git {args[0]} failed: {result.stderr.strip()}")


def _get_file_from_repository(repository_url: str, branch: str, path: str) -> bytes:
    with tempfile.TemporaryDirectory(prefix="checkout") as checkout:
        clone = ["clone", "--depth", "1"]
        if branch:
            clone += ["--branch", branch]
        _git(*clone, repository_url, checkout)
        try:
            with open(os.path.join(checkout, path.lstrip("/")), "rb") as handle:
                return handle.read()
        except OSError:
            logger.error("Could not open file %s in worktree", path)
            raise


def _load_dockerfile_from_repository(repository_url: str, branch: str, dockerfile_path: str) -> str:
    data = _get_file_from_repository(repository_url, branch, dockerfile_path)
    loaded_path = os.path.join(tempfile.mkdtemp(prefix="filecache"), "Dockerfile")
    with open(loaded_path, "wb") as handle:
        handle.write(data)
    return loaded_path


_FETCH_FAILURES = (FetchError, OSError, ValueError, KeyError, requests.RequestException)


def fetch_container_files() -> tuple[str, str, str]:
    """Return (Dockerfile path, OCI tarball path, docker tarball path) for the configured target.

    A path that could not be fetched is returned as an empty string.
    """
    target = get_config().target
    dockerfile_path = ""
    if not target.repository_url:
        dockerfile_path = target.dockerfile_path
    else:
        try:
            dockerfile_path = _load_dockerfile_from_repository(
                target.repository_url, target.branch, target.dockerfile_path
            )
        except _FETCH_FAILURES as exc:
            logger.warning("Could not load dockerfile from repository: %s", exc)

    oci_path = docker_path = ""
    if not target.image:
        logger.debug("Using local files for tar paths")
        oci_path, docker_path = target.oci_path, target.docker_path
    else:
        try:
            oci_path, docker_path = _load_image_from_registry(target.image)
        except _FETCH_FAILURES as exc:
            logger.warning("Could not load image from registry: %s", exc)
    return dockerfile_path, oci_path, docker_path