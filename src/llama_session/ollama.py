"""Local model store compatible with the Ollama registry.

Models are pulled from an OCI-style registry (``registry.ollama.ai`` by
default) and kept in Ollama's on-disk layout, so models pulled by Ollama
itself are found too::

    <root>/manifests/<host>/<namespace>/<model>/<tag>   manifest JSON
    <root>/blobs/sha256-<hex>                           content-addressed blobs

The GGUF weights are the manifest layer whose media type is
:data:`MODEL_MEDIA_TYPE`. Every downloaded blob is checked against the size
and SHA-256 digest listed in the manifest before it is moved into place.

Example:
    from llama_session import Session
    from llama_session.ollama import ModelStore

    with ModelStore() as store:
        path = store.download_model("gemma3:1b")
    with Session(str(path)) as session:
        ...
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import httpx

from .errors import (
    DigestMismatchError,
    DownloadError,
    ModelNotFoundError,
    ValidationError,
)

DEFAULT_REGISTRY = "registry.ollama.ai"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"

MODEL_MEDIA_TYPE = "application/vnd.ollama.image.model"
MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"

CHUNK_SIZE = 65536
# Applies to each read, so a slow but live transfer never times out
REQUEST_TIMEOUT = 30.0
MAX_RETRIES = 3
RETRY_DELAY = 2.0

_NAME_PART = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_DIGEST = re.compile(r"^sha256:([0-9a-f]{64})$")

ProgressCallback = Callable[[int, int], None]


def default_models_dir() -> Path:
    """``$OLLAMA_MODELS`` if set, otherwise ``~/.ollama/models``."""
    env = os.environ.get("OLLAMA_MODELS")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".ollama" / "models"


def parse_model_name(name: str) -> tuple[str, str, str]:
    """Split ``[namespace/]model[:tag]`` into ``(namespace, model, tag)``.

    Raises:
        ValidationError: If ``name`` is not a valid model reference.
    """
    if not isinstance(name, str) or not name:
        raise ValidationError("model name must be a non-empty string")
    ref, _, tag = name.partition(":")
    tag = tag or DEFAULT_TAG
    namespace, _, model = ref.rpartition("/")
    namespace = namespace or DEFAULT_NAMESPACE
    for part in (namespace, model, tag):
        if not _NAME_PART.match(part):
            raise ValidationError(f"Invalid model name: {name!r}")
    return namespace, model, tag


def _digest_hex(digest: str) -> str:
    match = _DIGEST.match(digest) if isinstance(digest, str) else None
    if match is None:
        raise ValidationError(f"Invalid digest format: {digest!r}")
    return match.group(1)


def _manifest_blobs(manifest: dict[str, Any]) -> list[dict[str, Any]]:
    """Config blob (if any) followed by the layers."""
    entries = []
    if isinstance(manifest.get("config"), dict):
        entries.append(manifest["config"])
    entries.extend(manifest.get("layers") or [])
    return entries


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ModelStore:
    """Pull, list, resolve and delete registry models on local disk.

    Args:
        root: Storage directory (default: :func:`default_models_dir`).
        host: Registry host name.
        scheme: ``https`` or ``http``.
        client: Pre-built :class:`httpx.Client`; the store owns and closes
            the client it creates itself, never one passed in.
        max_retries: Extra attempts for failed registry requests.
        retry_delay: Seconds between attempts.
    """

    def __init__(
        self,
        root: str | os.PathLike[str] | None = None,
        *,
        host: str = DEFAULT_REGISTRY,
        scheme: str = "https",
        client: httpx.Client | None = None,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        if scheme not in ("http", "https"):
            raise ValidationError("scheme must be 'http' or 'https'")
        if max_retries < 0:
            raise ValidationError("max_retries must be >= 0")
        self.root = Path(root).expanduser() if root is not None else default_models_dir()
        self.host = host
        self.scheme = scheme
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = client
        self._owns_client = client is None

    def __enter__(self) -> ModelStore:
        return self

    def __exit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
        self._client = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    # Layout ------------------------------------------------------------------
    @property
    def manifests_dir(self) -> Path:
        return self.root / "manifests" / self.host

    @property
    def blobs_dir(self) -> Path:
        return self.root / "blobs"

    def init_storage(self) -> None:
        self.manifests_dir.mkdir(parents=True, exist_ok=True)
        self.blobs_dir.mkdir(parents=True, exist_ok=True)

    def manifest_path(self, name: str) -> Path:
        namespace, model, tag = parse_model_name(name)
        return self.manifests_dir / namespace / model / tag

    def blob_path(self, digest: str) -> Path:
        return self.blobs_dir / f"sha256-{_digest_hex(digest)}"

    def _url(self, name: str, kind: str, ref: str) -> str:
        namespace, model, _ = parse_model_name(name)
        return f"{self.scheme}://{self.host}/v2/{namespace}/{model}/{kind}/{ref}"

    # Local manifests ---------------------------------------------------------
    def read_manifest(self, name: str) -> dict[str, Any]:
        """Load the stored manifest for ``name``.

        Raises:
            ModelNotFoundError: If the model has not been pulled.
        """
        path = self.manifest_path(name)
        if not path.is_file():
            raise ModelNotFoundError(f"Model not found: {name}")
        try:
            manifest = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ModelNotFoundError(f"Unreadable manifest for {name}: {e}") from e
        if not isinstance(manifest, dict):
            raise ModelNotFoundError(f"Unreadable manifest for {name}: not an object")
        return manifest

    def _iter_manifests(self) -> Iterator[tuple[str, Path]]:
        base = self.manifests_dir
        if not base.is_dir():
            return
        for path in sorted(base.glob("*/*/*")):
            if not path.is_file() or path.suffix == ".tmp":
                continue
            namespace, model, tag = path.relative_to(base).parts
            prefix = "" if namespace == DEFAULT_NAMESPACE else f"{namespace}/"
            yield f"{prefix}{model}:{tag}", path

    def list_local_models(self) -> list[str]:
        """Names (``model:tag``) of every model with a stored manifest."""
        return sorted(name for name, _ in self._iter_manifests())

    def get_model_path(self, name: str) -> Path:
        """Path of the GGUF blob for ``name``.

        Raises:
            ModelNotFoundError: If the manifest or its model blob is missing.
        """
        manifest = self.read_manifest(name)
        for layer in manifest.get("layers") or []:
            if layer.get("mediaType") == MODEL_MEDIA_TYPE:
                path = self.blob_path(layer.get("digest", ""))
                if path.is_file():
                    return path
        raise ModelNotFoundError(f"Model weights for {name} not found in blobs")

    def model_info(self, name: str) -> dict[str, Any]:
        """Summarise the stored manifest: media types, digests and sizes."""
        manifest = self.read_manifest(name)
        layers = [
            {
                "media_type": layer.get("mediaType", ""),
                "digest": layer.get("digest", ""),
                "size": int(layer.get("size", 0)),
            }
            for layer in manifest.get("layers") or []
        ]
        config = manifest.get("config") or {}
        return {
            "name": name,
            "schema_version": manifest.get("schemaVersion"),
            "media_type": manifest.get("mediaType"),
            "config_digest": config.get("digest"),
            "config_size": int(config.get("size", 0)),
            "layers": layers,
            "total_size": sum(layer["size"] for layer in layers),
        }

    def delete_model(self, name: str) -> int:
        """Remove ``name`` and every blob no other stored model references.

        Returns:
            Number of blob files deleted.
        """
        manifest = self.read_manifest(name)
        path = self.manifest_path(name)
        path.unlink()
        # Drop empty model/namespace directories
        for parent in (path.parent, path.parent.parent):
            if parent.is_dir() and not any(parent.iterdir()):
                parent.rmdir()

        in_use = set()
        for _, other in self._iter_manifests():
            try:
                other_manifest = json.loads(other.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logging.warning(f"Skipping unreadable manifest {other}: {e}")
                continue
            if isinstance(other_manifest, dict):
                in_use.update(b.get("digest") for b in _manifest_blobs(other_manifest))

        deleted = 0
        for entry in _manifest_blobs(manifest):
            digest = entry.get("digest", "")
            if digest in in_use:
                continue
            blob = self.blob_path(digest)
            if blob.is_file():
                blob.unlink()
                deleted += 1
        logging.info(f"Deleted model {name} ({deleted} blobs removed)")
        return deleted

    # Registry ----------------------------------------------------------------
    def _request(self, url: str) -> httpx.Response:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                response = self.client.get(url, headers={"Accept": MANIFEST_MEDIA_TYPE})
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    raise ModelNotFoundError(f"Not found in registry: {url}") from e
                last_error = e
            except httpx.HTTPError as e:
                last_error = e
            logging.warning(f"Registry request failed (attempt {attempt + 1}): {last_error}")
            if attempt < self.max_retries:
                time.sleep(self.retry_delay)
        raise DownloadError(
            f"Failed after {self.max_retries} retries: {last_error}"
        ) from last_error

    def fetch_manifest(self, name: str) -> dict[str, Any]:
        """Fetch the manifest for ``name`` from the registry (not stored)."""
        _, _, tag = parse_model_name(name)
        logging.info(f"Fetching manifest for {name}")
        response = self._request(self._url(name, "manifests", tag))
        try:
            manifest = response.json()
        except ValueError as e:
            raise DownloadError(f"Invalid manifest for {name}: {e}") from e
        if not isinstance(manifest, dict):
            raise DownloadError(f"Invalid manifest for {name}: not an object")
        return manifest

    def verify_blob(self, path: Path, digest: str) -> None:
        """Raise :class:`DigestMismatchError` unless ``path`` hashes to ``digest``."""
        expected = _digest_hex(digest)
        actual = sha256_file(path)
        if actual != expected:
            raise DigestMismatchError(
                f"Checksum mismatch: expected {expected}, got {actual}"
            )

    def download_blob(
        self,
        name: str,
        digest: str,
        size: int,
        progress: ProgressCallback | None = None,
    ) -> Path:
        """Download one blob unless a file of the right size is already stored.

        The blob is streamed to a ``.partial`` file, hashed on the way, and
        renamed only after its size and digest match.
        """
        target = self.blob_path(digest)
        expected = _digest_hex(digest)
        if target.is_file():
            if target.stat().st_size == size:
                logging.debug(f"Blob already present: {target.name}")
                return target
            logging.warning(
                f"Blob {target.name} has size {target.stat().st_size}, "
                f"expected {size}; downloading again"
            )
            target.unlink()

        self.blobs_dir.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".partial")
        url = self._url(name, "blobs", digest)
        logging.info(f"Downloading blob {target.name} ({size / 1048576.0:.1f}MB)")

        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            hasher = hashlib.sha256()
            received = 0
            try:
                with self.client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(partial, "wb") as f:
                        for chunk in response.iter_bytes(CHUNK_SIZE):
                            f.write(chunk)
                            hasher.update(chunk)
                            received += len(chunk)
                            if progress is not None:
                                progress(received, size)
                break
            except httpx.HTTPStatusError as e:
                partial.unlink(missing_ok=True)
                if e.response.status_code == 404:
                    raise ModelNotFoundError(f"Blob not found in registry: {digest}") from e
                last_error = e
            except httpx.HTTPError as e:
                partial.unlink(missing_ok=True)
                last_error = e
            logging.warning(f"Blob download failed (attempt {attempt + 1}): {last_error}")
            if attempt < self.max_retries:
                time.sleep(self.retry_delay)
        else:
            raise DownloadError(
                f"Failed after {self.max_retries} retries: {last_error}"
            ) from last_error

        actual = hasher.hexdigest()
        if received != size:
            partial.unlink(missing_ok=True)
            raise DigestMismatchError(
                f"Size mismatch for {target.name}: expected {size}, got {received}"
            )
        if actual != expected:
            partial.unlink(missing_ok=True)
            raise DigestMismatchError(
                f"Checksum mismatch: expected {expected}, got {actual}"
            )
        partial.replace(target)
        return target

    def download_model(
        self, name: str, progress: ProgressCallback | None = None
    ) -> Path:
        """Pull ``name`` (``model[:tag]``) and return its GGUF blob path.

        The manifest is written last, so a model only appears in
        :meth:`list_local_models` once all of its blobs are verified.
        """
        self.init_storage()
        start = time.perf_counter()
        manifest = self.fetch_manifest(name)
        entries = _manifest_blobs(manifest)
        for i, entry in enumerate(entries, 1):
            logging.info(f"Blob {i}/{len(entries)}: {entry.get('mediaType', '?')}")
            self.download_blob(
                name, entry.get("digest", ""), int(entry.get("size", 0)), progress
            )

        path = self.manifest_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(manifest), encoding="utf-8")
        tmp.replace(path)
        logging.info(f"Pulled {name} in {time.perf_counter() - start:.1f}s")
        return self.get_model_path(name)


def resolve_model_path(model: str, store: ModelStore | None = None) -> str:
    """Map an Ollama model name to its local GGUF path.

    ``model`` is returned unchanged when it names an existing file, is not a
    valid model name, or is not in the store.
    """
    if os.path.exists(model):
        return model
    try:
        parse_model_name(model)
    except ValidationError:
        return model
    store = store or ModelStore()
    try:
        path = str(store.get_model_path(model))
    except ModelNotFoundError:
        return model
    logging.debug(f"Resolved model {model} to {path}")
    return path
