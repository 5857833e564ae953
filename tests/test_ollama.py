"""Tests for the Ollama-compatible local model store."""

import hashlib
import json

import httpx
import pytest

import llama_session.session as session_module
from conftest import ScriptedBackend
from llama_session import (
    DigestMismatchError,
    DownloadError,
    ModelNotFoundError,
    ModelStore,
    Session,
    ValidationError,
    api,
    parse_model_name,
    resolve_model_path,
)
from llama_session.ollama import MODEL_MEDIA_TYPE

WEIGHTS = b"GGUF" + bytes(range(256)) * 8
TEMPLATE = b"{{ .Prompt }}"
CONFIG = b'{"model_format": "gguf"}'


def digest_of(data):
    return "sha256:" + hashlib.sha256(data).hexdigest()


def make_manifest(weights=WEIGHTS, template=TEMPLATE, config=CONFIG):
    return {
        "schemaVersion": 2,
        "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
        "config": {
            "mediaType": "application/vnd.docker.container.image.v1+json",
            "digest": digest_of(config),
            "size": len(config),
        },
        "layers": [
            {"mediaType": MODEL_MEDIA_TYPE, "digest": digest_of(weights), "size": len(weights)},
            {
                "mediaType": "application/vnd.ollama.image.template",
                "digest": digest_of(template),
                "size": len(template),
            },
        ],
    }


def install(store, name, weights=WEIGHTS, template=TEMPLATE, config=CONFIG):
    """Write a pulled model into the store's directory tree."""
    store.init_storage()
    manifest = make_manifest(weights, template, config)
    for data in (weights, template, config):
        store.blob_path(digest_of(data)).write_bytes(data)
    path = store.manifest_path(name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(manifest))
    return manifest


class FakeRegistry:
    """Serves manifests and blobs through an httpx mock transport."""

    def __init__(self, manifest, blobs):
        self.manifest = manifest
        self.blobs = {digest_of(data): data for data in blobs}
        self.requests = []
        self.failures = 0

    def handler(self, request):
        self.requests.append(request.url.path)
        if self.failures:
            self.failures -= 1
            return httpx.Response(500, text="try again")
        parts = request.url.path.split("/")
        kind, ref = parts[-2], parts[-1]
        if kind == "manifests" and self.manifest is not None:
            return httpx.Response(200, json=self.manifest)
        if kind == "blobs" and ref in self.blobs:
            return httpx.Response(200, content=self.blobs[ref])
        return httpx.Response(404, text="not found")

    def store(self, root):
        client = httpx.Client(transport=httpx.MockTransport(self.handler))
        return ModelStore(root, client=client, retry_delay=0)


@pytest.fixture
def store(tmp_path):
    with ModelStore(tmp_path / "models") as instance:
        yield instance


@pytest.mark.parametrize(
    "name,expected",
    [
        ("gemma3", ("library", "gemma3", "latest")),
        ("gemma3:1b", ("library", "gemma3", "1b")),
        ("llama3.2:3b-instruct-q4_K_M", ("library", "llama3.2", "3b-instruct-q4_K_M")),
        ("someone/tiny:v1", ("someone", "tiny", "v1")),
    ],
)
def test_parse_model_name(name, expected):
    assert parse_model_name(name) == expected


@pytest.mark.parametrize("name", ["", "../etc:passwd", "/abs/model.gguf", "a/b/c", "x:../y"])
def test_parse_rejects_invalid_names(name):
    with pytest.raises(ValidationError):
        parse_model_name(name)


def test_get_model_path_finds_weights(store):
    install(store, "gemma3:1b")
    path = store.get_model_path("gemma3:1b")
    assert path.read_bytes() == WEIGHTS
    assert path.name == "sha256-" + hashlib.sha256(WEIGHTS).hexdigest()


def test_get_model_path_unknown_model(store):
    with pytest.raises(ModelNotFoundError):
        store.get_model_path("missing:latest")


def test_get_model_path_missing_weights(store):
    install(store, "gemma3:1b")
    store.get_model_path("gemma3:1b").unlink()
    with pytest.raises(ModelNotFoundError, match="weights"):
        store.get_model_path("gemma3:1b")


def test_list_local_models(store):
    assert store.list_local_models() == []
    install(store, "gemma3:1b")
    install(store, "gemma3")
    install(store, "someone/tiny:v1", weights=b"other weights")
    assert store.list_local_models() == ["gemma3:1b", "gemma3:latest", "someone/tiny:v1"]


def test_model_info(store):
    install(store, "gemma3:1b")
    info = store.model_info("gemma3:1b")
    assert info["schema_version"] == 2
    assert info["config_size"] == len(CONFIG)
    assert [layer["media_type"] for layer in info["layers"]][0] == MODEL_MEDIA_TYPE
    assert info["total_size"] == len(WEIGHTS) + len(TEMPLATE)


def test_delete_model_keeps_shared_blobs(store):
    install(store, "gemma3:1b")
    install(store, "gemma3:copy")
    install(store, "solo:1", weights=b"unique weights")
    shared = store.get_model_path("gemma3:1b")

    assert store.delete_model("gemma3:1b") == 0
    assert shared.is_file()
    assert store.list_local_models() == ["gemma3:copy", "solo:1"]

    # Template and config are still used by gemma3:copy
    assert store.delete_model("solo:1") == 1
    assert not (store.manifests_dir / "library" / "solo").exists()
    with pytest.raises(ModelNotFoundError):
        store.delete_model("solo:1")


def test_verify_blob(store, tmp_path):
    blob = tmp_path / "blob"
    blob.write_bytes(WEIGHTS)
    store.verify_blob(blob, digest_of(WEIGHTS))
    with pytest.raises(DigestMismatchError):
        store.verify_blob(blob, digest_of(b"something else"))
    with pytest.raises(ValidationError):
        store.verify_blob(blob, "md5:abc")


def test_download_model(tmp_path):
    registry = FakeRegistry(make_manifest(), [WEIGHTS, TEMPLATE, CONFIG])
    progress = []
    with registry.store(tmp_path) as store:
        path = store.download_model(
            "gemma3:1b", progress=lambda done, total: progress.append((done, total))
        )
        assert path.read_bytes() == WEIGHTS
        assert store.list_local_models() == ["gemma3:1b"]
        assert store.read_manifest("gemma3:1b") == registry.manifest
    assert registry.requests[0] == "/v2/library/gemma3/manifests/1b"
    assert (len(WEIGHTS), len(WEIGHTS)) in progress
    assert not list(store.blobs_dir.glob("*.partial"))


def test_download_skips_present_blobs(tmp_path):
    registry = FakeRegistry(make_manifest(), [WEIGHTS, TEMPLATE, CONFIG])
    with registry.store(tmp_path) as store:
        store.download_model("gemma3:1b")
        registry.requests.clear()
        store.download_model("gemma3:1b")
    assert registry.requests == ["/v2/library/gemma3/manifests/1b"]


def test_corrupt_blob_is_rejected(tmp_path):
    manifest = make_manifest()
    registry = FakeRegistry(manifest, [TEMPLATE, CONFIG])
    # Same size, different content
    registry.blobs[digest_of(WEIGHTS)] = b"X" * len(WEIGHTS)
    with registry.store(tmp_path) as store:
        with pytest.raises(DigestMismatchError):
            store.download_model("gemma3:1b")
        assert store.list_local_models() == []
        assert not store.blob_path(digest_of(WEIGHTS)).exists()
        assert not list(store.blobs_dir.glob("*.partial"))


def test_truncated_blob_is_rejected(tmp_path):
    registry = FakeRegistry(make_manifest(), [TEMPLATE, CONFIG])
    registry.blobs[digest_of(WEIGHTS)] = WEIGHTS[:-10]
    with registry.store(tmp_path) as store:
        with pytest.raises(DigestMismatchError, match="Size mismatch"):
            store.download_model("gemma3:1b")


def test_unknown_model_in_registry(tmp_path):
    registry = FakeRegistry(None, [])
    with registry.store(tmp_path) as store:
        with pytest.raises(ModelNotFoundError):
            store.download_model("nothing:here")
    assert registry.requests == ["/v2/library/nothing/manifests/here"]


def test_transient_errors_are_retried(tmp_path):
    registry = FakeRegistry(make_manifest(), [WEIGHTS, TEMPLATE, CONFIG])
    registry.failures = 2
    with registry.store(tmp_path) as store:
        assert store.download_model("gemma3:1b").read_bytes() == WEIGHTS


def test_persistent_errors_give_up(tmp_path):
    registry = FakeRegistry(make_manifest(), [])
    registry.failures = 100
    client = httpx.Client(transport=httpx.MockTransport(registry.handler))
    with ModelStore(tmp_path, client=client, max_retries=1, retry_delay=0) as store:
        with pytest.raises(DownloadError):
            store.fetch_manifest("gemma3:1b")
    assert len(registry.requests) == 2


def test_resolve_model_path(store, tmp_path):
    install(store, "gemma3:1b")
    local = tmp_path / "local.gguf"
    local.write_bytes(b"GGUF")
    assert resolve_model_path("gemma3:1b", store) == str(store.get_model_path("gemma3:1b"))
    assert resolve_model_path(str(local), store) == str(local)
    assert resolve_model_path("unknown:1b", store) == "unknown:1b"
    assert resolve_model_path("/no/such/file.gguf", store) == "/no/such/file.gguf"


def test_session_loads_model_by_name(monkeypatch, tmp_path):
    store = ModelStore(tmp_path)
    install(store, "gemma3:1b")
    monkeypatch.setenv("OLLAMA_MODELS", str(tmp_path))
    loaded = []

    def fake_backend(config):
        loaded.append(config.model_path)
        return ScriptedBackend()

    monkeypatch.setattr(session_module, "LlamaCppBackend", fake_backend)
    with Session("gemma3:1b") as session:
        assert session.config.model_path == str(store.get_model_path("gemma3:1b"))
    handle = api.create("gemma3:1b", n_ctx=512)
    api.release(handle)
    assert loaded == [str(store.get_model_path("gemma3:1b"))] * 2
    assert api.list_models() == ["gemma3:1b"]
