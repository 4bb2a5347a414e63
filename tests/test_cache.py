"""Tests for the content-addressed artifact cache and registry client."""

import csv
import json

import httpx
import pytest

from brig.cache import (
    DIGEST_INDEX_FILE,
    CacheEntry,
    ContentAddressedArtifactCache,
    DigestIndex,
    OciReference,
    OciRegistryClient,
)
from brig.cache_directory import get_cache_directory
from brig.errors import NoUsableLayer, UnresolvableReference, UnsupportedMediaType

NODE = "ghcr.io/devcontainers/features/node:1"


@pytest.fixture
def cache(tmp_path, artifact_source):
    return ContentAddressedArtifactCache(tmp_path / "cache", artifact_source)


@pytest.fixture
def node_v1(feature_tarball):
    return feature_tarball({"id": "node", "version": "1.0.0"})


# =============================================================================
# Resolution
# =============================================================================


class TestResolve:

    def test_cache_key(self, cache, tmp_path):
        assert cache.cache_key(NODE) == tmp_path / "cache" / "ghcr.io" / "devcontainers" / "features" / "node" / "1"

    def test_first_resolve_fetches_and_extracts(self, cache, artifact_source, node_v1):
        artifact_source.publish(NODE, node_v1, digest="sha256:111")

        path = cache.resolve(NODE)

        assert path == cache.cache_key(NODE)
        assert json.loads((path / "devcontainer-feature.json").read_text())["id"] == "node"
        assert (path / "install.sh").exists()
        assert cache.index.get(NODE) == CacheEntry(reference=NODE, digest="sha256:111")
        assert cache.stats.fetches == 1

    def test_matching_digest_is_a_hit(self, cache, artifact_source, node_v1):
        artifact_source.publish(NODE, node_v1, digest="sha256:111")
        cache.resolve(NODE)

        cache.resolve(NODE)

        assert cache.stats.hits == 1
        assert artifact_source.manifests_fetched == [NODE]
        assert cache.stats.history == [f"fetches:{NODE}", f"hits:{NODE}"]

    def test_changed_digest_refetches(self, cache, artifact_source, feature_tarball, node_v1):
        artifact_source.publish(NODE, node_v1, digest="sha256:111")
        path = cache.resolve(NODE)
        (path / "leftover.txt").write_text("old")

        artifact_source.publish(
            NODE, feature_tarball({"id": "node", "version": "1.1.0"}), digest="sha256:222"
        )
        path = cache.resolve(NODE)

        assert json.loads((path / "devcontainer-feature.json").read_text())["version"] == "1.1.0"
        assert not (path / "leftover.txt").exists()
        assert cache.index.get(NODE).digest == "sha256:222"
        assert cache.stats.fetches == 2

    def test_unreachable_uses_stale_copy(self, cache, artifact_source, node_v1):
        artifact_source.publish(NODE, node_v1)
        cache.resolve(NODE)
        artifact_source.unreachable = True

        path = cache.resolve(NODE)

        assert path == cache.cache_key(NODE)
        assert cache.stats.stale == 1

    def test_unreachable_without_copy(self, cache, artifact_source):
        artifact_source.unreachable = True

        with pytest.raises(UnresolvableReference) as exc_info:
            cache.resolve(NODE)
        assert exc_info.value.reference == NODE
        assert isinstance(exc_info.value.cause, ConnectionError)

    def test_unsupported_media_type(self, cache, artifact_source, node_v1):
        artifact_source.publish(
            NODE, node_v1, media_type="application/vnd.oci.image.index.v1+json"
        )

        with pytest.raises(UnsupportedMediaType) as exc_info:
            cache.resolve(NODE)
        assert exc_info.value.media_type == "application/vnd.oci.image.index.v1+json"

    def test_no_feature_layer(self, cache, artifact_source, node_v1):
        artifact_source.publish(
            NODE, node_v1, layer_media_type="application/vnd.oci.image.layer.v1.tar"
        )

        with pytest.raises(NoUsableLayer):
            cache.resolve(NODE)
        assert not cache.cache_key(NODE).exists()
        assert cache.index.get(NODE) is None

    def test_save_persists_index(self, cache, artifact_source, node_v1, tmp_path):
        artifact_source.publish(NODE, node_v1, digest="sha256:111")
        cache.resolve(NODE)
        cache.save()

        reloaded = DigestIndex(tmp_path / "cache" / DIGEST_INDEX_FILE)
        assert reloaded.get(NODE).digest == "sha256:111"

    def test_index_survives_restart(self, tmp_path, artifact_source, node_v1):
        artifact_source.publish(NODE, node_v1, digest="sha256:111")
        first = ContentAddressedArtifactCache(tmp_path / "cache", artifact_source)
        first.resolve(NODE)
        first.save()

        second = ContentAddressedArtifactCache(tmp_path / "cache", artifact_source)
        second.resolve(NODE)

        assert second.stats.hits == 1
        assert artifact_source.manifests_fetched == [NODE]


# =============================================================================
# Digest index
# =============================================================================


class TestDigestIndex:

    def test_csv_format(self, tmp_path):
        index = DigestIndex(tmp_path / DIGEST_INDEX_FILE)
        index.put(CacheEntry(reference="b/feat:1", digest="sha256:bbb"))
        index.put(CacheEntry(reference="a/feat:1", digest="sha256:aaa"))
        index.save()

        with open(tmp_path / DIGEST_INDEX_FILE, newline="") as f:
            rows = list(csv.reader(f))
        assert rows == [
            ["feature_id", "digest"],
            ["a/feat:1", "sha256:aaa"],
            ["b/feat:1", "sha256:bbb"],
        ]

    def test_put_overwrites(self, tmp_path):
        index = DigestIndex(tmp_path / DIGEST_INDEX_FILE)
        index.put(CacheEntry(reference="feat", digest="sha256:1"))
        index.put(CacheEntry(reference="feat", digest="sha256:2"))

        assert len(index) == 1
        assert index.get("feat").digest == "sha256:2"

    def test_empty_save_writes_nothing(self, tmp_path):
        index = DigestIndex(tmp_path / DIGEST_INDEX_FILE)
        index.save()
        assert not (tmp_path / DIGEST_INDEX_FILE).exists()

    def test_missing_file_is_empty(self, tmp_path):
        assert DigestIndex(tmp_path / "nope.csv").entries() == []


# =============================================================================
# Registry client
# =============================================================================


class TestOciReference:

    def test_tagged(self):
        ref = OciReference.parse(NODE)
        assert ref == OciReference("ghcr.io", "devcontainers/features/node", "1")

    def test_untagged_defaults_to_latest(self):
        assert OciReference.parse("localhost:5000/feat").tag == "latest"
        assert OciReference.parse("localhost:5000/feat").registry == "localhost:5000"

    def test_digest(self):
        assert OciReference.parse("ghcr.io/a/b@sha256:abc").tag == "sha256:abc"

    def test_not_a_registry_reference(self):
        with pytest.raises(ValueError):
            OciReference.parse("node")


class TestOciRegistryClient:

    def make_client(self, requests):
        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path == "/token":
                return httpx.Response(200, json={"token": "anon-token"})
            if request.headers.get("authorization") != "Bearer anon-token":
                return httpx.Response(
                    401,
                    headers={"www-authenticate": 'Bearer realm="https://ghcr.io/token",service="ghcr.io"'},
                )
            if "/manifests/" in request.url.path:
                return httpx.Response(
                    200,
                    headers={
                        "content-type": "application/vnd.oci.image.manifest.v1+json",
                        "docker-content-digest": "sha256:123",
                    },
                    json={
                        "mediaType": "application/vnd.oci.image.manifest.v1+json",
                        "layers": [{
                            "mediaType": "application/vnd.devcontainers.layer.v1+tar",
                            "digest": "sha256:layer",
                            "size": 10,
                        }],
                    },
                )
            return httpx.Response(200, content=b"blob")

        return OciRegistryClient(client=httpx.Client(transport=httpx.MockTransport(handler)))

    def test_resolve_with_anonymous_token(self):
        requests = []
        client = self.make_client(requests)

        descriptor = client.resolve(NODE)

        assert descriptor.digest == "sha256:123"
        assert descriptor.media_type == "application/vnd.oci.image.manifest.v1+json"
        token_request = next(r for r in requests if r.url.path == "/token")
        assert token_request.url.params["scope"] == "repository:devcontainers/features/node:pull"

    def test_token_reused(self):
        requests = []
        client = self.make_client(requests)

        client.resolve(NODE)
        manifest = client.fetch_manifest(NODE)
        blob = client.fetch_blob(NODE, manifest.layers[0])

        assert blob == b"blob"
        assert manifest.layers[0].digest == "sha256:layer"
        assert [r.url.path for r in requests].count("/token") == 1

    def test_http_error_propagates(self):
        client = OciRegistryClient(
            client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        )
        with pytest.raises(httpx.HTTPStatusError):
            client.resolve(NODE)


# =============================================================================
# Cache directory
# =============================================================================


class TestCacheDirectory:

    def test_configured(self, tmp_path):
        assert get_cache_directory(str(tmp_path / "mine")) == (tmp_path / "mine").resolve()
        assert (tmp_path / "mine").is_dir()

    def test_xdg_data_home(self, tmp_path):
        # XDG_DATA_HOME is set by the isolated_brig_home fixture
        assert get_cache_directory() == (tmp_path / "xdg-data" / "brig").resolve()

    def test_missing_prefix_skipped(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "absent"))
        cache_home = tmp_path / "xdg-cache"
        cache_home.mkdir()
        monkeypatch.setenv("XDG_CACHE_HOME", str(cache_home))

        assert get_cache_directory() == (cache_home / "brig").resolve()
