"""
Content-addressed artifact cache for OCI-distributed Features.

The cache implements:
- Deterministic cache keys (cache root joined with the reference split on ":")
- A durable digest index (digests.csv) loaded lazily once per process
- Stale-cache fallback when the registry cannot be reached
- Extraction of the Feature layer of an OCI artifact

Resolution flow:
1. key = cache root / reference components; note whether it exists
2. Resolve the reference to a descriptor (media type + digest)
   - failure + cached copy: warn, return the cached copy
   - failure, nothing cached: UnresolvableReference
3. Index digest == remote digest and cached copy exists: cache hit
4. Check the media type, fetch the manifest, extract the first Feature
   layer under the key, record the digest in the index
"""

import csv
import io
import logging
import re
import shutil
import tarfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import httpx

from brig.errors import NoUsableLayer, UnresolvableReference, UnsupportedMediaType

logger = logging.getLogger(__name__)


FEATURE_ARTIFACT_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
FEATURE_LAYER_MEDIA_TYPE = "application/vnd.devcontainers.layer.v1+tar"
DIGEST_INDEX_FILE = "digests.csv"
DIGEST_INDEX_FIELDS = ("feature_id", "digest")


@dataclass(frozen=True)
class CacheEntry:
    """A reference and the digest of the copy extracted for it."""
    reference: str
    digest: str

    def to_row(self) -> dict[str, str]:
        return {"feature_id": self.reference, "digest": self.digest}

    @classmethod
    def from_row(cls, row: dict[str, str]) -> "CacheEntry":
        return cls(reference=row["feature_id"], digest=row["digest"])


class DigestIndex:
    """
    Durable reference -> digest table.

    Loaded from digests.csv on first use and rewritten in full by save().
    All access goes through a single lock so concurrent Feature resolutions
    in one process can record entries safely. Sharing one cache directory
    between processes is not supported.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: Optional[dict[str, CacheEntry]] = None
        self._lock = threading.Lock()

    def _ensure_loaded(self) -> dict[str, CacheEntry]:
        if self._entries is not None:
            return self._entries

        logger.debug(f"Loading digest index: {self.path}")
        entries: dict[str, CacheEntry] = {}
        if self.path.exists():
            with open(self.path, newline="") as f:
                for row in csv.DictReader(f):
                    if row.get("feature_id") and row.get("digest"):
                        entry = CacheEntry.from_row(row)
                        entries[entry.reference] = entry
        logger.debug(f"Loaded {len(entries)} digest entries")
        self._entries = entries
        return entries

    def get(self, reference: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._ensure_loaded().get(reference)

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            self._ensure_loaded()[entry.reference] = entry

    def entries(self) -> list[CacheEntry]:
        with self._lock:
            return sorted(self._ensure_loaded().values(), key=lambda e: e.reference)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ensure_loaded())

    def save(self) -> None:
        """Rewrite digests.csv with every entry. No-op if never loaded or empty."""
        with self._lock:
            if not self._entries:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=DIGEST_INDEX_FIELDS)
                writer.writeheader()
                for reference in sorted(self._entries):
                    writer.writerow(self._entries[reference].to_row())
            logger.debug(f"Saved {len(self._entries)} digest entries to {self.path}")


# =============================================================================
# Artifact sources
# =============================================================================


@dataclass(frozen=True)
class ArtifactDescriptor:
    """What a reference currently resolves to."""
    media_type: str
    digest: str
    size: int = 0


@dataclass(frozen=True)
class ArtifactManifest:
    """An OCI image manifest reduced to its layer descriptors."""
    media_type: str
    layers: tuple[ArtifactDescriptor, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArtifactManifest":
        return cls(
            media_type=data.get("mediaType", ""),
            layers=tuple(
                ArtifactDescriptor(
                    media_type=layer.get("mediaType", ""),
                    digest=layer["digest"],
                    size=int(layer.get("size", 0)),
                )
                for layer in data.get("layers", [])
            ),
        )


class ArtifactSource(ABC):
    """Remote side of the cache: resolves references and fetches content."""

    @abstractmethod
    def resolve(self, reference: str) -> ArtifactDescriptor:
        """Return the current descriptor for reference."""
        ...

    @abstractmethod
    def fetch_manifest(self, reference: str) -> ArtifactManifest:
        """Fetch the manifest reference points at."""
        ...

    @abstractmethod
    def fetch_blob(self, reference: str, descriptor: ArtifactDescriptor) -> bytes:
        """Fetch a blob (layer) of the repository reference belongs to."""
        ...


@dataclass(frozen=True)
class OciReference:
    """registry/repository:tag or registry/repository@digest."""
    registry: str
    repository: str
    tag: str = "latest"

    @classmethod
    def parse(cls, reference: str) -> "OciReference":
        name, _, digest = reference.partition("@")
        head, sep, last = name.rpartition("/")
        last, _, tag = last.partition(":")
        name = f"{head}{sep}{last}"
        registry, _, repository = name.partition("/")
        if not repository or ("." not in registry and ":" not in registry and registry != "localhost"):
            raise ValueError(f"Not a registry reference: {reference}")
        return cls(registry=registry, repository=repository, tag=digest or tag or "latest")


_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class OciRegistryClient(ArtifactSource):
    """
    Anonymous client for public OCI registries.

    Implements the registry bearer-token flow: an unauthenticated request
    that returns 401 with a Bearer challenge is retried with a token
    obtained anonymously from the challenge's realm.
    """

    MANIFEST_ACCEPT = ", ".join([
        FEATURE_ARTIFACT_MEDIA_TYPE,
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ])

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 30.0):
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()

    def close(self) -> None:
        self._client.close()

    def _url(self, ref: OciReference, kind: str, name: str) -> str:
        scheme = "http" if ref.registry.startswith("localhost") else "https"
        return f"{scheme}://{ref.registry}/v2/{ref.repository}/{kind}/{name}"

    def _request(self, method: str, url: str, ref: OciReference, headers: dict[str, str]) -> httpx.Response:
        scope_key = f"{ref.registry}/{ref.repository}"
        with self._lock:
            token = self._tokens.get(scope_key)
        if token:
            headers = {**headers, "Authorization": f"Bearer {token}"}

        response = self._client.request(method, url, headers=headers)
        if response.status_code == 401 and "www-authenticate" in response.headers:
            token = self._fetch_token(response.headers["www-authenticate"], ref)
            with self._lock:
                self._tokens[scope_key] = token
            headers = {**headers, "Authorization": f"Bearer {token}"}
            response = self._client.request(method, url, headers=headers)

        response.raise_for_status()
        return response

    def _fetch_token(self, challenge: str, ref: OciReference) -> str:
        scheme, _, params = challenge.partition(" ")
        if scheme.lower() != "bearer":
            raise httpx.HTTPError(f"Unsupported auth challenge from {ref.registry}: {scheme}")
        values = dict(_CHALLENGE_PARAM.findall(params))
        realm = values.pop("realm", None)
        if not realm:
            raise httpx.HTTPError(f"Auth challenge from {ref.registry} has no realm")
        values.setdefault("scope", f"repository:{ref.repository}:pull")
        response = self._client.get(realm, params=values)
        response.raise_for_status()
        body = response.json()
        return body.get("token") or body["access_token"]

    def resolve(self, reference: str) -> ArtifactDescriptor:
        ref = OciReference.parse(reference)
        response = self._request(
            "HEAD", self._url(ref, "manifests", ref.tag), ref, {"Accept": self.MANIFEST_ACCEPT}
        )
        return ArtifactDescriptor(
            media_type=response.headers.get("content-type", "").split(";")[0].strip(),
            digest=response.headers.get("docker-content-digest", ""),
            size=int(response.headers.get("content-length", 0) or 0),
        )

    def fetch_manifest(self, reference: str) -> ArtifactManifest:
        ref = OciReference.parse(reference)
        response = self._request(
            "GET", self._url(ref, "manifests", ref.tag), ref, {"Accept": self.MANIFEST_ACCEPT}
        )
        return ArtifactManifest.from_dict(response.json())

    def fetch_blob(self, reference: str, descriptor: ArtifactDescriptor) -> bytes:
        ref = OciReference.parse(reference)
        response = self._request("GET", self._url(ref, "blobs", descriptor.digest), ref, {})
        return response.content


# =============================================================================
# Cache
# =============================================================================


def extract_tar(data: bytes, destination: Path) -> None:
    """Extract a (possibly compressed) tar archive, refusing unsafe members."""
    destination.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
        archive.extractall(destination, filter="data")


@dataclass
class CacheStats:
    """Counters for one cache instance."""
    hits: int = 0
    fetches: int = 0
    stale: int = 0
    history: list[str] = field(default_factory=list)


class ContentAddressedArtifactCache:
    """
    Resolves OCI Feature references to local directories.

    Usage:
        cache = ContentAddressedArtifactCache(cache_dir, OciRegistryClient())
        path = cache.resolve("ghcr.io/devcontainers/features/node:1")
        ...
        cache.save()
    """

    def __init__(
        self,
        cache_dir: Path,
        source: ArtifactSource,
        index: Optional[DigestIndex] = None,
    ):
        self.cache_dir = Path(cache_dir)
        self.source = source
        self.index = index or DigestIndex(self.cache_dir / DIGEST_INDEX_FILE)
        self.stats = CacheStats()
        self._stats_lock = threading.Lock()

    def cache_key(self, reference: str) -> Path:
        return self.cache_dir.joinpath(*reference.split(":"))

    def _record(self, outcome: str, reference: str) -> None:
        with self._stats_lock:
            setattr(self.stats, outcome, getattr(self.stats, outcome) + 1)
            self.stats.history.append(f"{outcome}:{reference}")

    def resolve(self, reference: str) -> Path:
        """
        Return a local directory holding the Feature's files.

        Raises:
            UnresolvableReference: Remote resolution failed and nothing is cached
            UnsupportedMediaType: The reference is not an OCI image manifest
            NoUsableLayer: The manifest has no devcontainer Feature layer
        """
        key = self.cache_key(reference)
        cached_copy_exists = key.exists()

        logger.debug(f"Resolving OCI reference: {reference}")
        try:
            descriptor = self.source.resolve(reference)
        except Exception as e:
            if cached_copy_exists:
                logger.warning(
                    f"Could not resolve {reference} ({e}); using cached copy, which may be stale"
                )
                self._record("stale", reference)
                return key
            raise UnresolvableReference(reference, e) from e

        entry = self.index.get(reference)
        if entry is not None and cached_copy_exists:
            if entry.digest == descriptor.digest:
                logger.info(f"Digest matches cached copy: {reference} ({entry.digest})")
                self._record("hits", reference)
                return key
            logger.info(
                f"Cached copy of {reference} is outdated: "
                f"local {entry.digest}, remote {descriptor.digest}"
            )

        if descriptor.media_type != FEATURE_ARTIFACT_MEDIA_TYPE:
            raise UnsupportedMediaType(reference, descriptor.media_type)

        try:
            manifest = self.source.fetch_manifest(reference)
        except Exception as e:
            raise UnresolvableReference(reference, e) from e

        for layer in manifest.layers:
            if layer.media_type != FEATURE_LAYER_MEDIA_TYPE:
                continue
            logger.debug(f"Extracting layer {layer.digest} to {key}")
            try:
                blob = self.source.fetch_blob(reference, layer)
            except Exception as e:
                raise UnresolvableReference(reference, e) from e
            if cached_copy_exists:
                shutil.rmtree(key)
            extract_tar(blob, key)
            self.index.put(CacheEntry(reference=reference, digest=descriptor.digest))
            self._record("fetches", reference)
            return key

        raise NoUsableLayer(reference)

    def save(self) -> None:
        self.index.save()
