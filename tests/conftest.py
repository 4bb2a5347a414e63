import io
import itertools
import json
import tarfile
import threading
from pathlib import Path
from typing import Callable, Optional

import pytest

from brig.cache import (
    FEATURE_ARTIFACT_MEDIA_TYPE,
    FEATURE_LAYER_MEDIA_TYPE,
    ArtifactDescriptor,
    ArtifactManifest,
    ArtifactSource,
)
from brig.config import BrigConfig
from brig.errors import RuntimeOperationError
from brig.runtime import AttachSession, ContainerSpec, ContainerState, ExecResult, Runtime


# =============================================================================
# Environment isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_brig_home(tmp_path, monkeypatch):
    """Point BRIG_HOME and the XDG cache prefix at the test's tmp_path."""
    home = tmp_path / "brig-home"
    data_home = tmp_path / "xdg-data"
    data_home.mkdir()
    monkeypatch.setenv("BRIG_HOME", str(home))
    monkeypatch.setenv("XDG_DATA_HOME", str(data_home))
    monkeypatch.setenv("SHELL", "/bin/sh")
    yield home


@pytest.fixture
def test_config(tmp_path):
    return BrigConfig(cache_dir=str(tmp_path / "cache"), poll_interval=0)


# =============================================================================
# Fake runtime
# =============================================================================


class FakeAttachSession(AttachSession):
    def __init__(self, container_id: str):
        self.container_id = container_id
        self.waited = False
        self.closed = False

    def wait(self) -> None:
        self.waited = True

    def close(self) -> None:
        self.closed = True


class FakeRuntime(Runtime):
    """
    In-memory Runtime.

    Containers can be addressed by ID or name. inspect_container() returns
    scripted states (by container name) one at a time, repeating the last
    one; unscripted containers report running once started.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.calls: list[tuple[str, str]] = []
        self.pulled: list[str] = []
        self.built: list[dict] = []
        self.image_users: dict[str, str] = {}
        self.specs: dict[str, ContainerSpec] = {}
        self.names: dict[str, str] = {}
        self.started: set[str] = set()
        self.removed: list[str] = []
        self.states: dict[str, list[ContainerState]] = {}
        self.exit_codes: dict[str, int] = {}
        self.inspections: dict[str, int] = {}
        self.execs: list[dict] = []
        self.exec_handler: Optional[Callable[[list[str]], ExecResult]] = None
        self.copies: list[tuple[str, Path, str]] = []
        self.networks: set[str] = set()
        self.removed_networks: list[str] = []
        self.attached: list[str] = []
        self.sessions: list[FakeAttachSession] = []
        self.fail_create: set[str] = set()
        self.closed = False

    def _record(self, op: str, target: str) -> None:
        with self._lock:
            self.calls.append((op, target))

    def _id(self, id_or_name: str) -> str:
        with self._lock:
            if id_or_name in self.specs:
                return id_or_name
            if id_or_name in self.names:
                return self.names[id_or_name]
        raise RuntimeOperationError(f"No such container: {id_or_name}")

    def ops(self, op: str) -> list[str]:
        """Container names targeted by op, in call order."""
        with self._lock:
            return [target for name, target in self.calls if name == op]

    def pull_image(self, image):
        self._record("pull", image)
        self.pulled.append(image)

    def build_image(self, context, dockerfile, tag, args=None, target=None):
        self._record("build", tag)
        self.built.append(
            {"context": context, "dockerfile": dockerfile, "tag": tag, "args": args, "target": target}
        )
        return tag

    def image_user(self, image):
        return self.image_users.get(image)

    def create_container(self, spec):
        if spec.name in self.fail_create:
            raise RuntimeOperationError(f"Failed to create container {spec.name}")
        container_id = f"cid-{next(self._ids)}"
        with self._lock:
            self.specs[container_id] = spec
            self.names[spec.name] = container_id
        self._record("create", spec.name)
        return container_id

    def start_container(self, container_id):
        container_id = self._id(container_id)
        with self._lock:
            self.started.add(container_id)
        self._record("start", self.specs[container_id].name)

    def stop_container(self, container_id):
        container_id = self._id(container_id)
        with self._lock:
            self.started.discard(container_id)
        self._record("stop", self.specs[container_id].name)

    def remove_container(self, container_id):
        container_id = self._id(container_id)
        self.removed.append(container_id)
        self._record("remove", self.specs[container_id].name)

    def inspect_container(self, container_id):
        name = self.specs[self._id(container_id)].name
        with self._lock:
            self.inspections[name] = self.inspections.get(name, 0) + 1
            script = self.states.get(name)
            if script:
                return script.pop(0) if len(script) > 1 else script[0]
            running = self.names[name] in self.started
        return ContainerState(running=running, status="running" if running else "created")

    def wait_container(self, container_id):
        name = self.specs[self._id(container_id)].name
        self._record("wait", name)
        return self.exit_codes.get(name, 0)

    def exec(self, container_id, argv, user=None, env=None, workdir=None):
        with self._lock:
            self.execs.append(
                {"container": container_id, "argv": list(argv), "user": user, "env": env, "workdir": workdir}
            )
        if self.exec_handler is not None:
            return self.exec_handler(list(argv))
        return ExecResult(exit_code=0)

    def copy_to_container(self, container_id, source, destination):
        with self._lock:
            self.copies.append((container_id, Path(source), destination))

    def create_network(self, name):
        self._record("create_network", name)
        self.networks.add(name)

    def remove_network(self, name):
        self._record("remove_network", name)
        self.networks.discard(name)
        self.removed_networks.append(name)

    def attach_terminal(self, container_id):
        self.attached.append(container_id)
        session = FakeAttachSession(container_id)
        self.sessions.append(session)
        return session

    def close(self):
        self.closed = True


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def no_sleep():
    return lambda seconds: None


# =============================================================================
# Features and artifacts
# =============================================================================


def _tar_bytes(files: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def feature_tarball():
    """Factory: Feature metadata -> tar bytes with devcontainer-feature.json and install.sh."""

    def build(metadata: dict, install: str = "#!/bin/sh\necho installing\n") -> bytes:
        return _tar_bytes({
            "devcontainer-feature.json": json.dumps(metadata),
            "install.sh": install,
        })

    return build


@pytest.fixture
def make_feature():
    """Factory: write a local Feature directory and return its path."""

    def build(parent: Path, name: str, metadata: Optional[dict] = None) -> Path:
        feature_dir = Path(parent) / name
        feature_dir.mkdir(parents=True)
        (feature_dir / "devcontainer-feature.json").write_text(
            json.dumps(metadata or {"id": name, "version": "1.0.0"})
        )
        (feature_dir / "install.sh").write_text("#!/bin/sh\necho installing\n")
        return feature_dir

    return build


class FakeArtifactSource(ArtifactSource):
    """Registry stand-in serving Feature artifacts from memory."""

    def __init__(self):
        self.artifacts: dict[str, dict] = {}
        self.unreachable = False
        self.resolved: list[str] = []
        self.manifests_fetched: list[str] = []
        self.blobs_fetched: list[str] = []

    def publish(
        self,
        reference: str,
        blob: bytes,
        digest: str = "sha256:aaa",
        media_type: str = FEATURE_ARTIFACT_MEDIA_TYPE,
        layer_media_type: str = FEATURE_LAYER_MEDIA_TYPE,
    ) -> None:
        layer = ArtifactDescriptor(media_type=layer_media_type, digest=f"{digest}-layer", size=len(blob))
        self.artifacts[reference] = {
            "descriptor": ArtifactDescriptor(media_type=media_type, digest=digest),
            "manifest": ArtifactManifest(media_type=media_type, layers=(layer,)),
            "blob": blob,
        }

    def resolve(self, reference):
        self.resolved.append(reference)
        if self.unreachable:
            raise ConnectionError("registry unreachable")
        if reference not in self.artifacts:
            raise LookupError(f"manifest unknown: {reference}")
        return self.artifacts[reference]["descriptor"]

    def fetch_manifest(self, reference):
        self.manifests_fetched.append(reference)
        return self.artifacts[reference]["manifest"]

    def fetch_blob(self, reference, descriptor):
        self.blobs_fetched.append(descriptor.digest)
        return self.artifacts[reference]["blob"]


@pytest.fixture
def artifact_source():
    return FakeArtifactSource()
