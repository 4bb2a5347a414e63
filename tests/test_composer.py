"""Tests for ComposeDeployer."""

import pytest

from brig.composer import PROJECT_LABEL, SERVICE_LABEL, ComposeDeployer, parse_port
from brig.errors import ConfigError, DependencyFailed, UnitExecutionFailed
from brig.runtime import ContainerState
from brig.schemas import BuildConfig, ComposeProject, ComposeService
from brig.waiter import ServiceDependencyWaiter


@pytest.fixture
def project(tmp_path) -> ComposeProject:
    services = {
        "db": ComposeService(
            name="db",
            image="postgres:16",
            environment={"POSTGRES_PASSWORD": "secret", "PGTZ": None},
            ports=("5432:5432",),
            volumes=("./data:/var/lib/postgresql/data", "pgsock:/run/postgresql"),
        ),
        "migrate": ComposeService(
            name="migrate",
            build=BuildConfig(context=tmp_path, dockerfile="Dockerfile.migrate"),
            depends_on={"db": "service_started"},
        ),
        "app": ComposeService(
            name="app",
            image="node:20",
            depends_on={"migrate": "service_completed_successfully"},
            ports=("80:3000",),
        ),
        "docs": ComposeService(name="docs", image="nginx"),
    }
    return ComposeProject(name="proj", services=services)


class DevcontainerStarter:
    """Stands in for the session's devcontainer start path."""

    def __init__(self, runtime):
        self.runtime = runtime
        self.specs = []

    def __call__(self, spec, record):
        self.specs.append(spec)
        container_id = self.runtime.create_container(spec)
        record(container_id)
        self.runtime.start_container(container_id)


@pytest.fixture
def starter(runtime):
    return DevcontainerStarter(runtime)


@pytest.fixture
def deployer(runtime, project, starter, tmp_path, no_sleep):
    runtime.states["proj--migrate"] = [ContainerState(running=False, exit_code=0, status="exited")]
    waiter = ServiceDependencyWaiter(runtime, project.container_name, poll_interval=0, sleep=no_sleep)
    return ComposeDeployer(runtime, project, "app", waiter, starter, project_dir=tmp_path)


class TestParsePort:

    @pytest.mark.parametrize("entry,expected", [
        ("8080:80", (80, 8080)),
        ("127.0.0.1:80:80", (80, 8080)),
        ("3000", (3000, 3000)),
        ("53:53/udp", (53, 8053)),
    ])
    def test_parse(self, entry, expected):
        assert parse_port(entry, 8000) == expected


class TestDeploy:

    def test_dependency_order(self, deployer, runtime):
        deployer.deploy()

        created = runtime.ops("create")
        assert created.index("proj--db") < created.index("proj--migrate") < created.index("proj--app")
        assert set(created) == {"proj--db", "proj--migrate", "proj--app", "proj--docs"}

    def test_network_created_first(self, deployer, runtime):
        deployer.deploy()

        assert runtime.calls[0] == ("create_network", "proj_default")
        db = runtime.specs[runtime.names["proj--db"]]
        assert db.network == "proj_default"
        assert db.network_aliases == ["db"]

    def test_devcontainer_service_goes_through_starter(self, deployer, starter, runtime):
        deployer.deploy()

        assert [spec.name for spec in starter.specs] == ["proj--app"]
        assert deployer.containers["app"] == runtime.names["proj--app"]

    def test_service_spec(self, deployer, runtime, tmp_path, monkeypatch):
        monkeypatch.setenv("PGTZ", "UTC")
        deployer.deploy()

        db = runtime.specs[runtime.names["proj--db"]]
        assert db.env == {"POSTGRES_PASSWORD": "secret", "PGTZ": "UTC"}
        assert db.labels[PROJECT_LABEL] == "proj"
        assert db.labels[SERVICE_LABEL] == "db"
        assert db.ports == {5432: 5432}
        assert db.volumes == [f"{(tmp_path / 'data').resolve()}:/var/lib/postgresql/data", "pgsock:/run/postgresql"]

    def test_privileged_port_elevated(self, deployer, runtime):
        deployer.deploy()
        assert runtime.specs[runtime.names["proj--app"]].ports == {3000: 8080}

    def test_built_image(self, deployer, runtime, tmp_path):
        deployer.deploy()

        assert runtime.built == [{
            "context": tmp_path,
            "dockerfile": "Dockerfile.migrate",
            "tag": "localhost/devc--proj--migrate",
            "args": {},
            "target": None,
        }]
        assert runtime.specs[runtime.names["proj--migrate"]].image == "localhost/devc--proj--migrate"
        assert set(runtime.pulled) == {"postgres:16", "node:20", "nginx"}

    def test_run_services_subset(self, runtime, project, starter, no_sleep):
        runtime.states["proj--migrate"] = [ContainerState(running=False, exit_code=0)]
        waiter = ServiceDependencyWaiter(runtime, project.container_name, poll_interval=0, sleep=no_sleep)
        deployer = ComposeDeployer(runtime, project, "app", waiter, starter, services=["db"])

        deployer.deploy()

        assert "proj--docs" not in runtime.ops("create")
        assert "proj--app" in runtime.ops("create")

    def test_missing_devcontainer_service(self, runtime, project, starter, no_sleep):
        waiter = ServiceDependencyWaiter(runtime, project.container_name, sleep=no_sleep)
        deployer = ComposeDeployer(runtime, project, "web", waiter, starter)

        with pytest.raises(ConfigError, match="'web'"):
            deployer.deploy()
        assert runtime.networks == set()

    def test_dependency_failure_stops_deploy(self, deployer, runtime, starter):
        runtime.states["proj--migrate"] = [ContainerState(running=False, exit_code=1)]

        with pytest.raises(UnitExecutionFailed) as exc_info:
            deployer.deploy()

        assert exc_info.value.unit_id == "app"
        assert isinstance(exc_info.value.cause, DependencyFailed)
        assert starter.specs == []


class TestTeardown:

    def test_reverse_order(self, deployer, runtime):
        deployer.deploy()
        deployer.teardown()

        stopped = runtime.ops("stop")
        assert stopped.index("proj--app") < stopped.index("proj--migrate") < stopped.index("proj--db")
        assert sorted(runtime.ops("remove")) == sorted(stopped)
        assert runtime.removed_networks == ["proj_default"]
        assert deployer.containers == {}

    def test_skips_services_never_created(self, deployer, runtime):
        runtime.states["proj--migrate"] = [ContainerState(running=False, exit_code=1)]
        with pytest.raises(UnitExecutionFailed):
            deployer.deploy()

        deployer.teardown()

        assert set(runtime.ops("stop")) == {"proj--db", "proj--migrate", "proj--docs"}
        assert runtime.removed_networks == ["proj_default"]

    def test_before_deploy_is_noop(self, deployer, runtime):
        assert deployer.teardown() is None
        assert runtime.calls == []
