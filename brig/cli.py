"""
CLI interface for brig.

Provisions a devcontainer from devcontainer.json, runs its lifecycle hooks,
attaches the terminal, and tears everything down on exit.

Every failure is reported as a single "✗ ..." line on stderr and mapped to
an ExitCode.
"""

from enum import IntEnum
from pathlib import Path

import click

from brig import __version__
from brig.errors import BrigError, ConfigError


class ExitCode(IntEnum):
    """Process exit codes. 2 is left to click for usage errors."""
    NORMAL = 0
    ERROR = 1
    INVALID_CONFIG = 3
    NO_SOCKET = 4
    NO_DEVCONTAINER_JSON = 5
    TOO_MANY_DEVCONTAINER_JSON = 6
    UNSUPPORTED_CONFIGURATION = 7


def _fail(message: str, code: ExitCode) -> None:
    click.echo(f"✗ {message}", err=True)
    raise SystemExit(int(code))


@click.group()
@click.version_option(version=__version__, prog_name="brig")
@click.option("-d", "--debug", is_flag=True, help="Show debug logging")
@click.option("-v", "--verbose", is_flag=True, help="Show informational logging and hook output")
@click.option("--socket", default=None, help="Container engine socket (default: $DOCKER_HOST, then Podman)")
@click.pass_context
def main(ctx, debug: bool, verbose: bool, socket: str):
    """
    brig - Lightweight devcontainer runner.

    Builds or pulls the devcontainer, installs its Features, runs its
    lifecycle hooks and attaches your terminal.
    """
    from brig.config import BrigConfig, load_config_or_default
    from brig.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config_or_default()
    except ConfigError as e:
        # init must still work with a broken config
        ctx.obj["config_error"] = str(e)
        config = BrigConfig()

    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    else:
        level = config.log_level
    setup_logging(level, config.log_file, config.log_format)

    ctx.obj["config"] = config
    ctx.obj["socket"] = socket or config.socket


def _require_config(ctx):
    if "config_error" in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj['config_error']}", err=True)
        click.echo("Run 'brig init --force' to recreate the configuration file.", err=True)
        raise SystemExit(int(ExitCode.INVALID_CONFIG))
    return ctx.obj["config"]


def _load_devcontainer(path: str):
    from brig.schemas import (
        DevcontainerNotFound,
        TooManyDevcontainerFiles,
        find_devcontainer_json,
        load_devcontainer,
    )

    try:
        return load_devcontainer(find_devcontainer_json(Path(path)))
    except DevcontainerNotFound as e:
        _fail(str(e), ExitCode.NO_DEVCONTAINER_JSON)
    except TooManyDevcontainerFiles as e:
        _fail(str(e), ExitCode.TOO_MANY_DEVCONTAINER_JSON)
    except ConfigError as e:
        _fail(str(e), ExitCode.INVALID_CONFIG)


def _feature_sources(config):
    from brig.cache import ContentAddressedArtifactCache, OciRegistryClient
    from brig.cache_directory import get_cache_directory
    from brig.features import HttpsFeatureSource

    cache_dir = get_cache_directory(config.cache_dir)
    registry = OciRegistryClient()
    return (
        ContentAddressedArtifactCache(cache_dir, registry),
        HttpsFeatureSource(cache_dir),
        registry,
    )


@main.command("up")
@click.argument("path", default=".", type=click.Path(exists=True))
@click.option("--no-attach", is_flag=True, help="Tear down after postStart instead of attaching")
@click.pass_context
def up(ctx, path: str, no_attach: bool):
    """Provision the devcontainer for PATH and attach to it."""
    from brig.runtime import DockerRuntime, SocketNotFound, resolve_socket
    from brig.session import ProvisioningSession

    config = _require_config(ctx)
    devcontainer = _load_devcontainer(path)

    try:
        runtime = DockerRuntime(
            resolve_socket(ctx.obj["socket"]),
            platform=f"{config.platform_os}/{config.platform_arch}",
        )
    except SocketNotFound as e:
        _fail(str(e), ExitCode.NO_SOCKET)

    cache, https_source, registry = _feature_sources(config)
    try:
        session = ProvisioningSession(
            devcontainer,
            runtime,
            config,
            cache=cache,
            https_source=https_source,
            attach=not no_attach,
        )
        session.run()
    except ConfigError as e:
        _fail(str(e), ExitCode.UNSUPPORTED_CONFIGURATION)
    except BrigError as e:
        _fail(str(e), ExitCode.ERROR)
    finally:
        https_source.close()
        registry.close()
        runtime.close()


@main.command("validate")
@click.argument("path", default=".", type=click.Path(exists=True))
def validate(path: str):
    """Load and normalize devcontainer.json without provisioning."""
    devcontainer = _load_devcontainer(path)

    if devcontainer.uses_compose:
        from brig.schemas import load_compose_project

        try:
            project = load_compose_project(list(devcontainer.compose_files), devcontainer.name)
        except ConfigError as e:
            _fail(str(e), ExitCode.INVALID_CONFIG)
        if devcontainer.service not in project.services:
            _fail(
                f"Service '{devcontainer.service}' is not defined in the Compose project",
                ExitCode.UNSUPPORTED_CONFIGURATION,
            )
        mode = f"compose (service: {devcontainer.service}, {len(project.services)} services)"
    elif devcontainer.build is not None:
        mode = f"build ({devcontainer.build.dockerfile})"
    else:
        mode = f"image ({devcontainer.image})"

    click.echo(f"✓ {devcontainer.path}")
    click.echo(f"  Name: {devcontainer.name}")
    click.echo(f"  Mode: {mode}")
    click.echo(f"  Features: {len(devcontainer.features)}")
    hooks = ", ".join(phase.command_key for phase in devcontainer.commands) or "none"
    click.echo(f"  Hooks: {hooks}")
    wait_for = devcontainer.wait_for.command_key if devcontainer.wait_for else "none"
    click.echo(f"  waitFor: {wait_for}")


# =============================================================================
# Features Commands
# =============================================================================

@main.group("features")
def features_group():
    """Inspect devcontainer Features."""
    pass


@features_group.command("order")
@click.argument("path", default=".", type=click.Path(exists=True))
@click.pass_context
def features_order(ctx, path: str):
    """Print the Feature install levels for PATH."""
    from brig.compiler import compile_feature_graph
    from brig.executor import LevelParallelExecutor
    from brig.features import FeatureResolver

    config = _require_config(ctx)
    devcontainer = _load_devcontainer(path)
    cache, https_source, registry = _feature_sources(config)
    try:
        features = FeatureResolver(cache, https_source).prepare(
            devcontainer.features, devcontainer.config_dir
        )
        graph = compile_feature_graph(features.values(), devcontainer.override_feature_install_order)
        result = LevelParallelExecutor(name="order").drain(graph, lambda feature: None)
        cache.save()
    except BrigError as e:
        _fail(str(e), ExitCode.ERROR)
    finally:
        https_source.close()
        registry.close()

    if not result.levels:
        click.echo("No Features configured.")
        return
    for index, level in enumerate(result.levels, start=1):
        click.echo(f"Level {index}: {', '.join(sorted(level))}")


# =============================================================================
# Cache Commands
# =============================================================================

@main.group("cache")
def cache_group():
    """Inspect the Feature artifact cache."""
    pass


@cache_group.command("path")
@click.pass_context
def cache_path(ctx):
    """Print the cache directory."""
    from brig.cache_directory import get_cache_directory

    config = _require_config(ctx)
    click.echo(str(get_cache_directory(config.cache_dir)))


@cache_group.command("list")
@click.pass_context
def cache_list(ctx):
    """List cached Feature references and their digests."""
    from brig.cache import DIGEST_INDEX_FILE, DigestIndex
    from brig.cache_directory import get_cache_directory

    config = _require_config(ctx)
    index = DigestIndex(get_cache_directory(config.cache_dir) / DIGEST_INDEX_FILE)
    entries = index.entries()
    if not entries:
        click.echo("Cache is empty.")
        return
    for entry in entries:
        click.echo(f"{entry.reference}  {entry.digest}")


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize brig configuration."""
    from brig.config import BrigConfig, get_brig_home
    import yaml

    home = get_brig_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(int(ExitCode.ERROR))

    default_cfg = BrigConfig(env_file=str(home / ".env")).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# DOCKER_HOST=unix:///run/user/1000/podman/podman.sock\n")

    click.echo(f"Initialized brig config at {cfg_path}")


if __name__ == "__main__":
    main()
