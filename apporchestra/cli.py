"""
CLI interface for the apporchestra application orchestrator.

Provides commands to inspect the catalog and locations, deploy plans,
inspect or stop persisted applications, read sensors and invoke effectors.

Plans are YAML files describing an application tree (see
apporchestra.schemas.plan). State is persisted under the configured
state_dir so later commands can inspect, stop and delete what a deploy
left behind.
"""

import json
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.table import Table
from rich.tree import Tree

from apporchestra import __version__
from apporchestra.config import ApporchestraConfig, get_apporchestra_home
from apporchestra.errors import ApporchestraError
from apporchestra.schemas import Location, TaskState
from apporchestra.utils import console, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="apporchestra")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Config file")
@click.pass_context
def main(ctx, config_path: Optional[Path]):
    """
    apporchestra - Application lifecycle orchestrator.

    Deploy plans of software components onto locations and manage them.
    """
    from apporchestra.config import ConfigError, load_config

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        ctx.obj["config_error"] = str(e)
        return
    ctx.obj["config"] = config
    setup_logging(
        log_file=config.get_log_file_path(),
        log_level=config.logging.level,
        log_format=config.logging.format,
        console_output=config.logging.console,
    )


def _require_config(ctx) -> ApporchestraConfig:
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'apporchestra init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _build_manager(config: ApporchestraConfig, plan_dir: Optional[Path] = None):
    from apporchestra.locations import LocationStore
    from apporchestra.manager import ApplicationManager
    from apporchestra.persistence import FileStateStore
    from apporchestra.templates import TemplateRenderer

    return ApplicationManager(
        config=config,
        locations=LocationStore.load(config.get_locations_file()),
        renderer=TemplateRenderer([plan_dir] if plan_dir else None),
        store=FileStateStore(config.get_state_dir()),
    )


def _print_tree(node: dict, tree: Optional[Tree] = None) -> Tree:
    label = f"[bold]{node['name']}[/bold] ({node['type']}) {node['id']} [cyan]{node['state']}[/cyan]"
    if node.get("hostname"):
        label += f" @ {node['hostname']}"
    branch = Tree(label) if tree is None else tree.add(label)
    for child in node.get("children", []):
        _print_tree(child, branch)
    return branch


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize apporchestra configuration."""
    from apporchestra.locations import DEFAULT_LOCATION, LocationStore

    home = get_apporchestra_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = {
        "state_dir": str(home / "state"),
        "locations_file": str(home / "locations.yaml"),
        "base_dir": "/tmp/apporchestra",
        "env_file": str(home / ".env"),
        "monitor_interval": 30,
        "executor": {"core_pool_size": 4, "max_pool_size": 64, "keep_alive_seconds": 60},
        "sensors": {"delivery_workers": 4, "buffer_size": 64},
        "lifecycle": {"readiness_timeout": 120, "stop_timeout": 30},
        "logging": {"level": "INFO", "format": "pretty"},
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    locations_path = home / "locations.yaml"
    if not locations_path.exists() or force:
        LocationStore([DEFAULT_LOCATION]).save(locations_path)

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# APPORCHESTRA_LOG_LEVEL=DEBUG\n")

    click.echo(f"Initialized apporchestra config at {cfg_path}")


# =============================================================================
# Catalog
# =============================================================================

@main.group("catalog")
def catalog_group():
    """Inspect registered entity types."""
    pass


@catalog_group.command("list")
def catalog_list():
    """List entity types."""
    from apporchestra.catalog import EntityTypeRegistry

    catalog = EntityTypeRegistry.create_default()
    table = Table(title="Entity types")
    table.add_column("Type")
    table.add_column("Parent")
    table.add_column("Driver")
    table.add_column("Description")
    for tag in catalog.list_types():
        entry = catalog.resolve(tag)
        if entry.abstract:
            driver = "(abstract)"
        elif entry.driverless:
            driver = "-"
        else:
            driver = getattr(entry.driver_factory, "__name__", str(entry.driver_factory))
        table.add_row(tag, entry.spec.parent or "", driver, entry.spec.description)
    console.print(table)


@catalog_group.command("show")
@click.argument("type_tag")
def catalog_show(type_tag: str):
    """Show a type's config keys, sensors and effectors."""
    from apporchestra.catalog import EntityTypeRegistry

    try:
        entry = EntityTypeRegistry.create_default().resolve(type_tag)
    except ApporchestraError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(entry.resolved.to_dict(), indent=2, default=str))


# =============================================================================
# Locations
# =============================================================================

@main.group("locations")
def locations_group():
    """Manage locations."""
    pass


@locations_group.command("list")
@click.pass_context
def locations_list(ctx):
    """List configured locations."""
    from apporchestra.locations import LocationStore

    config = _require_config(ctx)
    store = LocationStore.load(config.get_locations_file())
    table = Table(title="Locations")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Provider")
    table.add_column("Hosts")
    for location in store.list():
        hosts = location.config.get("hosts") or []
        table.add_row(location.location_id, location.name, location.provider, str(len(hosts)) if hosts else "")
    console.print(table)


@locations_group.command("add")
@click.argument("location_id")
@click.option("--provider", required=True, help="Provider tag (localhost, byon)")
@click.option("--name", help="Display name")
@click.option("--host", "hosts", multiple=True, help="Host for byon locations (repeatable)")
@click.option("--user", help="Default ssh user for byon locations")
@click.pass_context
def locations_add(ctx, location_id: str, provider: str, name: Optional[str], hosts: tuple, user: Optional[str]):
    """Add a location to the locations file."""
    from apporchestra.locations import LocationStore

    config = _require_config(ctx)
    path = config.get_locations_file()
    store = LocationStore.load(path, include_default=False)
    location_config = {}
    if hosts:
        location_config["hosts"] = list(hosts)
    if user:
        location_config["user"] = user
    try:
        store.add(Location(location_id, name or location_id, provider, location_config))
    except ApporchestraError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    store.save(path)
    click.echo(f"✓ Added location {location_id} ({provider})")


# =============================================================================
# Deploy
# =============================================================================

@main.command("deploy")
@click.argument("plan_path", type=click.Path(exists=True, path_type=Path))
@click.option("--location", "location_ids", multiple=True, help="Location id (repeatable)")
@click.option("--stop", "stop_after", is_flag=True, help="Stop and delete the application after it starts")
@click.option("--timeout", type=float, default=600.0, show_default=True, help="Seconds to wait for start")
@click.pass_context
def deploy(ctx, plan_path: Path, location_ids: tuple, stop_after: bool, timeout: float):
    """Create and start an application from a plan file."""
    from apporchestra.schemas import load_plan

    config = _require_config(ctx)
    manager = _build_manager(config, plan_dir=plan_path.parent)
    try:
        plan = load_plan(plan_path)
        app_id = manager.create_application(plan)
        click.echo(f"Created application {app_id} ({plan.name})")

        task_id = manager.start_application(app_id, list(location_ids) or None)
        record = manager.wait_for_task(task_id, timeout=timeout)
        console.print(_print_tree(manager.get_entity_tree(app_id)))

        if not record.state.is_done:
            manager.cancel_task(task_id)
            click.echo(f"✗ Start did not finish within {timeout:g}s; cancelled", err=True)
            raise SystemExit(1)
        if record.state != TaskState.SUCCEEDED:
            click.echo(f"✗ Start {record.state.value}: {json.dumps(record.error)}", err=True)
            raise SystemExit(1)
        click.echo(f"✓ {app_id} running")

        if stop_after:
            record = manager.wait_for_task(manager.stop_application(app_id), timeout=timeout)
            if record.state != TaskState.SUCCEEDED:
                click.echo(f"✗ Stop {record.state.value}: {json.dumps(record.error)}", err=True)
                raise SystemExit(1)
            manager.delete_application(app_id)
            click.echo(f"✓ {app_id} stopped and deleted")
    except ApporchestraError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        manager.shutdown(wait=False)


# =============================================================================
# Applications (persisted state)
# =============================================================================

@main.group("apps")
def apps_group():
    """Inspect and manage persisted applications."""
    pass


@apps_group.command("list")
@click.pass_context
def apps_list(ctx):
    """List persisted applications."""
    from apporchestra.persistence import FileStateStore

    config = _require_config(ctx)
    store = FileStateStore(config.get_state_dir())
    app_ids = store.list_applications()
    if not app_ids:
        click.echo("No applications.")
        return

    table = Table(title="Applications")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("State")
    table.add_column("Entities", justify="right")
    for app_id in app_ids:
        entities = store.load_entities(app_id) or []
        root = next((e for e in entities if e.get("parent") is None), {})
        table.add_row(app_id, root.get("name", ""), root.get("state", ""), str(len(entities)))
    console.print(table)


@apps_group.command("tree")
@click.argument("app_id")
@click.pass_context
def apps_tree(ctx, app_id: str):
    """Show the persisted entity tree of an application."""
    from apporchestra.persistence import FileStateStore

    config = _require_config(ctx)
    store = FileStateStore(config.get_state_dir())
    entities = store.load_entities(app_id)
    if entities is None:
        click.echo(f"✗ Unknown application: {app_id}", err=True)
        raise SystemExit(1)

    by_id = {e["id"]: e for e in entities}

    def node(entity_id: str) -> dict:
        data = by_id[entity_id]
        machine = data.get("machine") or {}
        return {
            "id": data["id"],
            "name": data.get("name", data["id"]),
            "type": data["type"],
            "state": data["state"],
            "hostname": machine.get("hostname"),
            "children": [node(c) for c in data.get("children", []) if c in by_id],
        }

    console.print(_print_tree(node(app_id)))


@apps_group.command("stop")
@click.argument("app_id")
@click.option("--timeout", type=float, default=300.0, show_default=True, help="Seconds to wait")
@click.pass_context
def apps_stop(ctx, app_id: str, timeout: float):
    """Recover a persisted application and stop it."""
    config = _require_config(ctx)
    manager = _build_manager(config)
    try:
        manager.rehydrate()
        record = manager.wait_for_task(manager.stop_application(app_id), timeout=timeout)
        if record.state != TaskState.SUCCEEDED:
            click.echo(f"✗ Stop {record.state.value}: {json.dumps(record.error)}", err=True)
            raise SystemExit(1)
        click.echo(f"✓ {app_id} stopped")
    except ApporchestraError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        manager.shutdown(wait=False)


@apps_group.command("delete")
@click.argument("app_id")
@click.option("--force", is_flag=True, help="Stop the application first if needed")
@click.pass_context
def apps_delete(ctx, app_id: str, force: bool):
    """Delete a persisted application."""
    config = _require_config(ctx)
    manager = _build_manager(config)
    try:
        manager.rehydrate()
        manager.delete_application(app_id, force=force)
        click.echo(f"✓ {app_id} deleted")
    except ApporchestraError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        manager.shutdown(wait=False)


@apps_group.command("sensors")
@click.argument("app_id")
@click.argument("entity_id")
@click.pass_context
def apps_sensors(ctx, app_id: str, entity_id: str):
    """Show the current sensor values of an entity."""
    config = _require_config(ctx)
    manager = _build_manager(config)
    try:
        manager.rehydrate()
        entity = manager.get_entity(entity_id)
        if entity.application_id != app_id:
            click.echo(f"✗ Entity {entity_id} does not belong to {app_id}", err=True)
            raise SystemExit(1)

        table = Table(title=f"Sensors of {entity_id}")
        table.add_column("Sensor")
        table.add_column("Value")
        table.add_column("Version", justify="right")
        for key, sensor in sorted(manager.get_sensors(entity_id).items()):
            table.add_row(key, json.dumps(sensor.value, default=str), str(sensor.version))
        console.print(table)
    except ApporchestraError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        manager.shutdown(wait=False)


# =============================================================================
# Effectors
# =============================================================================

@main.group("effectors")
def effectors_group():
    """List and invoke effectors of persisted entities."""
    pass


def _parse_args(ctx, param, values: tuple) -> dict:
    args = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'")
        args[key] = yaml.safe_load(raw) if raw else ""
    return args


@effectors_group.command("list")
@click.argument("entity_id")
@click.pass_context
def effectors_list(ctx, entity_id: str):
    """List the effectors of an entity."""
    config = _require_config(ctx)
    manager = _build_manager(config)
    try:
        manager.rehydrate()
        effectors = manager.list_effectors(entity_id)
    except ApporchestraError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        manager.shutdown(wait=False)

    table = Table(title=f"Effectors of {entity_id}")
    table.add_column("Name")
    table.add_column("Parameters")
    table.add_column("Allowed states")
    table.add_column("Description")
    for effector in effectors:
        params = ", ".join(
            f"{p['name']}{'*' if p['required'] else ''}" for p in effector["parameters"]
        )
        states = ", ".join(effector["allowed_states"] or ["any"])
        table.add_row(effector["name"], params, states, effector["description"])
    console.print(table)


@effectors_group.command("invoke")
@click.argument("entity_id")
@click.argument("name")
@click.option("--arg", "args", multiple=True, callback=_parse_args, help="Argument as KEY=VALUE (repeatable)")
@click.option("--timeout", type=float, default=300.0, show_default=True, help="Seconds to wait")
@click.pass_context
def effectors_invoke(ctx, entity_id: str, name: str, args: dict, timeout: float):
    """Invoke an effector and wait for its task."""
    config = _require_config(ctx)
    manager = _build_manager(config)
    try:
        manager.rehydrate()
        task_id = manager.invoke(entity_id, name, args)
        record = manager.wait_for_task(task_id, timeout=timeout)
        if not record.state.is_done:
            manager.cancel_task(task_id)
            click.echo(f"✗ {name} did not finish within {timeout:g}s; cancelled", err=True)
            raise SystemExit(1)
        if record.state != TaskState.SUCCEEDED:
            click.echo(f"✗ {name} {record.state.value}: {json.dumps(record.error)}", err=True)
            raise SystemExit(1)
        click.echo(f"✓ {name} on {entity_id} succeeded")
        if record.result is not None:
            click.echo(json.dumps(record.result, indent=2, default=str))
    except ApporchestraError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        manager.shutdown(wait=False)


if __name__ == "__main__":
    sys.exit(main())
