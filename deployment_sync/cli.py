"""
CLI commands for deployment-sync.

Provides the `dsync` command-line interface for running the controller,
one-shot reconciles, manifest validation and inspection.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from kubernetes.config import ConfigException

from core.errors import ReconcileError, SchemaError, StoreError, StoreErrorKind
from core.models.config import ControllerSettings
from core.models.intent import DeploymentSync
from core.models.resources import ObjectKey
from core.storage.base import ObjectStore, ResourceKind
from core.storage.deadline import Deadline
from core.sync.engine import SyncController
from core.sync.reconciler import DeploymentSyncReconciler
from config.loader import ConfigurationLoader

from . import __version__

console = Console()
logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str) -> None:
    """Configure root logging for CLI processes"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _build_store(settings: ControllerSettings) -> ObjectStore:
    """Create the cluster-backed object store"""
    from core.storage.client import KubernetesObjectStore
    return KubernetesObjectStore.from_settings(settings)


@click.group()
@click.version_option(version=__version__, prog_name="dsync")
@click.option(
    '--config', '-c', 'config_file',
    type=click.Path(dir_okay=False, path_type=Path),
    help='JSON or YAML configuration file'
)
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
    help='Override the configured log level'
)
@click.pass_context
def main(ctx: click.Context, config_file: Optional[Path], log_level: Optional[str]):
    """
    DeploymentSync controller.

    Keeps a destination Deployment in sync with a source Deployment in
    another namespace, as declared by DeploymentSync objects.
    """
    try:
        settings = ConfigurationLoader().load(config_file)
    except ValueError as e:
        console.print(f"[red]❌ Invalid configuration: {escape(str(e))}[/red]")
        sys.exit(2)

    if log_level:
        settings.log_level = log_level.upper()
    configure_logging(settings.log_level)
    ctx.obj = settings


@main.command()
@click.option('--workers', '-w', type=int, help='Number of reconcile workers')
@click.option('--namespace', '-n', help='Only watch DeploymentSync objects in this namespace')
@click.pass_obj
def run(settings: ControllerSettings, workers: Optional[int], namespace: Optional[str]):
    """Run the controller until interrupted."""
    if workers is not None:
        settings.worker_count = workers
    if namespace:
        settings.watch_namespace = namespace

    console.print(f"[blue]🚀 Starting DeploymentSync controller ({settings.worker_count} workers)[/blue]")
    try:
        asyncio.run(_run_controller(settings))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, shutting down[/yellow]")
    except ConfigException as e:
        console.print(f"[red]❌ Cannot load Kubernetes configuration: {escape(str(e))}[/red]")
        sys.exit(2)


@main.command()
@click.argument('key')
@click.option('--timeout', '-t', type=float, help='Deadline for the reconcile in seconds')
@click.pass_obj
def reconcile(settings: ControllerSettings, key: str, timeout: Optional[float]):
    """Reconcile a single DeploymentSync given as NAMESPACE/NAME."""
    try:
        object_key = ObjectKey.parse(key)
    except ValueError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        sys.exit(2)

    try:
        result = asyncio.run(_run_reconcile(settings, object_key, timeout or settings.reconcile_timeout_seconds))
    except ReconcileError as e:
        retry_hint = "retryable" if e.retryable else "permanent"
        console.print(f"[red]❌ Reconcile failed ({retry_hint}): {escape(str(e))}[/red]")
        sys.exit(1)
    except StoreError as e:
        console.print(f"[red]❌ Reconcile failed: {escape(str(e))}[/red]")
        sys.exit(1)
    except ConfigException as e:
        console.print(f"[red]❌ Cannot load Kubernetes configuration: {escape(str(e))}[/red]")
        sys.exit(2)

    console.print(f"[green]✅ {result.key}: {result.action.value}[/green]")
    if result.destination is not None:
        console.print(f"[dim]Destination: {result.destination}[/dim]")
    if result.conflict_retries:
        console.print(f"[dim]Conflict retries: {result.conflict_retries}[/dim]")
    if result.destination is not None and not result.status_persisted:
        console.print("[yellow]⚠️  Destination synced but lastSyncTime could not be recorded[/yellow]")


@main.command()
@click.argument('manifest', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--namespace', '-n', default='default', show_default=True,
              help='Namespace assumed when the manifest has none')
def validate(manifest: Path, namespace: str):
    """Validate a DeploymentSync manifest (JSON or YAML)."""
    try:
        with open(manifest, 'r', encoding='utf-8') as f:
            if manifest.suffix.lower() in ('.yaml', '.yml'):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        console.print(f"[red]❌ Cannot parse {manifest}: {escape(str(e))}[/red]")
        sys.exit(1)

    if isinstance(data, dict) and isinstance(data.get('metadata'), dict):
        data['metadata'].setdefault('namespace', namespace)

    try:
        intent = DeploymentSync.from_object(data if isinstance(data, dict) else {})
    except SchemaError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title=f"DeploymentSync {intent.key}")
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("sourceNamespace", intent.spec.source_namespace)
    table.add_row("destinationNamespace", intent.spec.destination_namespace)
    table.add_row("resourceName", intent.spec.resource_name)
    console.print(table)
    console.print("[green]✅ Manifest is valid[/green]")


@main.command()
@click.pass_obj
def status(settings: ControllerSettings):
    """List DeploymentSync objects and when each was last synced."""
    try:
        intents = asyncio.run(_list_intents(settings))
    except StoreError as e:
        console.print(f"[red]❌ Failed to list DeploymentSync objects: {escape(str(e))}[/red]")
        sys.exit(1)
    except ConfigException as e:
        console.print(f"[red]❌ Cannot load Kubernetes configuration: {escape(str(e))}[/red]")
        sys.exit(2)

    table = Table(title="DeploymentSync Status")
    table.add_column("DeploymentSync", style="cyan", no_wrap=True)
    table.add_column("Source", style="white")
    table.add_column("Destination", style="white")
    table.add_column("Last Sync", style="dim")

    for intent in intents:
        last_sync = intent.status.last_sync_time
        table.add_row(
            str(intent.key),
            str(intent.source_key),
            str(intent.destination_key),
            last_sync.isoformat() if last_sync else "[yellow]never[/yellow]"
        )
    console.print(table)


@main.command(name='config')
@click.pass_obj
def show_config(settings: ControllerSettings):
    """Show the effective controller settings."""
    table = Table(title="Controller Settings")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    for name, value in settings.to_dict().items():
        table.add_row(name, "-" if value is None else str(value))
    console.print(table)


async def _run_controller(settings: ControllerSettings) -> None:
    """Run the controller until cancelled."""
    store = _build_store(settings)
    controller = SyncController(store, settings)
    try:
        async with controller:
            while controller.is_running:
                await asyncio.sleep(1.0)
    finally:
        await store.close()


async def _run_reconcile(settings: ControllerSettings, key: ObjectKey, timeout: float):
    """Run one reconcile against the cluster."""
    store = _build_store(settings)
    try:
        reconciler = DeploymentSyncReconciler(store, max_conflict_retries=settings.max_conflict_retries)
        return await reconciler.reconcile(key, Deadline.after(timeout))
    finally:
        await store.close()


async def _list_intents(settings: ControllerSettings):
    """Fetch every DeploymentSync, skipping ones that fail validation."""
    store = _build_store(settings)
    intents = []
    try:
        deadline = Deadline.after(settings.reconcile_timeout_seconds)
        for key in await store.list_keys(ResourceKind.DEPLOYMENT_SYNC, deadline):
            try:
                raw = await store.get(ResourceKind.DEPLOYMENT_SYNC, key, deadline)
            except StoreError as e:
                if e.kind != StoreErrorKind.NOT_FOUND:
                    raise
                continue  # deleted since listing
            try:
                intents.append(DeploymentSync.from_object(raw))
            except SchemaError as e:
                logger.warning(f"Skipping malformed DeploymentSync {key}: {e}")
    finally:
        await store.close()
    return intents


if __name__ == "__main__":
    main()
