"""kubemeta command-line interface.

Commands:
    kubemeta run                                   Run the cache and reconcilers until signalled.
    kubemeta resolve <namespace> <pod> [--json]    One-shot metadata lookup (no watchers).
    kubemeta version                               Print version and exit.

Configuration is read from ``KUBEMETA_*`` environment variables.
"""

from __future__ import annotations

import asyncio
import json

import click

from kubemeta import __version__
from kubemeta.app import KubeMetaApp, _ComponentError, main
from kubemeta.models.metadata import Metadata, batch_key

# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
def cli() -> None:
    """kubemeta: Kubernetes pod/namespace metadata cache."""


# ---------------------------------------------------------------------------
# kubemeta version
# ---------------------------------------------------------------------------


@cli.command("version")
def cmd_version() -> None:
    """Print the kubemeta version and exit."""
    click.echo(f"kubemeta {__version__}")


# ---------------------------------------------------------------------------
# kubemeta run
# ---------------------------------------------------------------------------


@cli.command("run")
def cmd_run() -> None:
    """Run the metadata cache and reconcilers until SIGINT/SIGTERM."""
    asyncio.run(main())


# ---------------------------------------------------------------------------
# kubemeta resolve
# ---------------------------------------------------------------------------


@cli.command("resolve")
@click.argument("namespace")
@click.argument("pod")
@click.option(
    "--container-id",
    default=None,
    metavar="ID",
    help="Container id used as the identity key.  Defaults to <namespace>_<pod>.",
)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    default=False,
    help="Print raw JSON.",
)
def cmd_resolve(namespace: str, pod: str, container_id: str | None, output_json: bool) -> None:
    """Resolve metadata for POD in NAMESPACE once and print it."""
    identity = container_id or batch_key(namespace, pod)
    try:
        metadata = asyncio.run(_resolve_once(identity, namespace, pod))
    except _ComponentError as exc:
        raise click.ClickException(str(exc)) from exc
    except ValueError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc

    if output_json:
        click.echo(json.dumps(metadata, indent=2, sort_keys=True, default=str))
        return

    _print_metadata(metadata)


async def _resolve_once(identity: str, namespace: str, pod: str) -> Metadata:
    app = KubeMetaApp()
    try:
        await app.start(run_watchers=False)
        return await app.resolve(identity, namespace, pod)
    finally:
        await app.stop()


def _print_metadata(metadata: Metadata) -> None:
    """Pretty-print a resolved metadata map."""
    if not metadata:
        click.echo(click.style("No metadata found.", fg="yellow"))
        return

    if "orphaned_namespace" in metadata:
        click.echo(
            click.style("Orphaned", fg="yellow", bold=True)
            + f"  original namespace: {metadata['orphaned_namespace']}"
        )

    for key in ("namespace_name", "namespace_id", "pod_name", "pod_id", "host", "pod_ip", "master_url"):
        if key in metadata:
            click.echo(f"  {click.style(key + ':', bold=True):<28} {metadata[key]}")

    for key in ("labels", "annotations", "namespace_labels", "namespace_annotations"):
        values: dict[str, str] = metadata.get(key) or {}
        if values:
            click.echo(click.style(f"{key}:", bold=True))
            for name, value in sorted(values.items()):
                click.echo(f"  {name}={value}")

    containers: dict[str, dict[str, object]] = metadata.get("containers") or {}
    if containers:
        click.echo(click.style(f"containers ({len(containers)}):", bold=True))
        for cid, info in containers.items():
            image = info.get("image")
            suffix = f"  {image}" if image else ""
            click.echo(f"  {click.style(str(info.get('name', '?')), fg='cyan')}  {cid[:12]}{suffix}")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    cli()
