"""resgraph command line."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click

from resgraph import __version__
from resgraph.app import build_runtime, default_registry
from resgraph.config import load_config
from resgraph.models.config import ResgraphConfig
from resgraph.observability.logging import clear_scan_target
from resgraph.runtime.errors import ResourceError
from resgraph.runtime.resource import Resource


@click.group()
@click.version_option(__version__, prog_name="resgraph")
def cli() -> None:
    """Query Kubernetes and local OS state as typed resources."""


def _parse_args(pairs: tuple[str, ...]) -> dict[str, str]:
    args: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="ARGS")
        args[key] = value
    return args


def _render(value: Any) -> Any:
    if isinstance(value, Resource):
        return {"type": value.type_name, "id": value.identity_key()}
    if isinstance(value, list | tuple):
        return [_render(v) for v in value]
    if isinstance(value, dict):
        return {k: _render(v) for k, v in value.items()}
    return value


async def _query(
    config: ResgraphConfig, type_name: str, args: dict[str, str], fields: tuple[str, ...]
) -> dict[str, Any]:
    runtime = await build_runtime(config, live_k8s=type_name.startswith("k8s"))
    try:
        resource = await runtime.create_resource(type_name, args)
        names = list(fields) or type(resource).field_names()
        result: dict[str, Any] = {}
        for name in names:
            try:
                result[name] = _render(await resource.get(name))
            except ResourceError as exc:
                # errors are field-scoped
                result[name] = {"error": str(exc), "kind": type(exc).__name__}
        return {"type": type_name, "id": resource.identity_key(), "fields": result}
    finally:
        await runtime.close()
        clear_scan_target()


@cli.command("query")
@click.argument("type_name")
@click.argument("args", nargs=-1)
@click.option("--field", "fields", multiple=True, help="Field to print (repeatable; default: all).")
@click.option("--manifest", default=None, type=click.Path(exists=True), help="Kubernetes manifest file or directory.")
@click.option("--namespace", default=None, help="Only consider objects in this namespace.")
@click.option("--strict/--no-strict", default=None, help="Fail on ambiguous identity lookups.")
def query_cmd(
    type_name: str,
    args: tuple[str, ...],
    fields: tuple[str, ...],
    manifest: str | None,
    namespace: str | None,
    strict: bool | None,
) -> None:
    """Resolve TYPE_NAME with key=value ARGS and print its fields as JSON."""
    arguments = _parse_args(args)
    config = load_config()
    if manifest is not None:
        config.k8s.manifest_path = manifest
    if namespace is not None:
        config.k8s.namespace = namespace
    if strict is not None:
        config.runtime.strict_identity = strict
    try:
        result = asyncio.run(_query(config, type_name, arguments, fields))
    except ResourceError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result, indent=2, default=str))


@cli.command("types")
def types_cmd() -> None:
    """List resource types and their fields."""
    registry = default_registry()
    for type_name in registry.types():
        cls = registry.lookup(type_name)
        click.echo(f"{type_name}: {', '.join(cls.field_names())}")
