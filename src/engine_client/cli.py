"""CLI entry point for engine-client."""

import json
import logging
from pathlib import Path

import click

from engine_client.client import categories as list_categories
from engine_client.client import client as make_client
from engine_client.config import get_settings
from engine_client.dispatch import DataResponse
from engine_client.errors import EngineClientError


def _parse_param(raw: str) -> tuple[str, object]:
    """Parse ``name=value``; the value is JSON if it parses, else a plain string."""
    name, sep, value = raw.partition("=")
    if not sep or not name:
        raise click.BadParameter(f"expected name=value, got {raw!r}")
    try:
        return name, json.loads(value)
    except json.JSONDecodeError:
        return name, value


def _load_body(body: str):
    if body.startswith("@"):
        body = Path(body[1:]).read_text(encoding="utf-8")
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"body is not valid JSON: {e}") from e


def _echo_data(value) -> None:
    if isinstance(value, (dict, list)):
        click.echo(json.dumps(value, indent=2))
    elif isinstance(value, bytes):
        with click.open_file("-", "wb") as out:
            out.write(value)
    elif value is not None:
        click.echo(value)


@click.group()
@click.option("--host", default=None, help="Engine URI (unix:///path, http://host:port, https://host:port).")
@click.option("--api-version", default=None, help="API version, e.g. v1.41.")
@click.option("-v", "--verbose", is_flag=True, help="Log requests and spec loads.")
@click.pass_context
def main(ctx: click.Context, host: str | None, api_version: str | None, verbose: bool):
    """Engine Client: call any engine API operation described by its published spec."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    settings = get_settings()
    ctx.obj = {
        "conn": settings.connection(host),
        "api_version": api_version,
    }


@main.command()
@click.pass_obj
def categories(obj: dict):
    """List the operation categories."""
    for category in sorted(list_categories(obj["api_version"])):
        click.echo(category)


@main.command()
@click.argument("category")
@click.pass_obj
def ops(obj: dict, category: str):
    """List the operations of a category."""
    try:
        c = make_client(category, obj["conn"], obj["api_version"])
    except EngineClientError as e:
        raise click.ClickException(str(e)) from e
    for op in c.ops():
        click.echo(op)


@main.command()
@click.argument("category")
@click.argument("operation")
@click.pass_obj
def doc(obj: dict, category: str, operation: str):
    """Describe an operation and its parameters."""
    try:
        info = make_client(category, obj["conn"], obj["api_version"]).doc(operation)
    except EngineClientError as e:
        raise click.ClickException(str(e)) from e

    click.echo(info["description"])
    for p in info["params"]:
        click.echo(f"  {p['name']} ({p['location']}, {p['type']}): {p['description']}")


@main.command()
@click.argument("category")
@click.argument("operation")
@click.option("-p", "--param", "params", multiple=True, help="Parameter as name=value (repeatable).")
@click.option("--body", default=None, help="JSON request body, or @file to read it from a file.")
@click.option("--body-file", default=None, type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Upload a file's raw bytes as the body (e.g. a tar archive).")
@click.option("--as", "mode", default="data", type=click.Choice(["data", "stream"]), help="Response mode.")
@click.option("--throw", is_flag=True, help="Fail on HTTP status >= 400 instead of printing the error body.")
@click.pass_obj
def invoke(obj: dict, category: str, operation: str, params: tuple[str, ...], body: str | None,
           body_file: Path | None, mode: str, throw: bool):
    """Invoke an operation and print its result."""
    try:
        c = make_client(category, obj["conn"], obj["api_version"])
        endpoint = c.endpoint(operation)
    except EngineClientError as e:
        raise click.ClickException(str(e)) from e

    call_params = dict(_parse_param(p) for p in params)
    body_decl = next((p for p in endpoint.parameters if p.location == "body"), None)
    if body is not None or body_file is not None:
        if body_decl is None:
            raise click.UsageError(f"{operation} takes no request body")

    upload = body_file.open("rb") if body_file is not None else None
    try:
        if upload is not None:
            call_params[body_decl.name] = upload
        elif body is not None:
            call_params[body_decl.name] = _load_body(body)

        try:
            result = c.invoke(
                operation,
                params=call_params,
                as_=mode,
                throw_exception=throw,
                throw_entire_message=throw,
            )
        except EngineClientError as e:
            raise click.ClickException(str(e)) from e
    finally:
        if upload is not None:
            upload.close()

    if isinstance(result, DataResponse):
        _echo_data(result.value)
    else:
        with result, click.open_file("-", "wb") as out:
            for chunk in result.iter_content():
                out.write(chunk)
                out.flush()

    if result.status >= 400:
        click.get_current_context().exit(1)
