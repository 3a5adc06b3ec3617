"""
peerdm CLI - Command Line Interface for authenticated direct messages

Main entry point for all CLI commands.
"""

import asyncio
from pathlib import Path

import click

from peerdm.core.config import load_config
from peerdm.utils.logger import configure_logging


def _key_path(ctx, name: str) -> Path:
    return ctx.obj["data_dir"] / "keys" / f"{name}.json"


def _load_key(ctx, name: str):
    from peerdm.core.identity import load_identity

    path = _key_path(ctx, name)
    if not path.exists():
        raise click.ClickException(f"No key named '{name}'. Run 'peerdm key create --name {name}' first.")
    return load_identity(path)


def _parse_address(address: str):
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise click.BadParameter(f"expected HOST:PORT, got '{address}'")
    return host, int(port)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--data-dir", default="~/.peerdm", help="Data directory")
@click.option("--env-file", default=None, help="Load PEERDM_* settings from a .env file")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, data_dir, env_file):
    """peerdm - Authenticated direct messages between peers"""
    config = load_config(env_file, log_level="DEBUG" if debug else None)
    configure_logging(config)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["data_dir"] = Path(data_dir).expanduser()
    ctx.obj["data_dir"].mkdir(parents=True, exist_ok=True)


# =============================================================================
# Key Commands
# =============================================================================

@cli.group()
def key():
    """Identity key management commands"""
    pass


@key.command("create")
@click.option("--name", default="default", help="Key name")
@click.option("--force", is_flag=True, help="Overwrite an existing key")
@click.pass_context
def key_create(ctx, name, force):
    """Create a new node identity"""
    from peerdm.core.identity import Identity, save_identity

    path = _key_path(ctx, name)
    if path.exists() and not force:
        raise click.ClickException(f"Key '{name}' already exists at {path} (use --force to replace it)")

    identity = Identity.generate()
    save_identity(identity, path)

    click.echo(f"✓ Key created: {name}")
    click.echo(f"  Node ID: {identity.node_id}")
    click.echo(f"  Saved to: {path}")


@key.command("show")
@click.option("--name", default="default", help="Key name")
@click.pass_context
def key_show(ctx, name):
    """Show the node id and public key of an identity"""
    identity = _load_key(ctx, name)
    click.echo(f"Node ID: {identity.node_id}")
    click.echo(f"Public key: {identity.public_key.hex()}")


# =============================================================================
# Messaging Commands
# =============================================================================

@cli.command("listen")
@click.option("--name", default="default", help="Key name")
@click.option("--host", default=None, help="Listen host")
@click.option("--port", default=None, type=int, help="Listen port")
@click.pass_context
def listen(ctx, name, host, port):
    """Receive direct messages until interrupted"""
    from peerdm.network import DirectMessageNode

    identity = _load_key(ctx, name)
    config = ctx.obj["config"].model_copy(update={
        k: v for k, v in {"host": host, "port": port}.items() if v is not None
    })

    def show_message(sender: str, text: str) -> None:
        click.echo(f"[{sender}] {text}")

    async def run_node():
        node = DirectMessageNode.over_tcp(identity, config)
        node.on_message(show_message)

        async with node:
            host, port = node.transport.listen_address
            click.echo(f"Listening on {host}:{port} as {node.node_id}. Press Ctrl+C to stop.")
            await asyncio.Event().wait()

    try:
        asyncio.run(run_node())
    except KeyboardInterrupt:
        click.echo("\nStopped.")


@cli.command("send")
@click.argument("node_id")
@click.argument("address")
@click.argument("message")
@click.option("--name", default="default", help="Key name")
@click.pass_context
def send(ctx, node_id, address, message, name):
    """Send MESSAGE to NODE_ID listening at ADDRESS (host:port)"""
    from peerdm.network import DirectMessageClient, TcpTransport

    identity = _load_key(ctx, name)
    host, port = _parse_address(address)
    config = ctx.obj["config"]

    async def run_send():
        transport = TcpTransport(identity, config)
        transport.add_peer(node_id, host, port)
        try:
            return await DirectMessageClient(transport, identity, config).send_result(node_id, message)
        finally:
            await transport.stop()

    result = asyncio.run(run_send())
    if not result.ok:
        raise click.ClickException(f"{type(result.error).__name__}: {result.error.reason}")

    click.echo(f"✓ Acknowledged by {node_id}")
    click.echo(f"  Message ID: {result.acknowledged.message_id}")
    click.echo(f"  Round trip: {result.acknowledged.latency_ms}ms")


if __name__ == "__main__":
    cli()
