"""
chunkdrop CLI

Command-line interface for chunked peer-to-peer file transfer.

Usage:
    chunkdrop listen                          # Wait for a peer (and serve the REST API)
    chunkdrop send FILE --peer HOST:PORT      # Send a file to a listening peer
    chunkdrop chat --peer HOST:PORT MESSAGE   # Send one chat line
    chunkdrop history                         # Show completed transfers
    chunkdrop config                          # Print an example config file
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import EXAMPLE_CONFIG, Config, load_config
from .errors import ChunkDropError
from .node import PeerNode

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    log_level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def parse_peer(value: str) -> Tuple[str, int]:
    """Split HOST:PORT."""
    try:
        host, port = value.rsplit(':', 1)
        return host, int(port)
    except ValueError:
        raise click.BadParameter(f"Invalid peer format: {value} (use host:port)")


def format_size(bytes_count: float) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='JSON config file')
@click.option('--data-dir', default=None, help='Data directory')
@click.option('--transfer-port', default=None, type=int, help='File transfer TCP port')
@click.pass_context
def cli(ctx, verbose, config_path, data_dir, transfer_port):
    """chunkdrop - chunked peer-to-peer file transfer with chat."""
    try:
        config = load_config(Path(config_path) if config_path else None)
    except (ChunkDropError, ValueError) as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    if data_dir:
        config.data_dir = Path(data_dir)
    if transfer_port is not None:
        config.transfer_port = transfer_port

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--api-port', default=None, type=int, help='REST API port')
@click.option('--no-api', is_flag=True, help='Disable REST API')
@click.pass_context
def listen(ctx, api_port, no_api):
    """Wait for a peer and receive files."""
    config: Config = ctx.obj['config']
    api_port = api_port or config.api_port

    async def run():
        node = PeerNode(config)
        node.on_event(print_event)

        try:
            await node.start()

            console.print(Panel.fit(
                f"[bold green]chunkdrop Listening[/bold green]\n\n"
                f"Transfer Port: [yellow]{node.server.bound_port}[/yellow]\n"
                f"Data Dir: [blue]{config.data_dir}[/blue]",
                title="Node Info"
            ))

            if not no_api:
                console.print(f"\n[dim]REST API available at http://localhost:{api_port}[/dim]")
                console.print(f"[dim]API docs at http://localhost:{api_port}/docs[/dim]\n")

                from .api import run_api_server
                await run_api_server(node, host=config.host, port=api_port)
            else:
                console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
                while True:
                    await asyncio.sleep(1)

        except asyncio.CancelledError:
            console.print("\n[yellow]Shutting down...[/yellow]")
        finally:
            await node.stop()
            console.print("[green]Node stopped[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


def print_event(event_type: str, data: dict):
    """Print session events that matter to a person watching the terminal."""
    if event_type == 'status':
        console.print(f"[dim]{data['message']}[/dim]")
    elif event_type == 'chat' and data['sender'] != 'You':
        console.print(f"[bold cyan]{data['sender']}:[/bold cyan] {data['message']}")
    elif event_type == 'file_received':
        console.print(
            f"[green]✓ Received {data['name']} ({format_size(data['size'])})"
            f" -> {data['path']}[/green]"
        )
    elif event_type == 'stalled':
        console.print(f"[yellow]Transfer stalled for {data['elapsed']:.1f}s[/yellow]")


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--peer', '-p', required=True, help='Peer address (host:port)')
@click.pass_context
def send(ctx, file_path, peer):
    """Send a file to a listening peer."""
    config: Config = ctx.obj['config']
    host, port = parse_peer(peer)
    file_path = Path(file_path)

    async def run():
        node = PeerNode(config, listen=False)
        await node.start()

        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                console=console,
            ) as progress:
                task = progress.add_task(f"Connecting to {peer}...", total=100)

                def update_progress(event_type: str, data: dict):
                    if event_type == 'progress' and data['direction'] == 'sent':
                        progress.update(
                            task,
                            completed=data['progress_percent'],
                            description=f"Sending... ({data['completed_chunks']}/{data['total_chunks']} chunks)"
                        )

                node.on_event(update_progress)
                await node.connect(host, port)
                record = await node.send_file(file_path)
                progress.update(task, completed=100, description="Done!")

            console.print(Panel.fit(
                f"[bold green]File Sent Successfully[/bold green]\n\n"
                f"Name: [cyan]{record.file_name}[/cyan]\n"
                f"Type: [cyan]{record.file_type}[/cyan]\n"
                f"Size: [yellow]{record.file_size:,} bytes[/yellow]",
                title="Sent File"
            ))
        except (ChunkDropError, OSError) as e:
            console.print(f"\n[red]✗ Send failed: {e}[/red]")
        finally:
            await node.stop()

    asyncio.run(run())


@cli.command()
@click.argument('message')
@click.option('--peer', '-p', required=True, help='Peer address (host:port)')
@click.pass_context
def chat(ctx, message, peer):
    """Send one chat message to a listening peer."""
    config: Config = ctx.obj['config']
    host, port = parse_peer(peer)

    async def run():
        node = PeerNode(config, listen=False)
        await node.start()
        try:
            await node.connect(host, port)
            await node.send_chat(message)
            console.print(f"[green]✓ Sent to {peer}[/green]")
        except ChunkDropError as e:
            console.print(f"[red]✗ Chat failed: {e}[/red]")
        finally:
            await node.stop()

    asyncio.run(run())


@cli.command()
@click.option('--clear', is_flag=True, help='Delete all history records')
@click.pass_context
def history(ctx, clear):
    """Show completed transfers."""
    config: Config = ctx.obj['config']

    async def run():
        node = PeerNode(config, listen=False)
        await node.start()
        try:
            if clear:
                await node.ledger.clear()
                console.print("[yellow]Transfer history cleared[/yellow]")
                return

            records = await node.history()

            if not records:
                console.print("[yellow]No transfers yet[/yellow]")
                return

            table = Table(title="Transfer History")
            table.add_column("Direction", style="magenta")
            table.add_column("Name", style="cyan")
            table.add_column("Type")
            table.add_column("Size", justify="right", style="yellow")
            table.add_column("When", style="green")

            for r in records:
                table.add_row(
                    r.direction.value,
                    r.file_name,
                    r.file_type,
                    format_size(r.file_size),
                    r.when.strftime("%Y-%m-%d %H:%M:%S"),
                )

            console.print(table)
        finally:
            await node.stop()

    asyncio.run(run())


@cli.command('config')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write the current config here')
@click.pass_context
def show_config(ctx, output: Optional[str]):
    """Print an example config file (or save the current one)."""
    config: Config = ctx.obj['config']
    if output:
        config.save(Path(output))
        console.print(f"[green]✓ Config written to {output}[/green]")
    else:
        console.print(EXAMPLE_CONFIG.strip())


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
