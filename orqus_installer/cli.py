import functools
import logging
import sys

import click
from tabulate import tabulate

from .config import load_config
from .errors import InstallerError
from .installer import Installer, installation_config
from .lifecycle import LifecycleManager
from .roles import ROLE_POLICIES, InstallMode, NodeRole
from .state import InstallationLayout, load_record

logger = logging.getLogger(__name__)

BANNER_WIDTH = 59


def _banner(title):
    click.echo("")
    click.echo("╔" + "═" * BANNER_WIDTH + "╗")
    click.echo("║" + title.center(BANNER_WIDTH) + "║")
    click.echo("╚" + "═" * BANNER_WIDTH + "╝")
    click.echo("")


def handle_errors(func):
    """Print installer errors as a diagnostic and exit non-zero."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except InstallerError as e:
            click.echo(f"❌ {e.kind}: {e.message}", err=True)
            if e.hint:
                click.echo(f"💡 {e.hint}", err=True)
            sys.exit(1)
    return wrapper


def _build_config(ctx, **overrides):
    return load_config(
        config_file=ctx.obj.get('config_file'),
        install_dir=ctx.obj.get('install_dir'),
        **overrides,
    )


@click.group()
@click.option('--install-dir', type=click.Path(file_okay=False), help='Installation directory (default: ~/.orqus)')
@click.option('--config', 'config_file', type=click.Path(dir_okay=False), help='Settings file (config.yaml)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, install_dir, config_file, verbose):
    """🚀 Orqus Chain node installer"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S',
    )
    ctx.ensure_object(dict)
    ctx.obj['install_dir'] = install_dir
    ctx.obj['config_file'] = config_file


@cli.command(name='install')
@click.option('--role', type=click.Choice([r.value for r in NodeRole]), help='Node type (NODE_TYPE)')
@click.option('--mode', type=click.Choice([m.value for m in InstallMode]), help='Installation mode (INSTALL_MODE)')
@click.pass_context
@handle_errors
def install_cmd(ctx, role, mode):
    """Install binaries or images, keys, genesis and configuration"""
    _banner("Orqus Chain - One-click Installer")
    config = installation_config(_build_config(ctx, role=role, mode=mode))
    summary = Installer(config).install()
    root = InstallationLayout(config.install_dir).root

    _banner("Installation Complete!")
    click.echo(f"Installation mode: {config.mode.value}")
    click.echo(f"Node type: {config.role.value}")
    click.echo(f"Installation directory: {root}")
    if summary.version:
        click.echo(f"Release: {summary.version}")
    click.echo(f"Consensus genesis: {summary.chain.consensus_source.value}")
    click.echo(f"Execution genesis: {summary.chain.execution_source.value}")
    click.echo("")
    click.echo("To start the chain:")
    click.echo(f"  {root}/start.sh")
    click.echo("")
    click.echo("To stop the chain:")
    click.echo(f"  {root}/stop.sh")
    click.echo("")
    click.echo("To upgrade to latest version:")
    click.echo(f"  python3 -m orqus_installer --install-dir {root} upgrade")
    click.echo("")
    if config.mode is InstallMode.BINARY:
        click.echo("To add binaries to PATH:")
        click.echo(f"  source {root}/env.sh")
        click.echo("")
    click.echo(f"Chain ID: {summary.chain.chain_id}")
    click.echo(f"RPC endpoint: http://127.0.0.1:{config.reth_http_port}")
    if config.persistent_peers:
        click.echo(f"P2P peers: {','.join(config.persistent_peers)}")


@cli.command(name='upgrade')
@click.pass_context
@handle_errors
def upgrade_cmd(ctx):
    """Upgrade an existing installation to the latest release"""
    _banner("Orqus Chain - Upgrade")
    config = _build_config(ctx)
    result = Installer(config).upgrade()
    root = InstallationLayout(config.install_dir).root

    _banner("Upgrade Complete!")
    click.echo(f"Upgraded to version: {result.version}")
    click.echo("")
    if result.restarted:
        click.echo("Containers are now running with the new images.")
        click.echo(f"View logs: docker compose -f {root}/docker-compose.yml logs -f")
    else:
        click.echo("To start the chain:")
        click.echo(f"  {root}/start.sh")


@cli.command(name='start')
@click.option('--detach', '-d', is_flag=True, help='Return once all processes are ready')
@click.pass_context
@handle_errors
def start_cmd(ctx, detach):
    """Start orqus-reth, orqusbft and CometBFT in order"""
    config = installation_config(_build_config(ctx))
    lifecycle = LifecycleManager(config, InstallationLayout(config.install_dir))
    if config.mode is InstallMode.BINARY and not detach:
        click.echo("All components will run in the foreground. Press Ctrl+C to stop...")
    code = lifecycle.start(detach=detach)
    if detach or config.mode is InstallMode.DOCKER:
        click.echo("✅ Orqus Chain started!")
        click.echo(f"  JSON-RPC:  http://127.0.0.1:{config.reth_http_port}")
        click.echo(f"  WebSocket: ws://127.0.0.1:{config.reth_ws_port}")
        click.echo(f"  CometBFT:  http://127.0.0.1:{config.cometbft_rpc_port}")
    sys.exit(code)


@cli.command(name='stop')
@click.pass_context
@handle_errors
def stop_cmd(ctx):
    """Stop every managed process"""
    config = installation_config(_build_config(ctx))
    LifecycleManager(config, InstallationLayout(config.install_dir)).stop()
    click.echo("✅ Stopped")


@cli.command(name='status')
@click.pass_context
@handle_errors
def status_cmd(ctx):
    """Show installation record and process status"""
    config = installation_config(_build_config(ctx))
    layout = InstallationLayout(config.install_dir)
    record = load_record(layout)
    if record is None:
        click.echo(f"⚪ No installation at {layout.root}")
        return

    lifecycle = LifecycleManager(config, layout)
    click.echo(tabulate([
        ['Directory', str(layout.root)],
        ['Role', record.role.value],
        ['Mode', record.mode.value],
        ['Chain ID', record.chain_id],
        ['Moniker', record.moniker],
        ['State', lifecycle.current_state().value],
    ], tablefmt='plain'))
    click.echo("")

    if record.mode is InstallMode.DOCKER:
        result = lifecycle.docker.compose(layout.root, 'ps')
        click.echo(result.stdout if result.ok else f"❌ {result.stderr.strip()}")
        return

    rows = []
    for status in lifecycle.process_status():
        rows.append([
            status.name,
            status.pid or '-',
            '🟢 running' if status.running else '🔴 stopped',
            status.endpoint,
        ])
    click.echo(tabulate(rows, headers=['Process', 'PID', 'State', 'Endpoint'], tablefmt='fancy_grid'))


@cli.command(name='roles')
def roles_cmd():
    """Show the per-role configuration policy"""
    rows = []
    for role, policy in ROLE_POLICIES.items():
        rows.append([
            role.value,
            policy.peer_exchange_enabled,
            policy.address_book_strict,
            policy.slashing_enabled,
            policy.retain_blocks or '0 (all)',
        ])
    click.echo(tabulate(rows, headers=['Role', 'PEX', 'Addr book strict', 'Slashing', 'Retain blocks'], tablefmt='fancy_grid'))


if __name__ == '__main__':
    cli()
