#!/usr/bin/env python3
"""fystack-ignite - Provision MPC node credentials and peer topology."""
import click
import logging
import os
import re
import sys
from pathlib import Path

from .errors import ProvisioningError
from .settings import (
    DEFAULT_CONSUL_ADDRESS, DEFAULT_NATS_URL, EXTERNAL_CONSUL_ADDRESS, EXTERNAL_NATS_URL,
    ISSUERS, ProvisionSettings
)

logger = logging.getLogger(__name__)

MASK = "***MASKED***"
SECRET_PATTERNS = [
    re.compile(r'((?:badger_password|pk_raw|private_key|event_initiator_pubkey|peer_id)["\']?:\s*["\']?)[^"\'\s,}]+'),
    re.compile(r'\b[0-9a-fA-F]{64}(?:[0-9a-fA-F]{64})?\b'),
]


class SecretMaskingFilter(logging.Filter):
    """Masks key material and passwords in log records before they are emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = ()
        return True


def mask_secrets(text: str) -> str:
    text = SECRET_PATTERNS[0].sub(lambda m: m.group(1) + MASK, text)
    return SECRET_PATTERNS[1].sub(MASK, text)


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(name)s - %(levelname)s - %(message)s'
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, SecretMaskingFilter) for f in handler.filters):
            handler.addFilter(SecretMaskingFilter())


def issuer_options(fn):
    """Options shared by every command that talks to the issuing collaborator."""
    options = [
        click.option('-d', '--directory', envvar='BASE_DIR', default='node-configs',
                     type=click.Path(file_okay=False, path_type=Path),
                     show_default=True, help='Base directory for node configurations'),
        click.option('--issuer', type=click.Choice(ISSUERS), default='cli', show_default=True,
                     help='Use the mpcium-cli binary or the built-in issuer'),
        click.option('--cli-path', envvar='MPCIUM_CLI',
                     type=click.Path(dir_okay=False, path_type=Path),
                     help='Path to mpcium-cli (default: ./mpcium-cli)'),
        click.option('--timeout', default=60.0, show_default=True,
                     help='Seconds allowed for each external call'),
        click.option('--external-nats-url', default=EXTERNAL_NATS_URL, show_default=True,
                     help='NATS URL reachable from this host, used while registering'),
        click.option('--external-consul-address', default=EXTERNAL_CONSUL_ADDRESS, show_default=True,
                     help='Consul address reachable from this host, used while registering'),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def fail(e: ProvisioningError):
    click.echo(f"❌ {e}", err=True)
    sys.exit(e.exit_code)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Debug logging')
def cli(verbose):
    """fystack-ignite - MPC cluster credential and peer provisioning"""
    configure_logging(verbose)


@cli.command()
@click.option('-n', '--nodes', envvar='NUM_NODES', default=3, show_default=True,
              help='Number of nodes to generate')
@click.option('-t', '--threshold', envvar='MPC_THRESHOLD', default=2, show_default=True,
              help='MPC threshold (must be less than the number of nodes)')
@click.option('-e', '--environment', envvar='ENVIRONMENT', default='development', show_default=True,
              help='Environment tag (development/production)')
@click.option('--encrypt', envvar='ENCRYPT_KEYS', is_flag=True, help='Encrypt private keys at rest')
@click.option('--nats-url', envvar='NATS_URL', default=DEFAULT_NATS_URL, show_default=True,
              help='NATS URL written into the node configuration')
@click.option('--consul-address', envvar='CONSUL_ADDRESS', default=DEFAULT_CONSUL_ADDRESS,
              show_default=True, help='Consul address written into the node configuration')
@click.option('--service-config', type=click.Path(dir_okay=False, path_type=Path),
              help='Shared service config holding pk_raw and the integrity key '
                   '(default: <directory>/../config.yaml)')
@click.option('--workers', default=4, show_default=True, help='Parallel identity/copy workers')
@click.option('--register', 'do_register', is_flag=True,
              help='Register peers once the configuration is generated')
@issuer_options
def setup(nodes, threshold, environment, encrypt, nats_url, consul_address, service_config,
          workers, do_register, directory, issuer, cli_path, timeout,
          external_nats_url, external_consul_address):
    """Generate peers, keys, config and per-node identity bundles."""
    from .workflow import Provisioner

    passphrase = None
    if encrypt:
        passphrase = _passphrase()

    settings = ProvisionSettings(
        nodes=nodes,
        threshold=threshold,
        environment=environment,
        encrypt=encrypt,
        directory=directory,
        service_config=service_config,
        nats_url=nats_url,
        consul_address=consul_address,
        external_nats_url=external_nats_url,
        external_consul_address=external_consul_address,
        issuer=issuer,
        cli_path=cli_path,
        passphrase=passphrase,
        timeout=timeout,
        workers=workers
    )

    click.echo("🔧 Configuration:")
    click.echo(f"   Nodes:          {settings.nodes}")
    click.echo(f"   MPC threshold:  {settings.threshold}")
    click.echo(f"   Environment:    {settings.environment}")
    click.echo(f"   Encrypt keys:   {settings.encrypt}")
    click.echo(f"   NATS URL:       {settings.nats_url}")
    click.echo(f"   Consul address: {settings.consul_address}")
    click.echo(f"   Base directory: {settings.directory}")

    try:
        result = Provisioner(settings).run(register=do_register)
    except ProvisioningError as e:
        fail(e)

    click.echo("\n🎉 SETUP COMPLETE!")
    click.echo("\n🔑 Keys:")
    for kind, state in result.key_states.items():
        click.echo(f"   {kind}: {state.value}")
    click.echo("\n📁 Generated files:")
    click.echo("  ├── config.yaml (cluster configuration)")
    click.echo("  ├── peers.json (peer ID mappings)")
    click.echo("  ├── event_initiator.identity.json (initiator public key)")
    if settings.encrypt:
        click.echo("  ├── event_initiator.key.enc (encrypted private key)")
    else:
        click.echo("  ├── event_initiator.key (private key)")
    click.echo("  ├── integrity_signer.key (integrity ed25519 private key)")
    for node in settings.cluster:
        click.echo(f"  └── {node.name}/ (config.yaml, peers.json, identity/)")
    click.echo(f"\n   Shared service config: {settings.service_config_path}")
    click.echo(f"   BadgerDB password: {MASK}")

    if result.registered:
        click.echo("\n✅ Peers registered.")
    else:
        click.echo("\n🚀 Next steps:")
        click.echo("  1. Start the infrastructure (NATS, Consul)")
        click.echo(f"  2. Register peers: fystack-ignite register -d {settings.directory}")
        click.echo("  3. Start the nodes")
    click.echo("\n⚠️  Store the BadgerDB password and key files securely!")


def _passphrase() -> str:
    value = os.environ.get('IGNITE_KEY_PASSPHRASE')
    if value:
        return value
    return click.prompt('🔐 Key passphrase', hide_input=True, confirmation_prompt=True)


@cli.command()
@issuer_options
def register(directory, issuer, cli_path, timeout, external_nats_url, external_consul_address):
    """Register the generated peers with the running cluster."""
    from .workflow import Provisioner

    settings = ProvisionSettings(
        directory=directory,
        issuer=issuer,
        cli_path=cli_path,
        timeout=timeout,
        external_nats_url=external_nats_url,
        external_consul_address=external_consul_address
    )
    click.echo(f"📤 Registering peers from {directory}...")
    try:
        peers = Provisioner(settings).register()
    except ProvisioningError as e:
        fail(e)
    click.echo(f"✅ Registered {len(peers)} peers.")


@cli.command()
@click.option('-d', '--directory', envvar='BASE_DIR', default='node-configs',
              type=click.Path(file_okay=False, path_type=Path), show_default=True)
@click.option('--service-config', type=click.Path(dir_okay=False, path_type=Path))
def status(directory, service_config):
    """Show what the last provisioning run left on disk."""
    from .config import INTEGRITY_KEY_FIELD, PK_RAW_FIELD, ServiceConfig
    from .distribute import identity_documents
    from .peers import load_peer_directory
    from .state import RunLedger

    settings = ProvisionSettings(directory=directory, service_config=service_config)
    click.echo(f"\n📊 Provisioning Status: {directory}")
    click.echo("=" * 40)

    if not Path(directory).is_dir():
        click.echo("Nothing provisioned yet.")
        return

    record = RunLedger(directory).load()
    if record:
        click.echo(f"Last run:        {record.nodes} nodes, threshold {record.threshold}, "
                   f"{record.environment}")
        for kind, state in record.key_states.items():
            click.echo(f"   {kind}: {state}")
        click.echo(f"Registered:      {'✓' if record.registered else '✗'}")

    peers_path = Path(directory) / 'peers.json'
    count = 0
    if peers_path.exists():
        try:
            count = len(load_peer_directory(peers_path))
            click.echo(f"Peers:           {count}")
        except ProvisioningError as e:
            click.echo(f"Peers:           ⚠️  {e}")
    else:
        click.echo("Peers:           ✗")

    initiator = any((Path(directory) / n).exists()
                    for n in ('event_initiator.key', 'event_initiator.key.enc'))
    integrity = (Path(directory) / 'integrity_signer.key').exists()
    try:
        shared = ServiceConfig.load(settings.service_config_path)
    except ProvisioningError as e:
        click.echo(f"Event initiator: {'✓' if initiator else '✗'}")
        click.echo(f"Integrity key:   {'✓' if integrity else '✗'}")
        click.echo(f"Service config:  ⚠️  {e}")
    else:
        click.echo(f"Event initiator: {'✓' if initiator else '✗'} "
                   f"(pk_raw {'set' if shared.get_str(PK_RAW_FIELD) else 'empty'})")
        click.echo(f"Integrity key:   {'✓' if integrity else '✗'} "
                   f"(config {'set' if shared.get_str(INTEGRITY_KEY_FIELD) else 'empty'})")

    click.echo("\n📬 Identities:")
    for root in sorted(p for p in Path(directory).iterdir() if p.is_dir() and p.name.startswith('node')):
        docs = identity_documents(root)
        marker = "✓" if count and len(docs) == count else "⚠️ "
        click.echo(f"   {marker} {root.name}: {len(docs)} documents")


if __name__ == '__main__':
    cli()
