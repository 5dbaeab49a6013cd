"""
Admin CLI for ltikit.

Usage:
    ltikit init-db
    ltikit consumer create "Canvas Test" --lti13
    ltikit consumer list
    ltikit consumer rotate 3
    ltikit provider create "Quiz Tool" --launch-url https://quiz.example.edu/launch --domain quiz.example.edu
    ltikit sweep
"""

import asyncio
from contextlib import asynccontextmanager

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from ltikit.database import close_database, get_session_factory, init_database
from ltikit.errors import LTIError
from ltikit.expiration import ExpirationSweeper
from ltikit.models import ConsumerCreate, ConsumerUpdate, ProviderCreate, ProviderUpdate
from ltikit.register import RegistrationController
from ltikit.settings import get_settings
from ltikit.storage import LTIStorage

app = typer.Typer(name="ltikit", help="LTI toolkit admin CLI")
console = Console()


# ============================================================================
# Helpers
# ============================================================================


@asynccontextmanager
async def get_storage():
    """Open the configured database and yield an ``LTIStorage``."""
    settings = get_settings()
    await init_database(settings.database_url)
    try:
        yield LTIStorage(get_session_factory(), key_size=settings.rsa_key_size)
    finally:
        await close_database()


def run_async(coro):
    """Run a coroutine, turning LTI errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except LTIError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1) from e


@app.callback()
def main():
    load_dotenv()


@app.command("init-db")
def init_db():
    """Create all tables."""

    async def _init():
        await init_database(get_settings().database_url, create_tables=True)
        await close_database()

    run_async(_init())
    typer.echo("Tables created.")


@app.command("sweep")
def sweep():
    """Delete expired OAuth nonces and pending logins now."""
    settings = get_settings()

    async def _sweep():
        async with get_storage() as storage:
            return await ExpirationSweeper(storage, ttl_seconds=settings.nonce_ttl_seconds).sweep()

    nonces, logins = run_async(_sweep())
    typer.echo(f"Deleted {nonces} nonces and {logins} logins.")


@app.command("config-xml")
def config_xml():
    """Print the LTI 1.0 cartridge XML for this tool."""
    typer.echo(RegistrationController(get_settings(), None, None).lti10_config())


# ============================================================================
# Consumer Commands
# ============================================================================

consumer_app = typer.Typer(help="Platforms that launch this tool")
app.add_typer(consumer_app, name="consumer")


@consumer_app.command("create")
def consumer_create(
    name: str = typer.Argument(..., help="Consumer name"),
    key: str = typer.Option(None, "--key", help="OAuth key (generated if omitted)"),
    secret: str = typer.Option(None, "--secret", help="OAuth secret (generated if omitted)"),
    lti13: bool = typer.Option(False, "--lti13", help="LTI 1.3 consumer"),
    client_id: str = typer.Option(None, "--client-id"),
    platform_id: str = typer.Option(None, "--platform-id", help="Platform issuer"),
    deployment_id: str = typer.Option(None, "--deployment-id"),
    keyset_url: str = typer.Option(None, "--keyset-url"),
    token_url: str = typer.Option(None, "--token-url"),
    auth_url: str = typer.Option(None, "--auth-url"),
):
    """Register a consumer and print its credentials."""

    async def _create():
        async with get_storage() as storage:
            return await storage.create_consumer(
                ConsumerCreate(
                    name=name,
                    key=key,
                    secret=secret,
                    lti13=lti13,
                    client_id=client_id,
                    platform_id=platform_id,
                    deployment_id=deployment_id,
                    keyset_url=keyset_url,
                    token_url=token_url,
                    auth_url=auth_url,
                )
            )

    consumer, consumer_secret = run_async(_create())
    typer.echo(f"Created consumer: {consumer.id}")
    typer.echo(f"  Key: {consumer.key}")
    typer.echo(f"  Secret: {consumer_secret}")


@consumer_app.command("list")
def consumer_list():
    """List consumers."""

    async def _list():
        async with get_storage() as storage:
            return await storage.list_consumers()

    consumers = run_async(_list())
    if not consumers:
        typer.echo("No consumers found.")
        return

    table = Table(title="Consumers", show_header=True, header_style="bold magenta")
    for column in ("ID", "Name", "Key", "LTI", "Product", "Version"):
        table.add_column(column)
    for c in consumers:
        table.add_row(
            str(c.id), c.name, c.key, "1.3" if c.lti13 else "1.0", c.tc_product or "", c.tc_version or ""
        )
    console.print(table)


@consumer_app.command("update")
def consumer_update(
    consumer_id: int = typer.Argument(..., help="Consumer ID"),
    name: str = typer.Option(None, "--name"),
    client_id: str = typer.Option(None, "--client-id"),
    deployment_id: str = typer.Option(None, "--deployment-id"),
):
    """Update a consumer."""
    fields = {"name": name, "client_id": client_id, "deployment_id": deployment_id}

    async def _update():
        async with get_storage() as storage:
            return await storage.update_consumer(
                consumer_id, ConsumerUpdate(**{k: v for k, v in fields.items() if v is not None})
            )

    consumer = run_async(_update())
    typer.echo(f"Updated consumer: {consumer.id} ({consumer.name})")


@consumer_app.command("delete")
def consumer_delete(consumer_id: int = typer.Argument(..., help="Consumer ID")):
    """Delete a consumer and its key."""

    async def _delete():
        async with get_storage() as storage:
            await storage.delete_consumer(consumer_id)

    run_async(_delete())
    typer.echo(f"Deleted consumer: {consumer_id}")


@consumer_app.command("rotate")
def consumer_rotate(
    consumer_id: int = typer.Argument(..., help="Consumer ID"),
    secret: str = typer.Option(None, "--secret", help="New secret (generated if omitted)"),
):
    """Replace a consumer's key, secret and keypair."""

    async def _rotate():
        async with get_storage() as storage:
            return await storage.rotate_consumer_key(consumer_id, secret)

    consumer, new_secret = run_async(_rotate())
    typer.echo(f"Rotated consumer: {consumer.id}")
    typer.echo(f"  Key: {consumer.key}")
    typer.echo(f"  Secret: {new_secret}")


@consumer_app.command("secret")
def consumer_secret(key: str = typer.Argument(..., help="Consumer key")):
    """Print a consumer's secret."""

    async def _secret():
        async with get_storage() as storage:
            return await storage.get_consumer_secret(key)

    value = run_async(_secret())
    if value is None:
        typer.echo(f"No consumer with key {key}")
        raise typer.Exit(code=1)
    typer.echo(value)


# ============================================================================
# Provider Commands
# ============================================================================

provider_app = typer.Typer(help="Tools this deployment launches")
app.add_typer(provider_app, name="provider")


@provider_app.command("create")
def provider_create(
    name: str = typer.Argument(..., help="Provider name"),
    launch_url: str = typer.Option(..., "--launch-url", help="Tool launch URL"),
    domain: str = typer.Option(..., "--domain", help="Tool domain"),
    key: str = typer.Option(None, "--key", help="OAuth key (generated if omitted)"),
    secret: str = typer.Option(None, "--secret", help="OAuth secret (generated if omitted)"),
    custom: str = typer.Option(None, "--custom", help="Custom parameters, key=value per line"),
    use_section: bool = typer.Option(False, "--use-section"),
):
    """Register a provider and print its credentials."""

    async def _create():
        async with get_storage() as storage:
            return await storage.create_provider(
                ProviderCreate(
                    name=name,
                    launch_url=launch_url,
                    domain=domain,
                    key=key,
                    secret=secret,
                    custom=custom,
                    use_section=use_section,
                )
            )

    provider, provider_secret = run_async(_create())
    typer.echo(f"Created provider: {provider.id}")
    typer.echo(f"  Key: {provider.key}")
    typer.echo(f"  Secret: {provider_secret}")


@provider_app.command("list")
def provider_list():
    """List providers."""

    async def _list():
        async with get_storage() as storage:
            return await storage.list_providers()

    providers = run_async(_list())
    if not providers:
        typer.echo("No providers found.")
        return

    table = Table(title="Providers", show_header=True, header_style="bold magenta")
    for column in ("ID", "Name", "Key", "Launch URL"):
        table.add_column(column)
    for p in providers:
        table.add_row(str(p.id), p.name, p.key, p.launch_url)
    console.print(table)


@provider_app.command("update")
def provider_update(
    provider_id: int = typer.Argument(..., help="Provider ID"),
    name: str = typer.Option(None, "--name"),
    key: str = typer.Option(None, "--key", help="New OAuth key"),
    secret: str = typer.Option(None, "--secret", help="New OAuth secret"),
    launch_url: str = typer.Option(None, "--launch-url"),
):
    """Update a provider."""
    fields = {"name": name, "key": key, "secret": secret, "launch_url": launch_url}

    async def _update():
        async with get_storage() as storage:
            return await storage.update_provider(
                provider_id, ProviderUpdate(**{k: v for k, v in fields.items() if v is not None})
            )

    provider = run_async(_update())
    typer.echo(f"Updated provider: {provider.id} ({provider.name})")


@provider_app.command("delete")
def provider_delete(provider_id: int = typer.Argument(..., help="Provider ID")):
    """Delete a provider and its key."""

    async def _delete():
        async with get_storage() as storage:
            await storage.delete_provider(provider_id)

    run_async(_delete())
    typer.echo(f"Deleted provider: {provider_id}")


if __name__ == "__main__":
    app()
