"""Operator CLI for Paygate using Typer."""

import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from paygate.utils import setup_logging

# Load .env from project directory only
_env_path = Path(__file__).parent.parent / ".env"
load_dotenv(_env_path, override=False)

# CLI styles
STYLE_HEADER = "bold blue"
STYLE_SUCCESS = "bold green"
STYLE_WARNING = "bold yellow"
STYLE_ERROR = "bold red"

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="paygate",
    help="Paygate - subscription reconciliation and access control.",
    add_completion=False,
)
console = Console()


def _container():
    from paygate.config import get_settings
    from paygate.container import build_container
    from paygate.db.session import async_session_factory

    return build_container(get_settings(), async_session_factory)


async def _with_container(fn):
    from paygate.db.session import engine
    from paygate.models import Base

    if engine.url.get_backend_name() == "sqlite":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    container = _container()
    try:
        return await fn(container)
    finally:
        await container.close()
        await engine.dispose()


def _run(fn):
    from paygate.errors import PaygateError

    try:
        return asyncio.run(_with_container(fn))
    except PaygateError as e:
        console.print(f"[{STYLE_ERROR}]{e.message}[/{STYLE_ERROR}]")
        raise typer.Exit(1)


def _profile_table(profiles) -> Table:
    table = Table(title="Profiles", header_style=STYLE_HEADER)
    for column in ("ID", "Email", "Status", "Ends", "Auto-renew", "Amount", "Admin"):
        table.add_column(column)
    for p in profiles:
        amount = f"{p.subscription_amount / 100:.2f}" if p.subscription_amount is not None else "-"
        table.add_row(
            str(p.id),
            p.email or "-",
            p.subscription_status,
            p.subscription_end.strftime("%Y-%m-%d %H:%M") if p.subscription_end else "-",
            "yes" if p.subscription_auto_renew else "no",
            amount,
            "yes" if p.is_admin else "no",
        )
    return table


@app.command()
def sync(
    email: Annotated[str, typer.Argument(help="Email of the profile to reconcile")],
    verbose: Annotated[bool, typer.Option(help="Verbose output")] = False,
) -> None:
    """Reconcile one profile against Stripe."""
    setup_logging(verbose)
    from paygate.services.reconciliation import Trigger

    async def _sync(container):
        return await container.engine.reconcile(email=email, trigger=Trigger.ADMIN)

    result = _run(_sync)
    style = STYLE_SUCCESS if result.changed else STYLE_WARNING
    console.print(f"[{style}]{'Updated' if result.changed else 'No changes'}[/{style}]")
    if result.profile is not None:
        console.print(_profile_table([result.profile]))


@app.command("grant-admin")
def grant_admin(
    email: Annotated[str, typer.Argument(help="Email of the profile")],
    revoke: Annotated[bool, typer.Option("--revoke", help="Remove admin instead")] = False,
) -> None:
    """Grant (or revoke) admin access for every profile with this email."""
    setup_logging()

    async def _grant(container):
        profiles = await container.profile_store.find_by_email(email)
        return [await container.profile_store.set_admin(p.id, not revoke) for p in profiles]

    updated = _run(_grant)
    if not updated:
        console.print(f"[{STYLE_ERROR}]No profile found for {email}[/{STYLE_ERROR}]")
        raise typer.Exit(1)
    console.print(_profile_table(updated))


@app.command("expire-lapsed")
def expire_lapsed() -> None:
    """Expire profiles whose paid period ended without renewal."""
    setup_logging()

    async def _expire(container):
        return await container.engine.expire_lapsed()

    count = _run(_expire)
    console.print(f"[{STYLE_SUCCESS}]Expired {count} profiles[/{STYLE_SUCCESS}]")


@app.command()
def cleanup() -> None:
    """Delete expired discount offers."""
    setup_logging()

    async def _cleanup(container):
        return await container.offers.cleanup_expired()

    count = _run(_cleanup)
    console.print(f"[{STYLE_SUCCESS}]Deleted {count} expired offers[/{STYLE_SUCCESS}]")


@app.command("seed-admin")
def seed_admin() -> None:
    """Create the admin profile from ADMIN_IDENTITY_ID / ADMIN_EMAIL and print a session token."""
    setup_logging()
    from paygate.config import get_settings
    from paygate.services.auth_service import create_token

    settings = get_settings()
    if not settings.admin_identity_id:
        console.print(f"[{STYLE_ERROR}]Set ADMIN_IDENTITY_ID first[/{STYLE_ERROR}]")
        raise typer.Exit(1)

    async def _seed(container):
        profile = await container.profile_store.get_or_create(
            settings.admin_identity_id, settings.admin_email or None, "Admin"
        )
        if not profile.is_admin:
            profile = await container.profile_store.set_admin(profile.id, True)
        return profile

    profile = _run(_seed)
    token = create_token(profile.external_identity_id, profile.email, expires_in=timedelta(days=7))
    console.print(f"[{STYLE_SUCCESS}]Admin profile {profile.id} ready[/{STYLE_SUCCESS}]")
    console.print(f"Bearer token (7 days):\n{token}")


if __name__ == "__main__":
    app()
