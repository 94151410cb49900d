"""CLI tools for mailbox sync administration."""

import asyncio
import logging

import click

from mailsync.core.errors import ExpiredCredential, MailboxSyncError
from mailsync.db.session import SessionLocal
from mailsync.services.credential_store import StoredCredential
from mailsync.services.mailbox_sync_service import MailboxSyncService, build_mailbox_sync_service


def _service() -> MailboxSyncService:
    return build_mailbox_sync_service(SessionLocal)


async def _finish(service: MailboxSyncService) -> None:
    # Let background body hydration complete before the process exits.
    if service.hydrator is not None:
        await service.hydrator.wait_idle()
    await service.close()


@click.group()
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Mailbox sync CLI tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@cli.command()
@click.argument("user_ref")
@click.option("--mailbox", required=True, help="Mailbox address (e.g. office@example.com)")
@click.option("--tenant-id", default=None, help="Azure AD tenant id")
@click.option("--account-id", default=None, help="Provider home account id")
@click.option("--environment", default=None, help="Account environment (e.g. login.microsoftonline.com)")
@click.option(
    "--refresh-token",
    prompt=True,
    hide_input=True,
    help="Refresh token from the authorization flow",
)
def connect(
    user_ref: str,
    mailbox: str,
    tenant_id: str | None,
    account_id: str | None,
    environment: str | None,
    refresh_token: str,
):
    """
    Store (or replace) the mailbox credential for a user.

    Example:
        mailsync connect 2f0c... --mailbox office@example.com --tenant-id contoso.onmicrosoft.com
    """
    service = _service()
    credential = StoredCredential(
        user_id=None,
        mailbox_address=mailbox.strip().lower(),
        refresh_token=refresh_token.strip(),
        provider_account_id=account_id,
        tenant_id=tenant_id,
        account_environment=environment,
    )
    try:
        with SessionLocal() as db:
            user_id = service.credentials.put(db, user_ref, credential)
    except MailboxSyncError as exc:
        click.echo(f"❌ {exc}")
        raise SystemExit(1)
    click.echo(f"✅ Stored mailbox credential for user {user_id}")


@cli.command("sync-user")
@click.argument("user_ref")
@click.option("--reset", is_flag=True, help="Ignore the stored delta cursor (full resync)")
def sync_user(user_ref: str, reset: bool):
    """Sync one user's mailbox now."""

    async def _run():
        service = _service()
        try:
            return await service.sync_user_with_timeout(user_ref, reset=reset, trigger="cli")
        finally:
            await _finish(service)

    try:
        outcome = asyncio.run(_run())
    except ExpiredCredential:
        click.echo("❌ Mailbox authorization expired. Reconnect the mailbox.")
        raise SystemExit(1)
    except MailboxSyncError as exc:
        click.echo(f"❌ Sync failed at {exc.stage}: {exc}")
        raise SystemExit(1)

    click.echo(
        f"✅ Synced user {outcome.user_id}: {outcome.processed} processed, "
        f"{outcome.inserted} new"
        + (" (snapshot fallback)" if outcome.used_snapshot else "")
    )
    click.echo(f"   Subscription: {outcome.subscription_status}")


@cli.command("sync-all")
def sync_all():
    """Sync every connected mailbox."""

    async def _run():
        service = _service()
        try:
            return await service.sync_all_mailboxes(trigger="cli")
        finally:
            await _finish(service)

    summary = asyncio.run(_run())
    click.echo(
        f"Processed {summary.processed} mailboxes: "
        f"{summary.successful} succeeded, {summary.failed} failed"
    )
    for result in summary.results:
        if not result.success:
            click.echo(f"  ❌ {result.user_id} [{result.stage or 'unknown'}]: {result.error}")
    if summary.failed:
        raise SystemExit(1)


@cli.command("refresh-subscriptions")
def refresh_subscriptions():
    """Renew push subscriptions that are missing or close to expiry."""

    async def _run():
        service = _service()
        try:
            return await service.refresh_all_subscriptions()
        finally:
            await service.close()

    summary = asyncio.run(_run())
    click.echo(
        f"Checked {summary.checked}: {summary.renewed} renewed, "
        f"{summary.unchanged} unchanged, {summary.failed} failed"
    )


@cli.command()
def subscriptions():
    """List push subscription state for every connected mailbox."""
    report = _service().get_subscriptions_report()
    if not report.webhook_url_configured:
        click.echo("⚠️  GRAPH_WEBHOOK_NOTIFICATION_URL is not configured")
    click.echo(f"Connected mailboxes: {report.total_mailboxes}")
    for entry in report.subscriptions:
        expiry = entry.subscription_expiry.isoformat() if entry.subscription_expiry else "-"
        click.echo(
            f"  {entry.user_id}  {entry.mailbox_address or '-'}  {entry.status}  expires {expiry}"
        )


@cli.command()
@click.argument("user_ref")
@click.argument("message_id")
def body(user_ref: str, message_id: str):
    """Print a message body, fetching it from Graph if not yet hydrated."""

    async def _run():
        service = _service()
        try:
            return await service.get_message_body(user_ref, message_id)
        finally:
            await service.close()

    try:
        result = asyncio.run(_run())
    except MailboxSyncError as exc:
        click.echo(f"❌ {exc}")
        raise SystemExit(1)
    click.echo(result.body)


@cli.command()
@click.argument("user_ref")
def status(user_ref: str):
    """Show connection and sync status for a user."""
    service = _service()
    try:
        info = service.get_connection_status(user_ref)
    except MailboxSyncError as exc:
        click.echo(f"❌ {exc}")
        raise SystemExit(1)
    click.echo(f"User:          {info.user_id}")
    click.echo(f"Connected:     {'yes' if info.connected else 'no'}")
    click.echo(f"Mailbox:       {info.mailbox_address or '-'}")
    click.echo(f"Last synced:   {info.last_synced_at.isoformat() if info.last_synced_at else 'never'}")
    click.echo(f"Subscription:  {info.subscription_status}")
    if info.error:
        click.echo(f"Error:         {info.error}")


@cli.command()
@click.argument("user_ref")
@click.confirmation_option(prompt="Remove the stored mailbox credential?")
def disconnect(user_ref: str):
    """Disconnect a user's mailbox."""

    async def _run():
        service = _service()
        try:
            return await service.disconnect(user_ref)
        finally:
            await service.close()

    try:
        removed = asyncio.run(_run())
    except MailboxSyncError as exc:
        click.echo(f"❌ {exc}")
        raise SystemExit(1)
    click.echo("✅ Mailbox disconnected" if removed else "No mailbox credential was stored")


if __name__ == "__main__":
    cli()
