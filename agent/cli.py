"""Admin CLI for the Slack dispatch engine."""

from __future__ import annotations

import asyncio
import json
import os
import sys
import uuid
from datetime import datetime, timezone

import click

# Ensure shared package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "shared"))


def run_async(coro):
    """Run an async function in a new event loop."""
    return asyncio.run(coro)


def _credential_store():
    from shared.config import get_settings
    from shared.credential_store import WorkspaceCredentialStore

    return WorkspaceCredentialStore(get_settings().credential_encryption_key)


@click.group()
def cli():
    """Slack dispatch engine administration CLI."""
    pass


# --- Setup ---


@cli.command()
def setup():
    """Run database migrations."""
    click.echo("Running database migrations...")
    _run_migrations()
    click.echo("Setup complete.")


def _run_migrations():
    """Run Alembic migrations using the Python API."""
    from alembic import command
    from alembic.config import Config

    # Look for alembic.ini in /app (Docker) or alongside this script (local)
    for candidate in ["/app/alembic.ini", os.path.join(os.path.dirname(__file__), "alembic.ini")]:
        if os.path.exists(candidate):
            alembic_cfg = Config(candidate)
            script_dir = os.path.join(os.path.dirname(candidate), "alembic")
            if os.path.isdir(script_dir):
                alembic_cfg.set_main_option("script_location", script_dir)
            db_url = os.environ.get("DATABASE_URL")
            if db_url:
                alembic_cfg.set_main_option("sqlalchemy.url", db_url)
            command.upgrade(alembic_cfg, "head")
            return

    click.echo("  Warning: alembic.ini not found, skipping migrations.")


@cli.command("generate-key")
def generate_key():
    """Print a new Fernet key for CREDENTIAL_ENCRYPTION_KEY."""
    from cryptography.fernet import Fernet

    click.echo(Fernet.generate_key().decode())


# --- Workspaces ---


@cli.group()
def workspace():
    """Workspace and Slack token management."""
    pass


@workspace.command("create")
@click.option("--name", required=True, help="Display name")
@click.option("--team-id", required=True, help="Slack team ID")
@click.option("--team-name", default=None, help="Slack team name")
def create_workspace(name, team_id, team_name):
    """Register a Slack workspace."""
    run_async(_create_workspace(name, team_id, team_name))


async def _create_workspace(name, team_id, team_name):
    from shared.database import dispose_engine, get_session_factory
    from shared.models.workspace import Workspace

    now = datetime.now(timezone.utc)
    async with get_session_factory()() as session:
        ws = Workspace(
            id=uuid.uuid4(),
            name=name,
            team_id=team_id,
            team_name=team_name,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        session.add(ws)
        await session.commit()
        click.echo(f"Created workspace: {ws.id}")
    await dispose_engine()


@workspace.command("set-bot-token")
@click.option("--workspace-id", required=True, help="Workspace ID")
@click.option("--token", required=True, prompt=True, hide_input=True, help="xoxb- bot token")
def set_bot_token(workspace_id, token):
    """Store (encrypted) the workspace bot token."""
    run_async(_set_bot_token(workspace_id, token))


async def _set_bot_token(workspace_id, token):
    from shared.database import dispose_engine, get_session_factory

    store = _credential_store()
    async with get_session_factory()() as session:
        await store.set_bot_token(session, uuid.UUID(workspace_id), token)
    click.echo("Bot token stored.")
    await dispose_engine()


@workspace.command("add-token")
@click.option("--workspace-id", required=True, help="Workspace ID")
@click.option("--user-name", required=True, help="Name of the human sender")
@click.option("--email", required=True, help="Email of the human sender")
@click.option("--token", required=True, prompt=True, hide_input=True, help="xoxp- user token")
@click.option("--scopes", default="chat:write", help="Comma-separated scope list")
@click.option("--default", "is_default", is_flag=True, help="Mark as the workspace default")
def add_token(workspace_id, user_name, email, token, scopes, is_default):
    """Add a user token; --default unsets any previous default."""
    run_async(_add_token(workspace_id, user_name, email, token, scopes, is_default))


async def _add_token(workspace_id, user_name, email, token, scopes, is_default):
    from shared.config import parse_list
    from shared.database import dispose_engine, get_session_factory

    store = _credential_store()
    async with get_session_factory()() as session:
        record = await store.add_user_token(
            session,
            uuid.UUID(workspace_id),
            user_name=user_name,
            user_email=email,
            token=token,
            scopes=parse_list(scopes),
            is_default=is_default,
        )
    click.echo(f"Added user token: {record.id}")
    await dispose_engine()


@workspace.command("remove-token")
@click.option("--workspace-id", required=True, help="Workspace ID")
@click.option("--token-id", required=True, help="User token ID")
def remove_token(workspace_id, token_id):
    """Delete a user token."""
    run_async(_remove_token(workspace_id, token_id))


async def _remove_token(workspace_id, token_id):
    from shared.database import dispose_engine, get_session_factory

    store = _credential_store()
    async with get_session_factory()() as session:
        removed = await store.remove_user_token(
            session, uuid.UUID(workspace_id), uuid.UUID(token_id)
        )
    click.echo("Token removed." if removed else "Token not found.")
    await dispose_engine()


@workspace.command("list-tokens")
@click.option("--workspace-id", required=True, help="Workspace ID")
def list_tokens(workspace_id):
    """List user tokens (metadata only)."""
    run_async(_list_tokens(workspace_id))


async def _list_tokens(workspace_id):
    from shared.credential_store import pick_default_token
    from shared.database import dispose_engine, get_session_factory
    from shared.store import SqlDispatchStore

    store = SqlDispatchStore(get_session_factory())
    credentials = await _credential_store().load_credentials(store, uuid.UUID(workspace_id))
    default = pick_default_token(credentials.user_tokens)

    click.echo(f"Bot token: {'configured' if credentials.bot_token else 'missing'}")
    if not credentials.user_tokens:
        click.echo("No user tokens.")
    for t in credentials.user_tokens:
        marker = "*" if default is not None and t.id == default.id else " "
        click.echo(f"{marker} {t.id}  {t.user_name:<20} {t.user_email:<30} {','.join(t.scopes)}")
    await dispose_engine()


# --- HubSpot ---


@cli.group()
def hubspot():
    """HubSpot connection management."""
    pass


@hubspot.command("add-connection")
@click.option("--portal-id", required=True, help="HubSpot portal ID")
@click.option("--token", required=True, prompt=True, hide_input=True, help="Private app access token")
@click.option("--workspace-id", default=None, help="Workspace to bind the connection to")
def add_connection(portal_id, token, workspace_id):
    """Store (encrypted) a HubSpot access token."""
    run_async(_add_connection(portal_id, token, workspace_id))


async def _add_connection(portal_id, token, workspace_id):
    from shared.database import dispose_engine, get_session_factory
    from shared.models.hubspot_connection import HubSpotConnection

    now = datetime.now(timezone.utc)
    async with get_session_factory()() as session:
        connection = HubSpotConnection(
            id=uuid.uuid4(),
            workspace_id=uuid.UUID(workspace_id) if workspace_id else None,
            portal_id=portal_id,
            encrypted_access_token=_credential_store().encrypt_secret(token),
            scopes=[],
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        session.add(connection)
        await session.commit()
        click.echo(f"Created HubSpot connection: {connection.id}")
    await dispose_engine()


# --- Scheduler ---


@cli.command("run-cycle")
@click.option("--batch-size", default=None, type=int, help="Override POLL_BATCH_SIZE")
def run_cycle(batch_size):
    """Run one scheduler poll cycle and print the report."""
    run_async(_run_cycle(batch_size))


async def _run_cycle(batch_size):
    from comms.slack_bot.client import SlackDeliveryClient
    from modules.dispatcher.pipeline import DeliveryPipeline
    from modules.scheduler.worker import run_poll_cycle
    from shared.config import get_settings
    from shared.database import dispose_engine, get_session_factory
    from shared.store import SqlDispatchStore

    settings = get_settings()
    session_factory = get_session_factory()
    store = SqlDispatchStore(session_factory)
    pipeline = DeliveryPipeline(
        store,
        _credential_store(),
        SlackDeliveryClient(timeout=settings.slack_api_timeout_seconds),
        session_factory=session_factory,
    )
    report = await run_poll_cycle(
        datetime.now(timezone.utc),
        store,
        pipeline,
        batch_size=batch_size or settings.poll_batch_size,
        session_factory=session_factory,
    )
    click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
    await dispose_engine()


# --- Rules ---


@cli.group()
def rules():
    """Automation rule commands."""
    pass


@rules.command("evaluate")
@click.option("--rule-id", required=True, help="Rule ID")
@click.option("--object-type", default="contacts", help="HubSpot object type")
@click.option("--object-id", default=None, help="HubSpot object ID")
@click.option("--email", default=None, help="Look the object up by email instead")
@click.option("--connection-id", default=None, help="HubSpot connection ID")
@click.option("--dry-run", is_flag=True, help="Evaluate conditions without running actions")
def evaluate_rule(rule_id, object_type, object_id, email, connection_id, dry_run):
    """Evaluate a rule against one CRM object."""
    run_async(_evaluate_rule(rule_id, object_type, object_id, email, connection_id, dry_run))


async def _evaluate_rule(rule_id, object_type, object_id, email, connection_id, dry_run):
    from comms.slack_bot.client import SlackDeliveryClient
    from modules.dispatcher.pipeline import DeliveryPipeline
    from modules.rules.tools import RulesTools
    from shared.config import get_settings
    from shared.database import dispose_engine, get_session_factory
    from shared.schemas.rules import EvaluateRuleRequest
    from shared.store import SqlDispatchStore

    settings = get_settings()
    store = SqlDispatchStore(get_session_factory())
    credential_store = _credential_store()
    pipeline = DeliveryPipeline(
        store,
        credential_store,
        SlackDeliveryClient(timeout=settings.slack_api_timeout_seconds),
        session_factory=get_session_factory(),
    )
    tools = RulesTools(store, credential_store, pipeline, settings)
    evaluation = await tools.evaluate_rule(
        uuid.UUID(rule_id),
        EvaluateRuleRequest(
            object_type=object_type,
            object_id=object_id,
            email=email,
            connection_id=uuid.UUID(connection_id) if connection_id else None,
            dry_run=dry_run,
        ),
    )
    click.echo(json.dumps(evaluation.model_dump(mode="json"), indent=2))
    await dispose_engine()


@rules.command("set-active")
@click.option("--rule-id", required=True, help="Rule ID")
@click.option("--active/--inactive", default=True, help="New active flag")
def set_active(rule_id, active):
    """Activate or deactivate a rule."""
    run_async(_set_active(rule_id, active))


async def _set_active(rule_id, active):
    from shared.database import dispose_engine, get_session_factory
    from shared.store import SqlDispatchStore

    store = SqlDispatchStore(get_session_factory())
    if await store.get_rule(uuid.UUID(rule_id)) is None:
        click.echo(f"Error: rule {rule_id} not found.")
    else:
        await store.update_rule(uuid.UUID(rule_id), is_active=active)
        click.echo(f"Rule {rule_id} is now {'active' if active else 'inactive'}.")
    await dispose_engine()


if __name__ == "__main__":
    cli()
