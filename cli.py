"""Admin CLI for the ClearNotes backend."""

from __future__ import annotations

import asyncio
import os
import uuid
from datetime import datetime, timezone

import click


def run_async(coro):
    """Run an async function in a new event loop."""
    return asyncio.run(coro)


@click.group()
def cli():
    """ClearNotes administration CLI."""
    pass


# --- Setup ---


@cli.command()
def setup():
    """Run migrations and create the bootstrap admin user."""
    click.echo("Running database migrations...")
    _run_migrations()

    click.echo("Creating admin user if none exists...")
    run_async(_create_admin())

    click.echo("Setup complete.")


def _run_migrations():
    """Run Alembic migrations using the Python API."""
    from alembic import command
    from alembic.config import Config

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


async def _create_admin():
    from sqlalchemy import select

    from api.auth import hash_password
    from shared.config import get_settings
    from shared.database import create_engine, create_session_factory
    from shared.models.user import User, UserRole

    settings = get_settings()
    if not settings.admin_password:
        click.echo("  ADMIN_PASSWORD is not set, skipping admin creation.")
        return

    engine = create_engine(settings.database_url)
    try:
        async with create_session_factory(engine)() as session:
            result = await session.execute(select(User).where(User.role == UserRole.ADMIN))
            existing = result.scalars().first()
            if existing:
                click.echo(f"  Admin already exists: {existing.email}")
                return

            admin = User(
                id=uuid.uuid4(),
                email=settings.admin_email.lower(),
                password_hash=hash_password(settings.admin_password),
                role=UserRole.ADMIN,
                created_at=datetime.now(timezone.utc),
            )
            session.add(admin)
            await session.commit()
            click.echo(f"  Created admin: {admin.email}")
    finally:
        await engine.dispose()


# --- User Management ---


@cli.group()
def user():
    """User management commands."""
    pass


@user.command("create")
@click.option("--email", required=True, help="Login email")
@click.option("--password", required=True, prompt=True, hide_input=True, help="Password (min 6 chars)")
@click.option("--role", default="user", type=click.Choice(["user", "admin"]))
def create_user(email, password, role):
    """Create a user account."""
    if len(password) < 6:
        raise click.BadParameter("Password must be at least 6 characters", param_hint="--password")
    run_async(_create_user(email.strip().lower(), password, role))


async def _create_user(email, password, role):
    from sqlalchemy import select

    from api.auth import hash_password
    from shared.database import create_engine, create_session_factory
    from shared.models.user import User, UserRole

    engine = create_engine()
    try:
        async with create_session_factory(engine)() as session:
            result = await session.execute(select(User).where(User.email == email))
            if result.scalar_one_or_none():
                click.echo(f"User already exists: {email}")
                return

            new_user = User(
                id=uuid.uuid4(),
                email=email,
                password_hash=hash_password(password),
                role=UserRole(role),
                created_at=datetime.now(timezone.utc),
            )
            session.add(new_user)
            await session.commit()
            click.echo(f"Created {role}: {email} (id={new_user.id})")
    finally:
        await engine.dispose()


@user.command("list")
def list_users():
    """List all users."""
    run_async(_list_users())


async def _list_users():
    from sqlalchemy import select

    from shared.database import create_engine, create_session_factory
    from shared.models.user import User

    engine = create_engine()
    try:
        async with create_session_factory(engine)() as session:
            result = await session.execute(select(User).order_by(User.created_at))
            users = result.scalars().all()
    finally:
        await engine.dispose()

    if not users:
        click.echo("No users found.")
        return

    for u in users:
        click.echo(f"  {u.id}  {u.role.value:<6}  {u.email}")


# --- Notes ---


@cli.group()
def notes():
    """Generated note maintenance."""
    pass


@notes.command("cleanup")
def cleanup_notes():
    """Delete notes whose retention date has passed."""
    run_async(_cleanup_notes())


async def _cleanup_notes():
    from shared.database import create_engine, create_session_factory
    from shared.retention import delete_expired_notes

    engine = create_engine()
    try:
        async with create_session_factory(engine)() as session:
            deleted = await delete_expired_notes(session)
    finally:
        await engine.dispose()
    click.echo(f"Deleted {deleted} expired notes.")


# --- Queues ---


@cli.group()
def queue():
    """Job queue inspection."""
    pass


@queue.command("status")
def queue_status():
    """Show job counts for every queue."""
    run_async(_queue_status())


async def _queue_status():
    from shared.config import get_settings
    from shared.queues import create_queues
    from shared.redis import close_redis, create_redis

    settings = get_settings()
    redis = create_redis(settings)
    try:
        for q in create_queues(redis, settings).all():
            counts = await q.get_job_counts()
            paused = " (paused)" if await q.is_paused() else ""
            summary = "  ".join(f"{state}={count}" for state, count in counts.items())
            click.echo(f"  {q.name}{paused}: {summary}")
    finally:
        await close_redis(redis)


if __name__ == "__main__":
    cli()
