"""Admin and client CLI for the Last Seen location service."""

from __future__ import annotations

import asyncio
import os
import sys

import click

# Ensure shared package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "shared"))


def run_async(coro):
    """Run an async function in a new event loop."""
    return asyncio.run(coro)


@click.group()
def cli():
    """Last Seen administration CLI."""
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
            return command.upgrade(alembic_cfg, "head")

    click.echo("  Warning: alembic.ini not found, skipping migrations.")


def _store():
    from modules.location.store import LocationStore
    from shared.database import get_session_factory

    return LocationStore(get_session_factory())


async def _require_user(store, email: str):
    user = await store.find_user_by_email(email)
    if user is None:
        raise click.ClickException(f"No user registered as {email}")
    return user


@cli.command()
@click.option("--host", default="0.0.0.0")
@click.option("--port", default=8000, type=int)
def serve(host, port):
    """Run the location module HTTP service."""
    import uvicorn

    config = uvicorn.Config(
        "modules.location.main:app",
        host=host,
        port=port,
        log_level="info",
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    uvicorn.Server(config).run()


# --- User Management ---


@cli.group()
def user():
    """User and connection management commands."""
    pass


@user.command("create")
@click.argument("email")
@click.option("--name", default=None, help="Display name")
def create_user(email, name):
    """Register a user."""
    run_async(_create_user(email, name))


async def _create_user(email, name):
    from modules.location.store import ConflictError
    from shared.database import dispose_engine

    try:
        profile = await _store().create_user(email, display_name=name)
        click.echo(f"Created user {profile.label}: {profile.id}")
    except ConflictError:
        click.echo(f"Error: {email} is already registered.")
    finally:
        await dispose_engine()


@user.command("connect")
@click.argument("email")
@click.argument("target_email")
def connect(email, target_email):
    """Let EMAIL see TARGET_EMAIL's spot (one direction only)."""
    run_async(_connect(email, target_email))


async def _connect(email, target_email):
    from modules.location.connections import ConnectionManager, ConnectionRequestError
    from shared.config import get_settings
    from shared.database import dispose_engine

    store = _store()
    try:
        viewer = await _require_user(store, email)
        manager = ConnectionManager(store, get_settings().public_share_base_url)
        target = await manager.add_by_email(viewer.id, target_email)
        click.echo(f"{viewer.label} now sees {target.label}")
    except ConnectionRequestError as e:
        click.echo(f"Error: {e}")
    finally:
        await dispose_engine()


@user.command("share")
@click.argument("email")
@click.option("--disable", is_flag=True, help="Disable the public link instead")
def share(email, disable):
    """Create (or rotate) a user's public share link."""
    run_async(_share(email, disable))


async def _share(email, disable):
    from modules.location.connections import ConnectionManager
    from shared.config import get_settings
    from shared.database import dispose_engine

    store = _store()
    try:
        owner = await _require_user(store, email)
        manager = ConnectionManager(store, get_settings().public_share_base_url)
        if disable:
            await manager.disable_public_share(owner.id)
            click.echo("Public link disabled.")
        else:
            link = await manager.enable_public_share(owner.id)
            click.echo(f"Public link: {link.url}")
    finally:
        await dispose_engine()


# --- Location ---


@cli.command("log")
@click.argument("email")
@click.option("--lat", required=True, type=float)
@click.option("--lng", required=True, type=float)
@click.option("--note", default=None)
@click.option("--expires", "expiry_minutes", default=None, type=int, help="Minutes until expiry")
@click.option(
    "--mode",
    default="public",
    type=click.Choice(["public", "unlisted", "connectionsOnly", "vague"]),
)
@click.option("--vague", is_flag=True, help="Blur the spot by up to the vague radius")
def log_location(email, lat, lng, note, expiry_minutes, mode, vague):
    """Log a spot for EMAIL."""
    run_async(_log_location(email, lat, lng, note, expiry_minutes, mode, vague))


async def _log_location(email, lat, lng, note, expiry_minutes, mode, vague):
    from modules.location.geocoding import ReverseGeocoder
    from modules.location.tools import LocationTools
    from shared.config import get_settings
    from shared.database import dispose_engine

    settings = get_settings()
    store = _store()
    tools = LocationTools(
        store,
        settings,
        geocoder=ReverseGeocoder(
            settings.nominatim_reverse_url,
            settings.geocoder_user_agent,
            settings.geocoder_timeout_seconds,
        ),
    )
    try:
        owner = await _require_user(store, email)
        result = await tools.log_location(
            lat=lat,
            lng=lng,
            note=note,
            expiry_minutes=expiry_minutes,
            visibility_mode=mode,
            vague=vague,
            user_id=owner.id,
        )
        if result.get("success"):
            logged = result["logged"]
            place = f" near {logged['place_label']}" if logged["place_label"] else ""
            click.echo(f"Logged {logged['lat']:.5f}, {logged['lng']:.5f}{place}")
        else:
            click.echo(f"Error: {result.get('error')}")
    finally:
        await tools.close()
        await dispose_engine()


class ConsoleMapSurface:
    """Map surface that prints marker changes instead of drawing them."""

    def apply(self, patches):
        for patch in patches:
            if patch.marker is not None:
                m = patch.marker
                stale = " (stale)" if m.is_stale else ""
                click.echo(
                    f"  {patch.kind.value:<6} {m.label}{stale} @ "
                    f"{m.position.lat:.5f}, {m.position.lng:.5f}"
                )
            else:
                click.echo(f"  {patch.kind.value:<6} {patch.owner_id or ''}".rstrip())

    def fit_bounds(self, bounds, padding, max_zoom):
        click.echo(
            f"  fit    [{bounds.south:.4f}, {bounds.west:.4f}] - "
            f"[{bounds.north:.4f}, {bounds.east:.4f}]"
        )

    def is_clustered(self, owner_id):
        return False

    async def expand_cluster(self, owner_id):
        return None

    async def fly_to(self, position, zoom):
        return None

    def open_popup(self, owner_id):
        return None


@cli.command("watch")
@click.argument("email")
@click.option("--interval", default=None, type=int, help="Seconds between polls")
def watch(email, interval):
    """Poll the circle as EMAIL and print marker changes until interrupted."""
    try:
        run_async(_watch(email, interval))
    except KeyboardInterrupt:
        click.echo("Stopped.")


async def _watch(email, interval):
    from modules.location.markers import MarkerLifecycleManager
    from modules.location.sync import SyncEngine, ViewerSession
    from modules.location.visibility import VisibilityPolicy
    from modules.location.worker import SyncPoller
    from shared.config import get_settings
    from shared.database import dispose_engine

    settings = get_settings()
    store = _store()
    viewer = await _require_user(store, email)
    policy = VisibilityPolicy(settings.visibility_policy)
    engine = SyncEngine(
        store,
        ViewerSession(user_id=viewer.id),
        policy,
        page_size=settings.poll_page_size or None,
    )
    markers = MarkerLifecycleManager(
        ConsoleMapSurface(),
        viewer.id,
        reveal_identity=lambda r: policy.reveal_identity(engine.state.viewer, r, r.owner),
    )

    def _render(state):
        if state.error:
            click.echo(f"! {state.error}")
            return
        markers.reconcile(state.view)
        if state.is_stale:
            click.echo("  Your spot is stale or missing; log a new one.")

    engine.add_listener(_render)
    poller = SyncPoller(engine, interval=interval or settings.poll_interval_seconds)
    poller.start()
    try:
        await asyncio.Event().wait()
    finally:
        await poller.stop()
        await engine.close()
        await dispose_engine()


if __name__ == "__main__":
    cli()
