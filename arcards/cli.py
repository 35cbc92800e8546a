# arcards/cli.py
import click
from flask.cli import AppGroup

from .extensions import db
from .models.asset import Asset, AssetStatus
from .security import issue_owner_token
from .services.compile_service import compile_asset, reap_stale_compilations

arcards_cli = AppGroup("arcards", help="AR card maintenance commands.")


@arcards_cli.command("init-db")
def init_db():
    """Create tables (use `flask db upgrade` once migrations exist)."""
    db.create_all()
    click.echo("Database initialized.")


@arcards_cli.command("issue-token")
@click.argument("owner_id")
def issue_token(owner_id):
    """Mint a bearer token for OWNER_ID (development only)."""
    click.echo(issue_owner_token(owner_id))


@arcards_cli.command("recompile")
@click.argument("asset_ids", nargs=-1)
@click.option("--failed", is_flag=True, help="Also pick every asset in error or needs_better_image.")
def recompile(asset_ids, failed):
    """Run compilation inline for the given assets."""
    ids = list(asset_ids)
    if failed:
        rows = Asset.query.filter(
            Asset.status.in_([AssetStatus.ERROR, AssetStatus.NEEDS_BETTER_IMAGE]),
            Asset.image_ref.isnot(None),
        ).all()
        ids.extend(a.id for a in rows if a.id not in ids)
    if not ids:
        click.echo("Nothing to do.")
        return
    for asset_id in ids:
        asset = db.session.get(Asset, asset_id)
        if asset is None:
            click.echo(f"{asset_id}: not found")
            continue
        generation = asset.compile_generation
        db.session.rollback()
        click.echo(f"{asset_id}: {compile_asset(asset_id, generation)}")


@arcards_cli.command("reap-stale")
def reap_stale():
    """Fail compilations whose marker outlived COMPILE_TIMEOUT_SECONDS."""
    click.echo(f"Reaped {reap_stale_compilations()} stale compilation(s).")
