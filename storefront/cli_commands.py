"""
Flask CLI commands for store maintenance.

Commands:
- flask init-db: Create the local store tables
- flask purge-carts: Delete every persisted cart snapshot
"""
import click
from sqlalchemy.exc import SQLAlchemyError

from storefront.database import create_all
from storefront.services.store_service import get_stores


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create the local store tables."""
        try:
            create_all()
        except SQLAlchemyError as e:
            click.echo(click.style(f'❌ Could not create tables: {e}', fg='red'))
            raise SystemExit(1)
        click.echo(click.style('✅ Local store tables ready', fg='green', bold=True))

    @app.cli.command('purge-carts')
    @click.option('--yes', is_flag=True, help='Do not ask for confirmation')
    def purge_carts(yes):
        """Delete every persisted cart snapshot."""
        prefix = f"{app.config.get('CART_STORAGE_KEY', 'cart')}:"
        if not yes and not click.confirm(f'Delete all stored carts ({prefix}*)?'):
            click.echo('Aborted.')
            return

        local_store = get_stores(app)['local']
        try:
            deleted = local_store.delete_prefix(prefix)
        except SQLAlchemyError as e:
            click.echo(click.style(f'❌ Purge failed: {e}', fg='red'))
            raise SystemExit(1)
        click.echo(click.style(f'✅ {deleted} carts deleted', fg='green'))
