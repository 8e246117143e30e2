"""
Flask CLI commands for pricing maintenance.

Commands:
- flask init-db: Create all tables
- flask expire-reservations: Release pending promotion reservations past their window
- flask clear-catalog-cache: Invalidate cached promotion/combo rows
"""

import click
from datetime import timedelta

from storefront.database import create_all, get_session


def init_cli_commands(app):
    """Register CLI commands with Flask app."""
    
    @app.cli.command('init-db')
    def init_db_command():
        """Create every table known to the models."""
        create_all()
        click.echo(click.style('Tablas creadas.', fg='green'))
    
    @app.cli.command('expire-reservations')
    def expire_reservations():
        """Release pending promotion reservations whose window has passed."""
        from storefront.blueprints.metrics import reservations_expired_total
        from storefront.services.usage_ledger_service import SqlUsageLedger
        
        db_session = get_session()
        ledger = SqlUsageLedger(
            db_session,
            reservation_ttl=timedelta(seconds=app.config.get('RESERVATION_TTL_SECONDS', 900))
        )
        try:
            expired = ledger.expire_stale_reservations()
        except Exception as e:
            db_session.rollback()
            click.echo(click.style(f'Error al expirar reservas: {str(e)}', fg='red'))
            raise SystemExit(1)
        
        reservations_expired_total.inc(expired)
        click.echo(click.style(f'{expired} reservas expiradas.', fg='green'))
    
    @app.cli.command('clear-catalog-cache')
    def clear_catalog_cache():
        """Drop cached promotion and combo rows after editing them in the database."""
        from storefront.services.catalog_service import invalidate_catalog_cache
        
        deleted = invalidate_catalog_cache()
        click.echo(click.style(f'{deleted} claves de catálogo eliminadas.', fg='green'))
