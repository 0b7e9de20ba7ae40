"""
Flask CLI commands.

Commands:
- flask init-db: Create the database tables
- flask orphan-documents: List documents still pointing at a temporary id
"""

import click
from estimator.database import create_all, get_session
from estimator.services.document_service import find_orphaned_documents


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create all tables."""
        create_all()
        click.echo(click.style('✅ Database tables created', fg='green'))

    @app.cli.command('orphan-documents')
    @click.option('--fail', is_flag=True, help='Exit with status 1 when orphans exist')
    def orphan_documents(fail):
        """List documents whose reference was never reconciled."""
        orphans = find_orphaned_documents(get_session())

        if not orphans:
            click.echo(click.style('✅ No orphaned documents', fg='green'))
            return

        click.echo(click.style(f'⚠️  {len(orphans)} document(s) still point at a temporary id:', fg='yellow'))
        for document in orphans:
            click.echo(
                f'   {document.document_id}  {document.entity_type:<13} '
                f'{document.entity_id}  {document.storage_path}'
            )

        if fail:
            raise SystemExit(1)
