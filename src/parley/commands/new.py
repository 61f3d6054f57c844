"""New command for parley.

Creates a session without starting the agent.
"""

import click

from parley.core.errors import ParleyError
from parley.core.registry import SessionRegistry


@click.command()
@click.option(
    "--cwd",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Working directory for the agent (default: folder or config default)",
)
@click.option("--title", default=None, help="Session title")
@click.option("--folder", "folder_id", default=None, help="Folder ID to create the session in")
def new(cwd: str | None, title: str | None, folder_id: str | None) -> None:
    """Create a new session and make it active.

    Prints the new session's ID.

    Examples:

        parley new

        parley new --cwd ~/src/app --title "Fix login"
    """
    try:
        session = SessionRegistry().create(cwd=cwd, title=title, folder_id=folder_id)
    except ParleyError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(session.id)
