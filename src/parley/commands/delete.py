"""Delete command for parley."""

import click

from parley.core.errors import ParleyError
from parley.core.registry import SessionRegistry
from parley.core.state import resolve_session_id


@click.command()
@click.argument("session_id")
def delete(session_id: str) -> None:
    """Delete a session and its history.

    SESSION_ID is the full ID or a unique prefix of it.
    """
    resolved_id = resolve_session_id(session_id)
    if resolved_id is None:
        click.echo(f"Session {session_id} not found", err=True)
        raise SystemExit(1)

    try:
        SessionRegistry().delete(resolved_id)
    except ParleyError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Deleted session {resolved_id}")
