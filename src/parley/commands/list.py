"""List command for parley."""

import click
import orjson

from parley.core.activity import format_context, format_cost
from parley.core.state import get_active_session_id, load_all


@click.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.option("--folder", "folder_id", default=None, help="Only sessions in this folder")
def list_sessions(as_json: bool, folder_id: str | None) -> None:
    """List sessions, most recently updated first.

    The active session is marked with '*'.
    """
    sessions = [s for s in load_all() if folder_id is None or s.folder_id == folder_id]

    if as_json:
        click.echo(orjson.dumps([s.to_dict() for s in sessions]).decode())
        return

    if not sessions:
        click.echo("No sessions")
        return

    active_id = get_active_session_id()
    for session in sessions:
        marker = "*" if session.id == active_id else " "
        click.echo(
            f"{marker} {session.id[:8]}  {session.state:<18} "
            f"{format_cost(session.metadata.total_cost_usd):>7}  "
            f"{format_context(session.metadata.context_tokens, session.metadata.context_limit):>4}  "
            f"{session.title}"
        )
