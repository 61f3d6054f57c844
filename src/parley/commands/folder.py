"""Folder commands for parley."""

import click

from parley.core.errors import ParleyError
from parley.core.registry import SessionRegistry
from parley.core.state import load_all, load_folders


@click.group()
def folder() -> None:
    """Group sessions into folders."""
    pass


@folder.command("create")
@click.argument("name")
@click.option(
    "--cwd",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Default working directory for sessions created in this folder",
)
def create_folder(name: str, cwd: str | None) -> None:
    """Create a folder and print its ID."""
    created = SessionRegistry().create_folder(name, default_cwd=cwd)
    click.echo(created.id)


@folder.command("list")
def list_folders() -> None:
    """List folders with their session counts."""
    folders = load_folders()
    if not folders:
        click.echo("No folders")
        return

    counts: dict[str, int] = {}
    for session in load_all():
        if session.folder_id:
            counts[session.folder_id] = counts.get(session.folder_id, 0) + 1

    for f in folders:
        line = f"{f.id}  {f.name}  ({counts.get(f.id, 0)} sessions)"
        if f.default_cwd:
            line += f"  {f.default_cwd}"
        click.echo(line)


@folder.command("delete")
@click.argument("folder_id")
def delete_folder(folder_id: str) -> None:
    """Delete a folder. Its sessions are kept, outside any folder."""
    try:
        SessionRegistry().delete_folder(folder_id)
    except ParleyError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Deleted folder {folder_id}")
