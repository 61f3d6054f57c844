"""Top command - launch the parley TUI."""

import click


@click.command()
def top() -> None:
    """Launch the parley TUI.

    Shows all sessions grouped by folder and auto-refreshes on changes.
    """
    from parley.tui.app import ParleyApp

    app = ParleyApp()
    app.run()
