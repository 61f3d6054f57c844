"""CLI entry point for parley.

Usage:
    parley                          # Launch the session overview TUI
    parley new --cwd ~/src/app      # Create a session
    parley send <id> "message"      # Run one turn and print its output
    parley show <id>                # Print a session's conversation
"""

import click

from parley.commands.config import config
from parley.commands.delete import delete
from parley.commands.folder import folder
from parley.commands.list import list_sessions
from parley.commands.new import new
from parley.commands.send import send
from parley.commands.show import show
from parley.commands.top import top
from parley.logging import setup_logging


@click.group(invoke_without_command=True)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    envvar="PARLEY_LOG_LEVEL",
    help="Log level (logs go to PARLEY_LOG or the terminal)",
)
@click.version_option(package_name="parley")
@click.pass_context
def main(ctx: click.Context, log_level: str | None) -> None:
    """Parley - drive Claude Code sessions from the terminal.

    Create sessions, send messages, answer permission prompts and
    questions, and watch every session's state at a glance.

    Running 'parley' without a subcommand launches the TUI.
    """
    setup_logging(level=log_level)

    if ctx.invoked_subcommand is not None:
        return

    ctx.invoke(top)


# Register commands
main.add_command(new)
main.add_command(list_sessions)
main.add_command(show)
main.add_command(send)
main.add_command(delete)
main.add_command(folder)
main.add_command(config)
main.add_command(top)
