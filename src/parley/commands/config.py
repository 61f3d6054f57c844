"""Config commands for parley."""

import click

from parley.core.config import SETTING_KEYS, read_config, set_setting


@click.group()
def config() -> None:
    """Read and change settings in ~/.parley/config.json."""
    pass


@config.command("get")
@click.argument("key", required=False)
def get(key: str | None) -> None:
    """Print one setting, or every setting when KEY is omitted."""
    settings = read_config()
    if key is None:
        for name in sorted(settings):
            click.echo(f"{name}={settings[name]}")
        return

    if key not in SETTING_KEYS:
        click.echo(f"Unknown setting: {key}", err=True)
        raise SystemExit(1)
    value = settings.get(key)
    if value is not None:
        click.echo(value)


@config.command("set")
@click.argument("key")
@click.argument("value", required=False)
def set_(key: str, value: str | None) -> None:
    """Set KEY to VALUE (omit VALUE to remove the setting).

    Keys: default_model, default_permission_mode, default_cwd, agent_path,
    log_level, log_file.
    """
    try:
        set_setting(key, value)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
