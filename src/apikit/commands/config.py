"""Config commands -- view the effective configuration.

Provides the ``apikit config`` sub-command group.  ``show`` prints the
configuration after precedence resolution (flags are not involved here, so
environment variables over the global config file over defaults).
"""

from __future__ import annotations

import typer

from apikit.exceptions import ConfigError
from apikit.output import error, get_output, info

config_app = typer.Typer(no_args_is_help=True)


@config_app.command("show")
def config_show() -> None:
    """Show the effective configuration.

    Example::

        apikit config show
        apikit --json config show
    """
    from apikit.config import global_config_path, resolve_config

    try:
        config = resolve_config()
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    info(f"Config file: {global_config_path()}")
    get_output().format_response(config.model_dump(mode="json"))


@config_app.command("path")
def config_path() -> None:
    """Print the path of the global config file."""
    from apikit.config import global_config_path

    get_output().print_data(str(global_config_path()))
