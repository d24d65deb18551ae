"""Built-in CLI sub-commands for apikit.

* :mod:`~apikit.commands.request` -- send one request through the pipeline.
* :mod:`~apikit.commands.cache` -- inspect and maintain a durable cache store.
* :mod:`~apikit.commands.config` -- view the effective configuration.

Multi-command groups export a :class:`typer.Typer` sub-application; single
commands export a plain callback registered on the root app.
"""
