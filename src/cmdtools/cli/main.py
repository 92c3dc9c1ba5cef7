"""CLI entrypoints for cmdtools."""

from __future__ import annotations

from pathlib import Path

import typer

from cmdtools.config import ConfigError, load_config, update_execution
from cmdtools.execution.base import (
    ExecConfig,
    ExecStreamHandler,
    ExecutionConfigError,
    RedirectMode,
)
from cmdtools.execution.local_exec import LocalExecutor
from cmdtools.util.logging import configure_logging

app = typer.Typer(help="Run external commands with captured output and timeouts.")


class EchoStreamHandler(ExecStreamHandler):
    """Echo each stdout line as soon as the child emits it."""

    def on_output_line(self, line: str) -> None:
        typer.echo(line)


@app.callback()
def main(
    ctx: typer.Context,
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Logging level (e.g., DEBUG, INFO, WARNING). Overrides the config file.",
    ),
) -> None:
    """Configure CLI-level options."""

    ctx.obj = {"log_level": log_level}


@app.command("run", context_settings={"allow_interspersed_args": False})
def run_command(
    ctx: typer.Context,
    command: list[str] = typer.Argument(..., help="Command and its arguments."),
    config_path: Path | None = typer.Option(
        None, "--config", "-c", help="Config file or directory containing one."
    ),
    cwd: Path | None = typer.Option(None, "--cwd", help="Working directory."),
    timeout: float | None = typer.Option(None, "--timeout", "-t", help="Timeout in seconds."),
    env: list[str] | None = typer.Option(None, "--env", "-e", help="KEY=VALUE override."),
    omit: bool = typer.Option(False, "--omit", help="Discard all output."),
    stream: bool = typer.Option(False, "--stream", help="Print stdout lines as they arrive."),
) -> None:
    """Run a command, capture its output and exit with its exit code."""

    try:
        extra: dict[str, object] = {"redirect": RedirectMode.OMIT} if omit else {}
        exec_config = _prepare(ctx, config_path, cwd=cwd, timeout=timeout, env=env, **extra)
        result = LocalExecutor().run(
            list(command),
            exec_config,
            stream_handler=EchoStreamHandler() if stream else None,
        )
    except (ConfigError, ExecutionConfigError) as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1) from exc

    if result.out_msg:
        typer.echo(result.out_msg)
    if result.error_msg:
        typer.echo(result.error_msg, err=True)
    raise typer.Exit(code=_exit_status(result.exit_code))


@app.command("run-sync", context_settings={"allow_interspersed_args": False})
def run_sync_command(
    ctx: typer.Context,
    command: list[str] = typer.Argument(..., help="Command and its arguments."),
    config_path: Path | None = typer.Option(
        None, "--config", "-c", help="Config file or directory containing one."
    ),
    cwd: Path | None = typer.Option(None, "--cwd", help="Working directory."),
    timeout: float | None = typer.Option(None, "--timeout", "-t", help="Timeout in seconds."),
    env: list[str] | None = typer.Option(None, "--env", "-e", help="KEY=VALUE override."),
    output_file: Path | None = typer.Option(None, "--out", help="File receiving stdout."),
    error_file: Path | None = typer.Option(None, "--err", help="File receiving stderr."),
) -> None:
    """Run a command with stdout and stderr redirected to files."""

    try:
        extra: dict[str, object] = {}
        if output_file is not None:
            extra["output_file"] = output_file
        if error_file is not None:
            extra["error_file"] = error_file
        exec_config = _prepare(ctx, config_path, cwd=cwd, timeout=timeout, env=env, **extra)
        status = LocalExecutor().execute_sync(list(command), exec_config)
    except (ConfigError, ExecutionConfigError) as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1) from exc

    typer.echo(f"Exit status: {status}")
    raise typer.Exit(code=_exit_status(status))


@app.command("spawn", context_settings={"allow_interspersed_args": False})
def spawn_command(
    ctx: typer.Context,
    command: list[str] = typer.Argument(..., help="Command and its arguments."),
    cwd: Path = typer.Option(Path("."), "--cwd", help="Working directory."),
    env: list[str] | None = typer.Option(None, "--env", "-e", help="KEY=VALUE override."),
) -> None:
    """Start a command without waiting for it."""

    configure_logging((ctx.obj or {}).get("log_level") or "INFO", force=True)
    try:
        process = LocalExecutor().spawn(list(command), working_dir=cwd, env=parse_env(env))
    except (OSError, ValueError) as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1) from exc
    typer.echo(f"Started process {process.pid}")


def parse_env(pairs: list[str] | None) -> dict[str, str]:
    """Parse ``KEY=VALUE`` pairs into an environment mapping."""

    env: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigError(f"Environment override must look like KEY=VALUE: {pair!r}")
        env[key] = value
    return env


def _prepare(
    ctx: typer.Context,
    config_path: Path | None,
    *,
    cwd: Path | None,
    timeout: float | None,
    env: list[str] | None,
    **extra: object,
) -> ExecConfig:
    config = load_config(config_path)
    configure_logging((ctx.obj or {}).get("log_level") or config.log_level, force=True)

    changes: dict[str, object] = dict(extra)
    if cwd is not None:
        changes["working_dir"] = cwd
    if timeout is not None:
        if timeout <= 0:
            raise ConfigError("Timeout must be positive.")
        changes["timeout_s"] = timeout
    overrides = parse_env(env)
    if overrides:
        changes["env"] = {**config.execution.env, **overrides}
    return update_execution(config, **changes).execution


def _exit_status(exit_code: int) -> int:
    return exit_code if exit_code >= 0 else 1
