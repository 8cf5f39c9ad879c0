from __future__ import annotations

import asyncio
import json
import sys
from contextlib import asynccontextmanager
from typing import Any, NoReturn

import click
import typer

from bridge_cli import __version__
from bridge_cli.config import ConfigError, apply_env, find_config_path, load_config_dict


def run(argv: list[str]) -> int:
    from bridge_core.logging_utils import configure_logging
    from bridge_hub import config as hub_config

    app = typer.Typer(
        add_completion=False,
        help="Slack <-> LLM bridge",
        invoke_without_command=True,
        no_args_is_help=True,
    )

    def _die(msg: str, code: int = 2) -> NoReturn:
        typer.echo(f"ERROR: {msg}", err=True)
        raise typer.Exit(code=code)

    def _load(ctx: typer.Context, *, strict: bool = True) -> hub_config.BridgeConfig:
        try:
            path = find_config_path(ctx.obj.get("config"))
            if path is not None:
                apply_env(load_config_dict(path))
            cfg = hub_config.load_config(ctx.obj.get("env_file"))
            if strict:
                hub_config.validate_config(cfg)
            return cfg
        except (ConfigError, hub_config.ConfigError) as e:
            _die(str(e), code=2)

    @app.callback()
    def _root(
        ctx: typer.Context,
        config: str | None = typer.Option(None, "--config", help="Path to config YAML"),
        env_file: str | None = typer.Option(None, "--env-file", help="dotenv file to load (default .env)"),
        verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase log verbosity"),
        version: bool = typer.Option(False, "--version", help="Print version and exit"),
    ) -> None:
        if version:
            typer.echo(__version__)
            raise typer.Exit(code=0)
        configure_logging(verbose)
        ctx.obj = {"config": config, "env_file": env_file, "verbose": verbose}

    # ---- config ----
    cfg_app = typer.Typer(help="Configuration management")
    app.add_typer(cfg_app, name="config")

    @cfg_app.command("path")
    def cfg_path(ctx: typer.Context) -> None:
        try:
            p = find_config_path(ctx.obj.get("config"))
        except ConfigError as e:
            _die(str(e))
        if p is None:
            raise typer.Exit(code=1)
        typer.echo(str(p))

    @cfg_app.command("show")
    def cfg_show(ctx: typer.Context) -> None:
        cfg = _load(ctx, strict=False)
        typer.echo(json.dumps(cfg.redacted(), indent=2, sort_keys=True, default=str))

    @cfg_app.command("validate")
    def cfg_validate(ctx: typer.Context) -> None:
        cfg = _load(ctx, strict=False)
        missing = cfg.missing_required()
        if missing:
            _die(f"Missing required configuration: {', '.join(missing)}", code=1)
        typer.echo("ok")

    # ---- offline helpers ----
    @app.command("preview")
    def _preview(
        text: str | None = typer.Argument(None, help="DSL text; read from stdin when omitted"),
        color: str | None = typer.Option(None, "--color", help="Default accent color"),
    ) -> None:
        """Render DSL text to the Slack payload that would be posted."""
        from bridge_core import blocks, dsl

        source = text if text is not None else sys.stdin.read()
        payload = blocks.assemble(dsl.parse(source), color)
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))

    @app.command("tools")
    def _tools(
        as_json: bool = typer.Option(False, "--json", help="Print the function-calling schema"),
    ) -> None:
        """List the tools offered to the model."""
        from bridge_hub.tools.registry import get_registry

        registry = get_registry()
        if as_json:
            typer.echo(json.dumps(registry.openai_tools(), indent=2))
            return
        for schema in registry.schema_for_model():
            typer.echo(f"{schema['name']}: {schema['description']}")

    # ---- services ----
    @app.command("run")
    def _run(ctx: typer.Context) -> None:
        """Connect over Socket Mode and serve until interrupted."""
        from bridge_hub.service import build_bridge
        from bridge_hub.socket_mode import SocketModeClient, SocketModeConfig

        cfg = _load(ctx)
        if not cfg.slack_app_token:
            _die("SLACK_APP_TOKEN is required for Socket Mode (use 'serve' for the HTTP Events API)")

        async def _main() -> None:
            bridge = build_bridge(cfg)
            client = SocketModeClient(SocketModeConfig(app_token=cfg.slack_app_token or ""), bridge.slack, bridge.router)
            await bridge.start()
            try:
                await client.run()
            finally:
                await client.stop()
                await bridge.aclose()

        try:
            asyncio.run(_main())
        except KeyboardInterrupt:
            typer.echo("Stopped.")

    @app.command("serve")
    def _serve(
        ctx: typer.Context,
        host: str = typer.Option("0.0.0.0", "--host"),
        port: int = typer.Option(3000, "--port"),
    ) -> None:
        """Serve the HTTP Events API endpoints with uvicorn."""
        import uvicorn

        from bridge_hub.http_app import create_app
        from bridge_hub.service import build_bridge

        cfg = _load(ctx)
        if not cfg.slack_signing_secret:
            _die("SLACK_SIGNING_SECRET is required for the HTTP Events API")
        bridge = build_bridge(cfg)

        @asynccontextmanager
        async def lifespan(_app: Any):
            await bridge.start()
            yield
            await bridge.aclose()

        uvicorn.run(create_app(bridge.router, cfg.slack_signing_secret, lifespan=lifespan), host=host, port=port)

    # Execute without letting Click `sys.exit()`.
    command = typer.main.get_command(app)
    try:
        rv = command.main(args=argv, prog_name="slack-llm-bridge", standalone_mode=False)
        # With standalone_mode=False, Exit becomes an integer return value.
        if isinstance(rv, int):
            return int(rv)
        return 0
    except click.ClickException as e:
        e.show()
        return int(e.exit_code)
    except SystemExit as e:  # pragma: no cover
        return int(e.code or 0)
