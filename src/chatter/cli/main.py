"""
Main CLI application for Chatter.

Provides the interactive chat, one-shot queries and configuration
management commands.
"""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import click

from chatter import __version__
from chatter.cli.commands import ChatCommandHandler, format_tool_result
from chatter.lib.config import AgentConfig, ConfigurationError, initialize_config
from chatter.lib.logging_config import setup_logging, get_audit_logger
from chatter.lib.observability import initialize_telemetry, shutdown_telemetry
from chatter.models.conversation_session import ConversationSession, ModelProvider
from chatter.models.tool_call import ToolCall, ToolResult
from chatter.models.turn_state import AbortReason, TurnRecord
from chatter.services.adapter_factory import create_adapter
from chatter.services.agent_orchestrator import AgentOrchestrator
from chatter.services.base_provider_adapter import BaseProviderAdapter, ProviderError
from chatter.services.permission_guard import PermissionGuard
from chatter.services.session_store import SessionPersistenceError, SessionStore
from chatter.services.tool_registry import ToolRegistry


logger = logging.getLogger("chatter.cli")
audit_logger = get_audit_logger()


def build_permission_guard(agent_config: AgentConfig) -> PermissionGuard:
    """Guard seeded from configuration.

    Forbidden defaults written for another platform are skipped.
    """
    base_directory = Path(agent_config.working_directory or os.getcwd()).expanduser()
    allowed = list(agent_config.allowed_paths)
    if agent_config.allow_working_directory:
        allowed.insert(0, str(base_directory))
    forbidden = [path for path in agent_config.forbidden_paths if Path(path).expanduser().is_absolute()]
    return PermissionGuard(allowed=allowed, forbidden=forbidden, base_directory=base_directory)


class ChatterApplication:
    """Main Chatter application manager."""

    def __init__(self, config_path: Optional[str] = None, debug: bool = False):
        self.config_path = config_path
        self.debug = debug
        self.config_manager = None
        self.adapter: Optional[BaseProviderAdapter] = None
        self.registry: Optional[ToolRegistry] = None
        self.orchestrator: Optional[AgentOrchestrator] = None
        self.store: Optional[SessionStore] = None
        self.session: Optional[ConversationSession] = None

    async def initialize(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        agent: Optional[bool] = None
    ) -> None:
        """Initialize configuration, logging, tracing and services."""
        try:
            self.config_manager = initialize_config(self.config_path)
            config = self.config_manager.get_config()
            if self.debug:
                config.debug = True
                config.logging.level = "DEBUG"

            setup_logging(config.logging.model_dump())
            initialize_telemetry(config.observability.model_dump())

            for warning in self.config_manager.validate_config():
                logger.warning(warning)

            guard = build_permission_guard(config.agent)
            self.registry = ToolRegistry(
                guard,
                read_cap_bytes=config.agent.read_cap_bytes,
                max_file_size=config.agent.max_file_size,
                allowed_extensions=config.agent.allowed_extensions,
                auto_backup=config.agent.auto_backup,
                dry_run=config.agent.dry_run
            )

            selected_provider = ModelProvider(provider or config.provider)
            if model is None and provider and selected_provider != ModelProvider(config.provider):
                raise ConfigurationError(
                    f"Provider {selected_provider.value} differs from the configured provider; pass --model as well"
                )
            self.adapter = create_adapter(config, selected_provider, model)
            await self.adapter.refresh_capabilities()

            self.orchestrator = AgentOrchestrator(
                self.adapter,
                self.registry,
                max_tool_iterations=config.agent.max_tool_iterations,
                agent_enabled=config.agent.enabled if agent is None else agent
            )
            self.store = SessionStore(config.sessions_path)
            self.session = ConversationSession(
                model=self.adapter.model,
                provider=selected_provider,
                system_instruction=system_instruction or config.default_system_instruction
            )

            audit_logger.log_session_event(
                event_type="system_startup",
                session_id=self.session.id,
                action="initialize",
                result="success",
                metadata={
                    "config_path": config.config_file_path,
                    "provider": selected_provider.value,
                    "model": self.adapter.model,
                    "agent_enabled": self.orchestrator.agent_enabled
                }
            )
            logger.info("Chatter application initialized")

        except (ConfigurationError, ProviderError) as e:
            logger.error(f"Failed to initialize Chatter: {e}")
            raise

    async def shutdown(self) -> None:
        """Release the HTTP client and flush telemetry."""
        if self.adapter:
            await self.adapter.close()
        shutdown_telemetry()
        audit_logger.log_session_event(
            event_type="system_shutdown",
            session_id=self.session.id if self.session else "system",
            action="shutdown",
            result="success"
        )

    async def run_turn(self, text: str) -> TurnRecord:
        """Run a turn with streaming output; Ctrl-C cancels it."""
        loop = asyncio.get_running_loop()
        handler_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self.orchestrator.cancel_turn)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not supported; Ctrl-C will not cancel turns")

        def on_text(delta: str) -> None:
            click.echo(delta, nl=False)

        def on_tool(call: ToolCall, result: ToolResult) -> None:
            click.echo()
            click.secho(format_tool_result(call, result), fg="cyan" if result.success else "red")

        click.secho(f"{self.session.model}: ", fg="green", bold=True, nl=False)
        try:
            record = await self.orchestrator.run_turn(self.session, text, on_text=on_text, on_tool=on_tool)
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)
        click.echo()

        if record.aborted:
            reason = AbortReason(record.abort_reason)
            if reason == AbortReason.CANCELLED:
                click.secho("[Turn cancelled]", fg="yellow")
            elif reason == AbortReason.ITERATION_LIMIT:
                click.secho(f"[Stopped] {record.error}", fg="yellow")
            else:
                click.secho(f"Error: {record.error}", fg="red", err=True)
        return record

    async def run_chat(self, load_session: Optional[str] = None, auto_save: bool = False) -> None:
        """Interactive read-eval loop."""
        if load_session:
            self.session = await self.store.load(load_session)
        commands = ChatCommandHandler(self.session, self.orchestrator, self.store)
        auto_save = auto_save or self.config_manager.get_config().auto_save

        click.secho(f"Chatter {__version__}", bold=True)
        click.echo(f"Provider: {self.adapter.provider_name}  Model: {self.session.model}")
        if self.orchestrator.agent_enabled:
            click.echo(f"Agent mode on. Tools: {', '.join(self.registry.available_tools())}")
        click.echo("Type /help for commands, /quit to exit.\n")

        while True:
            try:
                line = click.prompt("You", prompt_suffix="> ", default="", show_default=False)
            except click.exceptions.Abort:
                click.echo()
                break

            if not line.strip():
                continue

            if commands.is_command(line):
                result = await commands.handle(line)
                self.session = commands.session
                if result.output:
                    click.echo(result.output)
                if result.exit:
                    break
                continue

            await self.run_turn(line)

            if auto_save:
                try:
                    path = await self.store.save(self.session)
                    logger.debug(f"Auto-saved session to {path}")
                except SessionPersistenceError as e:
                    click.secho(f"Auto-save failed: {e}", fg="red", err=True)

    async def run_query(self, message: str) -> int:
        """Send one message and return the exit status."""
        record = await self.run_turn(message)
        return 0 if record.completed else 1


async def _run_app(app: ChatterApplication, coro_factory, **init_options):
    await app.initialize(**init_options)
    try:
        return await coro_factory()
    finally:
        await app.shutdown()


# CLI Commands

@click.group(invoke_without_command=True)
@click.option('--config', '-c', help='Configuration file path')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.version_option(__version__, prog_name="chatter")
@click.pass_context
def cli(ctx, config, debug):
    """Chatter: terminal chat with Gemini and Ollama models."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['debug'] = debug

    if ctx.invoked_subcommand is None:
        ctx.invoke(chat)


@cli.command()
@click.option('--model', '-m', help='Model to use')
@click.option('--provider', type=click.Choice([p.value for p in ModelProvider]), help='Model provider')
@click.option('--system', '-s', help='System instruction')
@click.option('--load-session', '-l', type=click.Path(), help='Session file to resume')
@click.option('--auto-save', '-a', is_flag=True, help='Save the session after every turn')
@click.option('--agent/--no-agent', default=None, help='Enable or disable agent mode')
@click.pass_context
def chat(ctx, model, provider, system, load_session, auto_save, agent):
    """Start an interactive chat session."""
    app = ChatterApplication(config_path=ctx.obj.get('config_path'), debug=ctx.obj.get('debug', False))
    try:
        asyncio.run(_run_app(
            app,
            lambda: app.run_chat(load_session=load_session, auto_save=auto_save),
            provider=provider,
            model=model,
            system_instruction=system,
            agent=agent
        ))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except (ProviderError, SessionPersistenceError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('message')
@click.option('--model', '-m', help='Model to use')
@click.option('--provider', type=click.Choice([p.value for p in ModelProvider]), help='Model provider')
@click.option('--system', '-s', help='System instruction')
@click.option('--agent/--no-agent', default=None, help='Enable or disable agent mode')
@click.pass_context
def query(ctx, message, model, provider, system, agent):
    """Send a single message and print the response."""
    app = ChatterApplication(config_path=ctx.obj.get('config_path'), debug=ctx.obj.get('debug', False))
    try:
        exit_code = asyncio.run(_run_app(
            app,
            lambda: app.run_query(message),
            provider=provider,
            model=model,
            system_instruction=system,
            agent=agent
        ))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except ProviderError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    sys.exit(exit_code)


# Configuration Commands

@cli.group()
@click.pass_context
def config(ctx):
    """Configuration management commands."""
    pass


@config.command('show')
@click.pass_context
def config_show(ctx):
    """Show the current configuration."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        for line in config_manager.display():
            click.echo(line)

        warnings = config_manager.validate_config()
        if warnings:
            click.echo("\nWarnings:")
            for warning in warnings:
                click.echo(f"  - {warning}")

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@config.command('set-api-key')
@click.argument('api_key', required=False)
@click.pass_context
def config_set_api_key(ctx, api_key):
    """Store the Gemini API key in the configuration file."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        if not api_key:
            api_key = click.prompt("Gemini API key", hide_input=True)
        config_manager.set_api_key(api_key)
        click.echo(f"API key saved to {config_manager.get_config().config_file_path}")

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@config.command('reset')
@click.confirmation_option(prompt='Reset the configuration to defaults?')
@click.pass_context
def config_reset(ctx):
    """Reset the configuration file to defaults."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config_manager.reset_config()
        click.echo(f"Configuration reset: {config_manager.get_config().config_file_path}")

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == '__main__':
    main()
