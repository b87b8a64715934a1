"""Command-line interface for Switchyard."""

from __future__ import annotations

import asyncio
import sys
from contextlib import aclosing
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from switchyard import __version__
from switchyard.core.config import set_api_key
from switchyard.core.credentials import CredentialManager
from switchyard.core.errors import SwitchyardError
from switchyard.core.messages import CanonicalRequest
from switchyard.core.model_switcher import ModelSwitcher
from switchyard.core.providers import GeneratorFactory
from switchyard.core.runtime_override import get_state_manager
from switchyard.core.session import Session
from switchyard.utils.log import enable_file_logging, get_logger

console = Console()
logger = get_logger()

T = TypeVar("T")


def _notify(message: str) -> None:
    console.print(f"[cyan]{escape(message)}[/cyan]")


def _credentials() -> CredentialManager:
    return CredentialManager(notify=_notify)


def _switcher(credentials: Optional[CredentialManager] = None) -> ModelSwitcher:
    return ModelSwitcher(credentials=credentials or _credentials())


def _run(awaitable: Awaitable[T]) -> T:
    try:
        return asyncio.run(awaitable)  # type: ignore[arg-type]
    except SwitchyardError as exc:
        logger.debug("[cli] Command failed: %s: %s", type(exc).__name__, exc)
        raise click.ClickException(str(exc)) from exc
    except ValueError as exc:
        logger.debug("[cli] Invalid request: %s", exc)
        raise click.ClickException(f"Invalid request: {exc}") from exc


@click.group()
@click.version_option(version=__version__)
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), help="Write debug logs to a file")
def cli(log_file: Optional[Path]) -> None:
    """Route prompts to local, OAuth and CLI-backed model providers."""
    if log_file:
        enable_file_logging(log_file)


@cli.group(name="models")
def models_group() -> None:
    """Manage model profiles."""


@models_group.command(name="list")
def models_list_cmd() -> None:
    """List model profiles."""
    switcher = _switcher()
    profiles = switcher.list()
    if not profiles:
        console.print("[yellow]No model profiles found. Add one with `switchyard models add`.[/yellow]")
        return
    current = switcher.current()
    table = Table(title="Model profiles")
    table.add_column("")
    table.add_column("Nickname", style="bold")
    table.add_column("Name")
    table.add_column("Model")
    table.add_column("Provider")
    table.add_column("Last used")
    for profile in profiles:
        marker = "*" if current and profile.nickname == current.nickname else ""
        last_used = profile.last_used_timestamp.strftime("%Y-%m-%d %H:%M") if profile.last_used_timestamp else "-"
        table.add_row(
            marker,
            profile.nickname,
            escape(profile.display_name),
            escape(profile.canonical_model_id),
            profile.provider_name,
            last_used,
        )
    console.print(table)


@models_group.command(name="current")
def models_current_cmd() -> None:
    """Show the current model profile."""
    profile = _switcher().current()
    if profile is None:
        console.print("[yellow]No current model.[/yellow]")
        return
    console.print(
        f"[bold]{profile.nickname}[/bold] {escape(profile.display_name)} "
        f"([dim]{escape(profile.canonical_model_id)} via {profile.provider_name}[/dim])"
    )


@models_group.command(name="add")
@click.argument("nickname")
@click.argument("model_id")
@click.argument("provider_name")
@click.option("--endpoint", help="Endpoint override for this profile")
@click.option("--display-name", help="Human-readable name")
def models_add_cmd(
    nickname: str,
    model_id: str,
    provider_name: str,
    endpoint: Optional[str],
    display_name: Optional[str],
) -> None:
    """Add a model profile."""
    result = _switcher().add(nickname, model_id, provider_name, endpoint, display_name=display_name)
    if not result.success:
        raise click.ClickException(result.error or "could not add profile")
    console.print(f"[green]Added {nickname}[/green]")


@models_group.command(name="switch")
@click.argument("nickname")
def models_switch_cmd(nickname: str) -> None:
    """Switch to a model profile."""
    result = _run(_switcher().switch(nickname))
    console.print(
        f"[green]Switched to {escape(result.display_name)} ({result.provider_name})[/green]"
    )


@models_group.command(name="remove")
@click.argument("nickname")
def models_remove_cmd(nickname: str) -> None:
    """Remove a model profile."""
    if not _switcher().remove(nickname):
        raise click.ClickException(f"No profile named '{nickname}'")
    console.print(f"Removed {nickname}")


@models_group.command(name="init")
def models_init_cmd() -> None:
    """Create a profile from OPENAI_MODEL / OPENAI_BASE_URL."""
    result = _switcher().init_from_environment()
    if not result.success or result.profile is None:
        raise click.ClickException(result.error or "could not detect a model")
    profile = result.profile
    console.print(
        f"[green]Detected {escape(profile.canonical_model_id)} on {profile.provider_name} "
        f"as '{profile.nickname}'[/green]"
    )


@cli.command(name="providers")
@click.option("--check", is_flag=True, help="Probe local servers")
def providers_cmd(check: bool) -> None:
    """List known providers."""
    registry = _credentials().resolver.registry
    table = Table(title="Providers")
    table.add_column("Name", style="bold")
    table.add_column("Protocol")
    table.add_column("Auth")
    table.add_column("Endpoint")
    if check:
        table.add_column("Status")
    for descriptor in registry:
        row = [
            descriptor.name,
            descriptor.protocol_family.value,
            descriptor.auth_scheme.value,
            descriptor.base_endpoint or "-",
        ]
        if check:
            healthy = _run(registry.check_health(descriptor.name))
            row.append("[green]ok[/green]" if healthy else "[red]unreachable[/red]")
        table.add_row(*row)
    console.print(table)


@cli.command(name="login")
@click.argument("provider_name")
def login_cmd(provider_name: str) -> None:
    """Sign in to an OAuth provider with the device flow."""
    _run(_credentials().login(provider_name))
    console.print(f"[green]Signed in to {provider_name}[/green]")


@cli.command(name="logout")
@click.argument("provider_name")
def logout_cmd(provider_name: str) -> None:
    """Delete the stored credential for a provider."""
    try:
        removed = _credentials().logout(provider_name)
    except SwitchyardError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print("Signed out" if removed else "[dim]No stored credential[/dim]")


@cli.command(name="set-key")
@click.argument("provider_name")
@click.option("--key", prompt=True, hide_input=True, help="API key")
def set_key_cmd(provider_name: str, key: str) -> None:
    """Store an API key for a static-key provider."""
    if provider_name not in _credentials().resolver.registry:
        raise click.ClickException(f"Unknown provider '{provider_name}'")
    set_api_key(provider_name, key.strip())
    console.print(f"[green]Saved key for {provider_name}[/green]")


async def _ask(request: CanonicalRequest, nickname: Optional[str], stream: bool) -> Any:
    credentials = _credentials()
    switcher = _switcher(credentials)
    if nickname:
        await switcher.switch(nickname)
    else:
        profile = switcher.current()
        if profile is not None and get_state_manager().current() is None:
            get_state_manager().set_override(
                profile.provider_name, profile.canonical_model_id, profile.endpoint_override
            )
    session = Session(GeneratorFactory(resolver=credentials.resolver, credentials=credentials))
    if not stream:
        response = await session.send(request)
        console.print(response.text, markup=False, highlight=False)
        return response
    terminal = None
    async with aclosing(session.stream(request)) as chunks:
        async for chunk in chunks:
            if chunk.is_terminal:
                terminal = chunk
            else:
                console.print(chunk.text, end="", markup=False, highlight=False)
    console.print()
    return terminal


@cli.command(name="ask")
@click.argument("prompt")
@click.option("--system", "system_prompt", help="System prompt")
@click.option("--max-tokens", type=int, help="Maximum output tokens")
@click.option("--model", "nickname", help="Switch to this profile first")
@click.option("--stream", is_flag=True, help="Stream the answer")
@click.option("--usage", "show_usage", is_flag=True, help="Print token usage")
def ask_cmd(
    prompt: str,
    system_prompt: Optional[str],
    max_tokens: Optional[int],
    nickname: Optional[str],
    stream: bool,
    show_usage: bool,
) -> None:
    """Send one prompt to the current model."""
    request = CanonicalRequest.from_prompt(prompt, system=system_prompt, max_tokens=max_tokens)
    response = _run(_ask(request, nickname, stream))
    if show_usage and response is not None and response.usage is not None:
        usage = response.usage
        label = " (estimated)" if usage.estimated else ""
        console.print(f"[dim]tokens: {usage.input_tokens} in / {usage.output_tokens} out{label}[/dim]")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
