import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from chatline.config import settings
from chatline.core.exceptions import ChatlineError
from chatline.core.logging import configure_logging
from chatline.schemas.messages import ContentType, Message
from chatline.schemas.sessions import ModelSelector, UploadRef
from chatline.services.events import ChatEvent
from chatline.services.tool_matcher import tool_call_views

console = Console()
cli_app = typer.Typer(name="chatline", help="Chat stream and session history client")


def _run_async(coro):
    """Run async code from sync CLI context."""
    return asyncio.run(coro)


def _client():
    from chatline.services.transport.http_client import ChatServerClient

    return ChatServerClient(
        base_url=settings.chatline_base_url,
        auth_token=settings.chatline_auth_token,
        connect_timeout=settings.chatline_http_connect_timeout,
        read_timeout=settings.chatline_http_read_timeout,
        request_timeout=settings.chatline_request_timeout,
    )


def _print_notice(data: dict) -> None:
    style = "red" if data.get("level") == "error" else "yellow"
    console.print(f"[{style}]{escape(data.get('message', ''))}[/{style}]")


def _print_message(message: Message) -> None:
    style = "cyan" if message.role == "user" else "green"
    header = f"[bold {style}]{message.role}[/bold {style}]"
    if message.timestamp:
        header += f" [dim]{message.timestamp}[/dim]"
    if message.status:
        header += f" [dim]({message.status.value})[/dim]"
    console.print(header)

    if message.attachment:
        console.print(f"  [magenta]{message.attachment.content_type.value}[/magenta] {escape(message.attachment.url)}")
    if message.thinking:
        console.print(f"  [dim italic]thinking: {escape(message.thinking)}[/dim italic]")
    for view in tool_call_views(message.tool_requests, message.tool_results):
        line = f"  [yellow]tool[/yellow] {escape(view.name)} ({view.status.value})"
        if view.text:
            line += f" {escape(view.text)}"
        console.print(line)
    if message.content:
        console.print(f"  {escape(message.content)}")


@cli_app.callback()
def _setup(
    log_level: str = typer.Option(settings.chatline_log_level, "--log-level", help="Log level name"),
):
    configure_logging(log_level)


@cli_app.command("replay")
def replay(
    path: Path = typer.Argument(help="JSON file with a session history payload", exists=True, dir_okay=False),
):
    """Rebuild a conversation from a saved history payload and print it."""
    from chatline.services.reconstructor import reconstruct

    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("data") or []
    if not isinstance(payload, list):
        console.print("[red]History payload must be a JSON array or an envelope with a data array.[/red]")
        raise typer.Exit(code=1)

    for message in reconstruct(payload):
        _print_message(message)


@cli_app.command("sessions")
def list_sessions():
    """List sessions on the chat server."""
    async def _list():
        client = _client()
        try:
            return await client.list_sessions()
        finally:
            await client.close()

    try:
        sessions = _run_async(_list())
    except ChatlineError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(code=1)

    if not sessions:
        console.print("[dim]No sessions found.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("Id", style="cyan")
    table.add_column("Title")
    table.add_column("Updated")
    for session in sessions:
        table.add_row(session.session_id, session.session_title, str(int(session.updated_at)))
    console.print(table)


@cli_app.command("history")
def history(
    session_id: str = typer.Argument(help="Session to load"),
):
    """Fetch a session's history and print the rebuilt conversation."""
    from chatline.services.chat_controller import ChatController

    async def _load():
        client = _client()
        controller = ChatController(client, client, client)
        controller.events.subscribe(ChatEvent.NOTICE, _print_notice)
        try:
            return await controller.select_session(session_id)
        finally:
            await controller.close()
            await client.close()

    for message in _run_async(_load()):
        _print_message(message)


@cli_app.command("chat")
def chat(
    prompt: str = typer.Argument(help="Prompt to send"),
    session_id: str = typer.Option(None, "--session", help="Existing session id (a new one is created otherwise)"),
    provider_id: str = typer.Option(None, "--provider", help="Model provider id"),
    model_name: str = typer.Option(None, "--model", help="Model name"),
    upload_id: str = typer.Option(None, "--upload-id", help="Id of an already uploaded file"),
    content_type: ContentType = typer.Option(ContentType.PDF, "--content-type", help="Content type of the upload"),
):
    """Send a prompt and print the streamed reply."""
    from chatline.services.chat_controller import ChatController
    from chatline.services.stream_assembler import StreamState

    async def _chat():
        client = _client()
        controller = ChatController(client, client, client)
        controller.events.subscribe(ChatEvent.NOTICE, _print_notice)
        shown = ""

        def _echo(messages: tuple[Message, ...]) -> None:
            nonlocal shown
            if not messages or messages[-1].role != "assistant":
                return
            content = messages[-1].content
            if len(content) > len(shown) and content.startswith(shown):
                console.print(content[len(shown):], end="", soft_wrap=True, highlight=False, markup=False)
                shown = content

        try:
            if session_id:
                await controller.select_session(session_id)
            if provider_id or model_name:
                controller.select_model(ModelSelector(provider_id=provider_id, model_name=model_name))
            else:
                await controller.load_models()
            upload = UploadRef(upload_id=upload_id, content_type=content_type) if upload_id else None

            unsubscribe = controller.store.subscribe(_echo)
            assembler = await controller.submit(prompt, upload)
            if assembler is None:
                return None
            state = await assembler.wait()
            unsubscribe()
            console.print()
            return state, controller.session_id
        finally:
            await controller.close()
            await client.close()

    result = _run_async(_chat())
    if result is None:
        console.print("[red]Could not start the chat stream.[/red]")
        raise typer.Exit(code=1)

    state, active_session = result
    console.print(f"[dim]session {active_session} · {state.value}[/dim]")
    if state == StreamState.ERROR:
        raise typer.Exit(code=1)


def main():
    cli_app()


if __name__ == "__main__":
    main()
