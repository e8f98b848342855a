"""
Relay 主入口 - 编排引擎的运维命令行
"""
import argparse
import asyncio
import json
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from config_loader import load_config
from core.errors import SessionNotFoundError
from core.runtime import Runtime, build_runtime
from core.types import Session
from mcp_client.client import sync_integrations


console = Console()


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    # SDK 的请求日志过于冗长
    for noisy in ("httpx", "anthropic", "openai", "mcp"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def render_session(session: Session) -> None:
    """打印 Session 概要"""
    table = Table(show_header=False, box=None)
    table.add_row("Session", session.id)
    table.add_row("User", session.user_id)
    table.add_row("Status", f"[bold]{session.status.value}[/bold]")
    table.add_row("Activations", str(session.execution_count))
    table.add_row("Messages", str(len(session.messages)))
    table.add_row("Tokens", str(session.tool_state.get("total_tokens", 0)))
    if session.thread_id:
        table.add_row("Thread", session.thread_id)
    console.print(table)

    if session.final_response:
        verification = session.final_response.get("verification") or {}
        console.print(Panel(
            Markdown(session.final_response.get("content") or ""),
            title="Final response",
            subtitle=f"verified={verification.get('achieved')} confidence={verification.get('confidence')}",
            border_style="green",
        ))
    if session.error:
        console.print(Panel(session.error, title="Error", border_style="red"))


async def cmd_submit(runtime: Runtime, args) -> int:
    session = await runtime.scheduler.start(
        args.user, args.input, thread_id=args.thread, provider=args.provider,
    )
    console.print(f"[green]✓ Session created:[/green] {session.id}")
    if not args.wait:
        return 0

    while True:
        await runtime.worker.run_once(timeout=1.0)
        session = await runtime.gateway.load_session(session.id)
        if session.is_terminal:
            break
    render_session(session)
    return 0 if session.status.value == "completed" else 1


async def cmd_worker(runtime: Runtime, args) -> int:
    console.print("[dim]Waiting for continuation messages (Ctrl+C to stop)...[/dim]")
    handled = 0
    while args.max_messages is None or handled < args.max_messages:
        session = await runtime.worker.run_once()
        if session is not None:
            handled += 1
            console.print(f"[dim]{session.id} -> {session.status.value}[/dim]")
        elif args.once:
            break
    return 0


async def cmd_status(runtime: Runtime, args) -> int:
    try:
        session = await runtime.gateway.load_session(args.session_id)
    except SessionNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        return 1
    render_session(session)
    return 0


async def cmd_events(runtime: Runtime, args) -> int:
    events = await runtime.gateway.events.list(args.session_id)
    if not events:
        console.print("[yellow]No events recorded[/yellow]")
        return 0
    table = Table(title=f"Events for {args.session_id}")
    table.add_column("Time", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Data")
    for event in events:
        data = json.dumps(event.data, ensure_ascii=False, default=str)
        table.add_row(event.created_at.strftime("%H:%M:%S"), event.type, data[:160])
    console.print(table)
    return 0


async def cmd_poll(runtime: Runtime, args) -> int:
    count = await runtime.scheduler.requeue_stalled(args.limit)
    console.print(f"[green]✓ Requeued {count} sessions[/green]")
    return 0


async def cmd_sync_integrations(runtime: Runtime, args) -> int:
    summary = await sync_integrations(runtime.integrations, args.user)
    if not summary:
        console.print("[yellow]No integrations configured for this user[/yellow]")
        return 0
    await runtime.save_discovered_tools()
    for name, result in summary.items():
        if "error" in result:
            console.print(f"[red]✗ {name}: {result['error']}[/red]")
        else:
            console.print(f"[green]✓ {name}: {len(result['tools'])} tools[/green]")
    return 0


COMMANDS = {
    "submit": cmd_submit,
    "worker": cmd_worker,
    "status": cmd_status,
    "events": cmd_events,
    "poll": cmd_poll,
    "sync-integrations": cmd_sync_integrations,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Relay - durable tool-calling orchestration')
    parser.add_argument('-c', '--config', default='config.yaml', help='Config file path')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    submit = sub.add_parser('submit', help='Create a session for a user request')
    submit.add_argument('input', help='User request')
    submit.add_argument('-u', '--user', default='local', help='User id')
    submit.add_argument('--provider', choices=['claude', 'openai', 'gemini'], help='LLM provider for this session')
    submit.add_argument('--thread', help='Existing conversation thread id')
    submit.add_argument('--wait', action='store_true', help='Process the session in this process until it finishes')

    worker = sub.add_parser('worker', help='Consume continuation messages')
    worker.add_argument('--once', action='store_true', help='Exit when the queue is empty')
    worker.add_argument('--max-messages', type=int, default=None)

    status = sub.add_parser('status', help='Show a session')
    status.add_argument('session_id')

    events = sub.add_parser('events', help='Show the event log of a session')
    events.add_argument('session_id')

    poll = sub.add_parser('poll', help='Requeue pending and resuming sessions')
    poll.add_argument('--limit', type=int, default=10)

    sync = sub.add_parser('sync-integrations', help='Discover tools on remote integration servers')
    sync.add_argument('-u', '--user', default='local', help='User id')
    return parser


async def run(args) -> int:
    runtime = build_runtime(load_config(args.config))
    try:
        return await COMMANDS[args.command](runtime, args)
    finally:
        await runtime.close()


def main():
    """主入口"""
    args = build_parser().parse_args()
    setup_logging(args.verbose)
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        console.print("\n[green]Goodbye! 👋[/green]")


if __name__ == "__main__":
    main()
