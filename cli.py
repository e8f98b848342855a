"""
Relay CLI - 交互式命令行界面
"""
import argparse
import asyncio
import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from prompt_toolkit import PromptSession
from prompt_toolkit.styles import Style

from config_loader import load_config
from core.runtime import Runtime, build_runtime
from core.types import EventType, Session


# 自定义样式
style = Style.from_dict({
    'prompt': '#00aa00 bold',
    'hint': '#666666',
})


class RelayCLI:
    """在同一进程里提交请求并驱动 worker 直到 Session 结束"""

    def __init__(self, runtime: Runtime, user_id: str = "local"):
        self.console = Console()
        self.session = PromptSession(style=style)
        self.runtime = runtime
        self.user_id = user_id
        self.provider: Optional[str] = None
        self.thread_id: Optional[str] = None
        self.last_session: Optional[Session] = None

    def print_banner(self):
        banner = """
╭────────────────────────────────────────────────────────────╮
│                                                            │
│   Relay - Durable Tool-Calling Orchestration               │
│                                                            │
│   • Sessions survive across activations                    │
│   • Local tools and remote MCP integrations                │
│   • Every final answer is verified                         │
│                                                            │
╰────────────────────────────────────────────────────────────╯
        """
        self.console.print(banner, style="cyan")

    async def _show_new_events(self, session_id: str, seen: int) -> int:
        """打印新增事件，返回已显示的事件数"""
        events = await self.runtime.gateway.events.list(session_id)
        for event in events[seen:]:
            if event.type == EventType.TOOL_CALL:
                self.console.print(f"[dim]🔧 Calling tool: {event.data.get('tool')}[/dim]", highlight=False)
            elif event.type == EventType.TOOL_RESULT and not event.data.get('success'):
                self.console.print(f"[red]Tool error: {event.data['result'].get('error')}[/red]")
            elif event.type == EventType.RETRY:
                self.console.print("[yellow]Verification failed, retrying...[/yellow]")
            elif event.type == EventType.CONTEXT_COMPRESSION:
                self.console.print("[dim]Context compressed[/dim]")
        return len(events)

    async def ask(self, text: str) -> Session:
        session = await self.runtime.scheduler.start(
            self.user_id, text, thread_id=self.thread_id, provider=self.provider,
        )
        seen = 0
        while not session.is_terminal:
            await self.runtime.worker.run_once(timeout=0.5)
            session = await self.runtime.gateway.load_session(session.id)
            seen = await self._show_new_events(session.id, seen)
        return session

    def _render(self, session: Session):
        if session.final_response:
            self.console.print(Markdown(session.final_response.get('content') or ''))
            self.thread_id = session.final_response.get('threadId') or self.thread_id
        elif session.error:
            self.console.print(f"[red]Error: {session.error}[/red]")

    async def run_interactive(self):
        """运行交互式会话"""
        self.print_banner()
        servers = await self.runtime.integrations.servers_for_user(self.user_id)
        if servers:
            self.console.print(f"[green]✓ {len(servers)} MCP integrations configured[/green]")
        self.console.print("\n[dim]Type /help for commands, /exit to quit[/dim]\n")

        while True:
            try:
                user_input = await self.session.prompt_async("You: ", style="class:prompt")
                user_input = user_input.strip()

                if not user_input:
                    continue

                if user_input.startswith('/'):
                    if await self._handle_command(user_input):
                        break
                    continue

                self.console.print("\n[dim]Assistant thinking...[/dim]\n")
                self.last_session = await self.ask(user_input)
                self._render(self.last_session)
                self.console.print()

            except KeyboardInterrupt:
                continue
            except EOFError:
                break
            except Exception as e:
                self.console.print(f"[red]Error: {e}[/red]")

    async def _handle_command(self, command: str) -> bool:
        """处理命令，返回True表示退出"""
        parts = command.split()
        cmd = parts[0].lower()
        args = parts[1:]

        if cmd in ('/exit', '/quit'):
            self.console.print("[green]Goodbye![/green]")
            return True

        elif cmd == '/help':
            help_text = """
# Available Commands

- `/exit`, `/quit` - Exit the application
- `/help` - Show this help message
- `/provider <claude|openai|gemini>` - Use another LLM provider for new requests
- `/new` - Start a new conversation thread
- `/status` - Show the last session
- `/events` - Show the event log of the last session
            """
            self.console.print(Markdown(help_text))

        elif cmd == '/provider' and args:
            if args[0] in ('claude', 'openai', 'gemini'):
                self.provider = args[0]
                self.console.print(f"[green]Provider changed to: {args[0]}[/green]")
            else:
                self.console.print(f"[red]Unknown provider: {args[0]}[/red]")

        elif cmd == '/new':
            self.thread_id = None
            self.console.print("[green]Started a new thread[/green]")

        elif cmd == '/status':
            if self.last_session is None:
                self.console.print("[yellow]No session yet[/yellow]")
            else:
                s = self.last_session
                self.console.print(Panel(
                    f"status: {s.status.value}\nactivations: {s.execution_count}\n"
                    f"messages: {len(s.messages)}\nthread: {s.thread_id}",
                    title=s.id,
                ))

        elif cmd == '/events':
            if self.last_session is None:
                self.console.print("[yellow]No session yet[/yellow]")
            else:
                for event in await self.runtime.gateway.events.list(self.last_session.id):
                    self.console.print(f"[cyan]{event.type}[/cyan] {event.data}", highlight=False)

        else:
            self.console.print(f"[red]Unknown command: {cmd}[/red]")

        return False


async def main(config_path: str = "config.yaml", user_id: str = "local"):
    """主入口"""
    runtime = build_runtime(load_config(config_path))
    cli = RelayCLI(runtime, user_id=user_id)
    try:
        await cli.run_interactive()
    finally:
        await runtime.close()


def run():
    parser = argparse.ArgumentParser(description='Relay interactive chat')
    parser.add_argument('-c', '--config', default='config.yaml', help='Config file path')
    parser.add_argument('-u', '--user', default='local', help='User id')
    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING, format="%(message)s", handlers=[RichHandler(show_path=False)])
    asyncio.run(main(args.config, args.user))


if __name__ == "__main__":
    run()
