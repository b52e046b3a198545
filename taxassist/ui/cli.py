"""Rich console chat for trying the assistant without a chat platform.

Every line goes through the same engine turn as the HTTP endpoint, so
history, trimming, the disclaimer and /restart behave identically.
"""

from __future__ import annotations

import asyncio

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

from taxassist.config import TaxAssistConfig, get_taxassist_home
from taxassist.core.engine import Engine

console = Console()

QUIT_COMMANDS = ("/quit", "/exit")


class CLI:
    """Interactive console for one conversation."""

    def __init__(
        self,
        engine: Engine,
        config: TaxAssistConfig,
        conversation_id: str = "cli-local",
    ) -> None:
        self.engine = engine
        self.config = config
        self.conversation_id = conversation_id

        home = get_taxassist_home()
        home.mkdir(parents=True, exist_ok=True)
        self.prompt_session: PromptSession[str] = PromptSession(
            history=FileHistory(str(home / "cli_input.txt")),
        )

    async def run(self) -> None:
        """Main CLI loop."""
        for message in self.engine.welcome():
            console.print(Markdown(message))
        console.print(f"[dim]Conversation: {self.conversation_id}. Type /quit to exit.[/dim]")

        with patch_stdout():
            while True:
                try:
                    user_input = await asyncio.get_event_loop().run_in_executor(
                        None,
                        lambda: self.prompt_session.prompt("\n> "),
                    )
                except (EOFError, KeyboardInterrupt):
                    console.print("\n[dim]Goodbye![/dim]")
                    break

                user_input = user_input.strip()
                if not user_input:
                    continue
                if user_input.lower() in QUIT_COMMANDS:
                    console.print("[dim]Goodbye![/dim]")
                    break

                with console.status("[dim]Thinking...[/dim]"):
                    reply = await self.engine.process_message(self.conversation_id, user_input)

                for message in reply.messages:
                    console.print(Panel(Markdown(message), border_style="red" if reply.failed else "cyan"))

                if reply.trim and reply.trim.budget_exceeded:
                    for warning in reply.trim.warnings:
                        console.print(f"[yellow]Warning: {warning}.[/yellow]")
