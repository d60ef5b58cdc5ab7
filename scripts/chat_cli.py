#!/usr/bin/env python3
"""Interactive chat CLI for trying out the micromanager agent service."""

import os
import sys

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

OUTCOME_STYLES = {
    "completed": "green",
    "iteration_limit": "yellow",
    "protocol_error": "red",
    "error": "red",
}


class ChatCLI:
    """Interactive chat interface for the agent service."""

    def __init__(self, base_url: str = "http://localhost:8000", token: str | None = None):
        """Initialize chat CLI.

        Args:
            base_url: Service URL
            token: Bearer credential (dev key, session token or signed token)
        """
        self.base_url = base_url
        self.console = Console()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.Client(timeout=120.0, headers=headers)
        self.last_run_id: str | None = None

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]🗂️  Micromanager - Interactive Chat[/bold blue]\n"
                "Type your messages to chat with the assistant.\n"
                "Commands: /help, /history, /tools, /logs, /reset, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]❌ Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]✅ Connected to micromanager[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")
                command = user_input.strip().lower()

                if command in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif command == "/help":
                    self._show_help()
                elif command == "/history":
                    self._show_history()
                elif command == "/tools":
                    self._show_tools()
                elif command == "/logs":
                    self._show_tool_logs()
                elif command == "/reset":
                    self._reset()
                elif command:
                    response = self._send_message(user_input)
                    if response:
                        self._display_response(response)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]👋 Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _get(self, path: str, **kwargs) -> dict | list | None:
        try:
            response = self.client.get(f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")
            return None
        if response.status_code != 200:
            self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")
            return None
        return response.json()

    def _send_message(self, message: str) -> dict | None:
        """Send message to the agent service."""
        try:
            with self.console.status("[dim]💭 Thinking...[/dim]"):
                response = self.client.post(f"{self.base_url}/conversation", json={"message": message})
        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")
            return None

        if response.status_code != 200:
            self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")
            return None

        data = response.json()
        self.last_run_id = data.get("run_id")
        return data

    def _display_response(self, response: dict) -> None:
        outcome = response.get("outcome", "error")
        style = OUTCOME_STYLES.get(outcome, "red")
        self.console.print(
            Panel(
                Markdown(response.get("content") or "_(empty answer)_"),
                title=f"[bold {style}]🤖 Assistant[/bold {style}]",
                subtitle=f"[dim]{outcome} · {response.get('passes', 0)} passes · {response.get('run_id')}[/dim]",
                border_style=style,
                padding=(1, 2),
            )
        )

    def _show_history(self) -> None:
        data = self._get("/conversation", params={"limit": 20})
        if not data:
            return
        for message in data["messages"]:
            label = f"{message['role']}/{message['type']}"
            if message["type"] == "state":
                calls = ", ".join(call["name"] for call in message["metadata"].get("toolCalls", []))
                self.console.print(f"[dim]{label}[/dim] → {calls}")
            else:
                self.console.print(f"[dim]{label}[/dim] {message['content'][:200]}")

    def _show_tools(self) -> None:
        data = self._get("/tools")
        if not data:
            return
        table = Table(title="Tools")
        table.add_column("Name", style="cyan")
        table.add_column("Scopes")
        table.add_column("Description")
        for tool in data:
            table.add_row(tool["name"], " or ".join(tool["required_scopes"]) or "-", tool["description"])
        self.console.print(table)

    def _show_tool_logs(self) -> None:
        if not self.last_run_id:
            self.console.print("[yellow]No run yet[/yellow]")
            return
        data = self._get(f"/runs/{self.last_run_id}/tool-logs")
        if data is None:
            return
        table = Table(title=f"Tool calls in {self.last_run_id}")
        table.add_column("Tool")
        table.add_column("Status")
        table.add_column("Error")
        for entry in data:
            status_style = "green" if entry["status"] == "success" else "red"
            table.add_row(
                entry["display_title"], f"[{status_style}]{entry['status']}[/{status_style}]", entry.get("error") or ""
            )
        self.console.print(table)

    def _reset(self) -> None:
        try:
            response = self.client.delete(f"{self.base_url}/conversation")
        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")
            return
        if response.status_code == 200:
            self.console.print(f"[yellow]🔄 Deleted {response.json()['deleted']} messages[/yellow]")
        else:
            self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")

    def _show_help(self) -> None:
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /history - Show recent transcript
• /tools - List tools and required scopes
• /logs - Show tool calls of the last run
• /reset - Delete the conversation
• /quit or /exit - Exit the chat

[bold]Example Conversation:[/bold]
1. "Remember that I'm working on the Atlas migration"
2. "What's on my calendar this week?"
3. "Add a task to review the migration plan by Friday"
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]❓ Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    token = os.getenv("MICROMANAGER_TOKEN") or os.getenv("MCP_DEVELOPMENT_API_KEY")

    chat = ChatCLI(base_url, token)
    chat.start()


if __name__ == "__main__":
    main()
