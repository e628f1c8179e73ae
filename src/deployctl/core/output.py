"""Console output for deployctl commands, rendered with Rich."""

import json
from enum import Enum
from typing import Any

import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

error_console = Console(stderr=True)

# Panel border colour per run outcome
OUTCOME_STYLES = {
    "succeeded": "green",
    "rolled_back": "yellow",
    "failed": "red",
    "dry_run": "blue",
    "in_progress": "blue",
}


class OutputFormat(str, Enum):
    """Supported output formats."""

    TABLE = "table"
    JSON = "json"
    YAML = "yaml"
    RAW = "raw"


class OutputFormatter:
    """Writes messages, records and run summaries in the selected format.

    Status messages respect ``--quiet``; errors, summary panels and
    structured documents are always written.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.TABLE,
        color: bool = True,
        quiet: bool = False,
    ):
        self.format = format
        self.color = color
        self.quiet = quiet
        self._console = Console(force_terminal=color, no_color=not color, highlight=color)

    @property
    def structured(self) -> bool:
        """Whether output is a machine-readable document rather than a table."""
        return self.format in (OutputFormat.JSON, OutputFormat.YAML)

    # Messages

    def print(self, message: str, style: str | None = None) -> None:
        if not self.quiet:
            self._console.print(message, style=style)

    def print_header(self, title: str) -> None:
        if not self.quiet:
            self._console.rule(f"[bold]{title}[/bold]")

    def print_info(self, message: str) -> None:
        self.print(f"[blue]ℹ[/blue] {message}")

    def print_success(self, message: str) -> None:
        self.print(f"[green]✓[/green] {message}")

    def print_warning(self, message: str) -> None:
        self.print(f"[yellow]Warning:[/yellow] {message}")

    def print_error(self, message: str) -> None:
        error_console.print(f"[red]Error:[/red] {message}")

    # Records

    def print_data(self, data: list[Any] | dict[str, Any], title: str | None = None) -> None:
        """Print a record or list of records in the configured format."""
        self.print_table(data, title=title)

    def print_table(
        self,
        rows: list[Any] | dict[str, Any],
        columns: list[str] | None = None,
        title: str | None = None,
    ) -> None:
        """Print records; a table unless a document format was selected."""
        if self.format == OutputFormat.JSON:
            self._print_document(json.dumps(rows, indent=2, default=str), "json")
        elif self.format == OutputFormat.YAML:
            text = yaml.safe_dump(rows, default_flow_style=False, allow_unicode=True, sort_keys=False)
            self._print_document(text, "yaml")
        elif self.format == OutputFormat.RAW:
            self._print_raw(rows)
        elif not rows:
            self._console.print("[dim]No data to display[/dim]")
        else:
            self._console.print(self._build_table(rows, columns, title))

    def _print_document(self, text: str, lexer: str) -> None:
        if self.color:
            self._console.print(Syntax(text, lexer, theme="monokai"))
        else:
            print(text.rstrip("\n"))

    def _print_raw(self, data: list[Any] | dict[str, Any]) -> None:
        lines = [f"{k}: {v}" for k, v in data.items()] if isinstance(data, dict) else data
        for line in lines:
            print(line)

    def _build_table(
        self,
        rows: list[Any] | dict[str, Any],
        columns: list[str] | None,
        title: str | None,
    ) -> Table:
        if isinstance(rows, dict):
            # a single record reads better as field/value pairs
            columns = ["Field", "Value"]
            rows = [{"Field": key, "Value": value} for key, value in rows.items()]
        columns = columns or list(rows[0])

        table = Table(title=title, header_style="bold cyan")
        for column in columns:
            table.add_column(column, style="dim" if column == "Field" else None)
        for row in rows:
            table.add_row(*(_cell(row.get(column)) for column in columns))
        return table

    # Run summaries

    def print_panel(self, content: str, title: str | None = None, style: str = "blue") -> None:
        self._console.print(Panel(content, title=title, border_style=style))

    def print_actions(self, actions: list[str], title: str = "Planned actions") -> None:
        """Numbered list of what a run did or would do."""
        if not actions:
            return
        self.print_header(title)
        for number, action in enumerate(actions, start=1):
            self.print(f"  {number}. {escape(action)}")

    def print_summary(self, summary: dict[str, Any], title: str) -> None:
        """Terminal summary of a run, bordered by its outcome."""
        body = "\n".join(
            f"[bold]{key}[/bold]: {escape(str(value))}" for key, value in summary.items() if value is not None
        )
        self.print_panel(body, title=title, style=OUTCOME_STYLES.get(summary.get("outcome", ""), "blue"))

    def print_guidance(self, lines: list[str]) -> None:
        """Next steps when automated recovery is exhausted."""
        if lines:
            self.print_panel(
                "\n".join(escape(line) for line in lines),
                title="Manual intervention required",
                style="red",
            )

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask a yes/no question. Quiet mode answers with the default; no stdin answers no."""
        if self.quiet:
            return default

        self._console.print(f"{message} {'[Y/n]' if default else '[y/N]'}", end=" ", markup=False)
        try:
            answer = input().strip().lower()
        except (EOFError, KeyboardInterrupt):
            return False
        return answer in ("y", "yes") if answer else default


def _cell(value: Any) -> str:
    return "" if value is None else str(value)


def format_bytes(size: float) -> str:
    """Human-readable byte count, e.g. ``1.5 KB``."""
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(size) < 1024.0:
            break
        size /= 1024.0
    else:
        unit = "PB"
    return f"{size:.1f} {unit}"


_DURATION_UNITS = ((86400, "d"), (3600, "h"), (60, "m"))


def format_duration(seconds: float) -> str:
    """Human-readable duration in the largest fitting unit, e.g. ``1.5m``."""
    for size, suffix in _DURATION_UNITS:
        if seconds >= size:
            return f"{seconds / size:.1f}{suffix}"
    return f"{seconds:.1f}s"
