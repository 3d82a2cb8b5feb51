"""Rich rendering for the tome CLI: stage progress, group and tag tables, status lines."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from tome_tagger.models import ChangeMap, Group

_console: Console | None = None


def get_console() -> Console:
    """The shared console. It writes to stderr so JSON output on stdout stays clean."""
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


@contextmanager
def stage_progress(
    description: str, enabled: bool = True
) -> Iterator[Callable[[int, int], None] | None]:
    """
    Progress bar for one pipeline stage.

    Yields a ``(done, total)`` callback to hand to the stage, or None when
    disabled (JSON output).
    """
    if not enabled:
        yield None
        return

    columns = (
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
    )
    with Progress(*columns, transient=True, console=get_console()) as progress:
        task = progress.add_task(description, total=None)

        def update(done: int, total: int) -> None:
            progress.update(task, completed=done, total=total)

        yield update


def group_table(groups: list[Group]) -> Table:
    table = Table(title="Audiobook groups")
    table.add_column("Kind", style="cyan")
    table.add_column("Name")
    table.add_column("Author")
    table.add_column("Files", justify="right")
    table.add_column("Changes", justify="right", style="yellow")
    for group in groups:
        author = group.metadata.author if group.metadata else None
        table.add_row(
            group.kind.value,
            group.name,
            author or "-",
            str(len(group.files)),
            str(group.total_changes),
        )
    return table


def _display(value: object) -> str:
    if value is None:
        return "[dim]-[/dim]"
    if isinstance(value, tuple | list):
        return "; ".join(str(v) for v in value)
    return str(value)


def changes_table(title: str, change_map: ChangeMap) -> Table:
    """Pending slot changes of one file, old value beside new."""
    table = Table(title=title, title_justify="left")
    table.add_column("Slot", style="cyan")
    table.add_column("Current")
    table.add_column("New", style="green")
    for slot, change in change_map.changes.items():
        table.add_row(slot.value, _display(change.old), _display(change.new))
    return table


def tag_tables(info: Mapping[str, Any]) -> tuple[Table, Table]:
    """Logical fields and raw container keys, as returned by ``inspect_tags``."""
    fields = Table(title=f"{info['path']} ({info['codec']})")
    fields.add_column("Field", style="cyan")
    fields.add_column("Value")
    for name, value in info["tags"].items():
        fields.add_row(name, _display(value))

    raw = Table(title="Raw tags")
    raw.add_column("Key", style="cyan")
    raw.add_column("Values")
    for key, values in info["raw"].items():
        raw.add_row(key, " | ".join(str(v) for v in values))
    return fields, raw


def print(*args: Any, **kwargs: Any) -> None:
    get_console().print(*args, **kwargs)


def print_error(message: str) -> None:
    get_console().print(f"[red]Error: {message}[/red]")


def print_warning(message: str) -> None:
    get_console().print(f"[yellow]Warning: {message}[/yellow]")


def print_success(message: str) -> None:
    get_console().print(f"[green]✔︎ {message}[/green]")
