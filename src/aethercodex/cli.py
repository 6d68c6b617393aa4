from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from aethercodex.channel import OracleChannel
from aethercodex.config import AppConfig, Paths, load_config, load_paths, save_config
from aethercodex.context import ContextRequest
from aethercodex.db import Database
from aethercodex.llm import CompletionClient
from aethercodex.logging_config import setup_logging
from aethercodex.memory import MemoryStore
from aethercodex.tasks import TaskLedger
from aethercodex.tools.registry import ToolRegistry, build_memory_tools, build_step_tools

app = typer.Typer(help="AetherCodex agent CLI")
notes_app = typer.Typer(help="Manage project notes")
tasks_app = typer.Typer(help="Inspect and create tasks")
aegis_app = typer.Typer(help="Show or change the sticky orientation")
app.add_typer(notes_app, name="notes")
app.add_typer(tasks_app, name="tasks")
app.add_typer(aegis_app, name="aegis")

console = Console()


def _init_db(db_path: Path) -> Database:
    db = Database(db_path)
    db.initialize()
    return db


def _load(paths: Paths) -> AppConfig:
    config = load_config(paths.config_path)
    setup_logging(log_path=paths.log_path)
    return config


def _stores(paths: Paths, config: AppConfig) -> tuple[MemoryStore, TaskLedger, ToolRegistry]:
    db = _init_db(paths.db_path)
    registry = ToolRegistry()
    memory = MemoryStore(db, config.memory, registry.priority_of, config.project_root)
    ledger = TaskLedger(db, config.memory)
    registry.register_all(build_step_tools() + build_memory_tools(memory, ledger))
    return memory, ledger, registry


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="What to ask the oracle."),
    reasoning: bool = typer.Option(False, "--reasoning", help="Use the reasoning model without tools."),
    no_history: bool = typer.Option(False, "--no-history", help="Do not include stored history."),
    record: bool = typer.Option(True, "--record/--no-record", help="Store the exchange in history."),
    file: Optional[str] = typer.Option(None, help="Attach a project file."),
) -> None:
    """Run one divination and print the answer."""
    paths = load_paths()
    config = _load(paths)
    if not config.llm.api_key:
        typer.echo("API key is required. Run `aethercodex setup` or set DEEPSEEK_API_KEY.")
        raise typer.Exit(code=1)
    memory, _, registry = _stores(paths, config)
    channel = OracleChannel(config, memory, CompletionClient(config.llm), registry)
    request = ContextRequest(prompt=prompt, file=file, history=False if no_history else None)
    with console.status("Consulting the oracle..."):
        if reasoning:
            response = channel.conjure(request, record=record)
        else:
            response = channel.divine(request, record=record)
    if response.status == "success":
        console.print(response.answer)
        console.print(f"[dim]{escape(response.message)}[/dim]")
        return
    if response.interrupt is not None:
        console.print_json(json.dumps(response.interrupt, default=str))
        return
    console.print(f"[red]{escape(response.status)}[/red]: {escape(response.message)}")
    raise typer.Exit(code=1)


@app.command()
def history(limit: int = typer.Option(7, help="Number of entries to show.")) -> None:
    """List recent conversation entries."""
    paths = load_paths()
    config = _load(paths)
    memory, _, _ = _stores(paths, config)
    table = Table(title="History", show_lines=True)
    table.add_column("id", justify="right")
    table.add_column("prompt")
    table.add_column("answer")
    table.add_column("tools", justify="right")
    table.add_column("created")
    for entry in memory.fetch_history(limit=limit):
        table.add_row(
            str(entry.id),
            escape(entry.prompt[:80]),
            escape(entry.answer[:120]),
            str(entry.tool_call_count),
            entry.created_at,
        )
    console.print(table)


@app.command()
def setup() -> None:
    """Write a config file with the completion API settings."""
    paths = load_paths()
    config = load_config(paths.config_path)
    base_url = typer.prompt("API URL", default=config.llm.base_url)
    model = typer.prompt("Model", default=config.llm.model)
    reasoning_model = typer.prompt("Reasoning model", default=config.llm.reasoning_model)
    api_key = typer.prompt("API key (blank to use DEEPSEEK_API_KEY)", default="", hide_input=True)
    llm = replace(
        config.llm,
        base_url=base_url,
        model=model,
        reasoning_model=reasoning_model,
        api_key=api_key or config.llm.api_key,
    )
    save_config(paths.config_path, replace(config, llm=llm))
    typer.echo(f"Config saved to {paths.config_path}")


@notes_app.command("add")
def notes_add(
    content: str,
    links: Optional[str] = typer.Option(None, help="Comma separated file links."),
    tags: Optional[str] = typer.Option(None, help="Comma separated tags."),
) -> None:
    paths = load_paths()
    memory, _, _ = _stores(paths, _load(paths))
    note_id = memory.create_note(content, links=links, tags=tags)
    typer.echo(f"Note {note_id} saved.")


@notes_app.command("recall")
def notes_recall(query: str, limit: int = typer.Option(5)) -> None:
    paths = load_paths()
    memory, _, _ = _stores(paths, _load(paths))
    table = Table(title=f"Notes for {escape(query)}", show_lines=True)
    table.add_column("id", justify="right")
    table.add_column("score", justify="right")
    table.add_column("content")
    table.add_column("tags")
    table.add_column("links")
    for note in memory.recall_notes(query, limit=limit):
        table.add_row(str(note.id), str(note.score), escape(note.content), note.tags, escape(note.links))
    console.print(table)


@notes_app.command("remove")
def notes_remove(note_id: int) -> None:
    paths = load_paths()
    memory, _, _ = _stores(paths, _load(paths))
    if not memory.remove_note(note_id):
        typer.echo(f"Note {note_id} not found.")
        raise typer.Exit(code=1)
    typer.echo(f"Note {note_id} removed.")


@tasks_app.command("list")
def tasks_list(parent: Optional[int] = typer.Option(None, help="Only sub-tasks of this task.")) -> None:
    paths = load_paths()
    _, ledger, _ = _stores(paths, _load(paths))
    result = ledger.manage_task("list", {"parent_task_id": parent})
    table = Table(title="Tasks")
    for column in ("id", "title", "status", "step", "workflow", "parent"):
        table.add_column(column)
    for task in result.get("tasks", []):
        table.add_row(
            str(task["id"]),
            escape(task["title"]),
            task["status"],
            str(task["current_step"]),
            task["workflow_type"],
            str(task["parent_task_id"] or ""),
        )
    console.print(table)


@tasks_app.command("create")
def tasks_create(
    title: str,
    plan: str = typer.Option("", help="Plan text."),
    workflow: str = typer.Option("full", help="simple, analysis or full."),
    parent: Optional[int] = typer.Option(None, help="Parent task id."),
) -> None:
    paths = load_paths()
    _, ledger, _ = _stores(paths, _load(paths))
    result = ledger.manage_task(
        "create", {"title": title, "plan": plan, "workflow_type": workflow, "parent_task_id": parent}
    )
    if not result["ok"]:
        typer.echo(result["error"])
        raise typer.Exit(code=1)
    typer.echo(f"Task {result['id']} created.")


@tasks_app.command("show")
def tasks_show(task_id: int) -> None:
    paths = load_paths()
    _, ledger, _ = _stores(paths, _load(paths))
    task = ledger.get_task(task_id)
    if task is None:
        typer.echo(f"Task {task_id} not found.")
        raise typer.Exit(code=1)
    body = "\n".join(
        [
            f"status: {task.status.value}",
            f"step: {task.current_step} ({task.workflow_type})",
            f"plan: {escape(task.plan)}",
            f"step results: {escape(json.dumps(task.step_results, default=str))}",
            f"sub-tasks: {', '.join(str(sub.id) for sub in ledger.get_subtasks(task.id)) or 'none'}",
        ]
    )
    console.print(Panel(body, title=f"Task {task.id}: {escape(task.title)}"))


@aegis_app.command("show")
def aegis_show() -> None:
    paths = load_paths()
    memory, _, _ = _stores(paths, _load(paths))
    console.print_json(json.dumps(memory.aegis().as_dict()))


@aegis_app.command("set")
def aegis_set(
    tags: Optional[str] = typer.Option(None, help="Comma separated focus tags."),
    summary: Optional[str] = typer.Option(None, help="Orientation summary."),
    temperature: Optional[float] = typer.Option(None, help="Sampling temperature."),
) -> None:
    paths = load_paths()
    memory, _, _ = _stores(paths, _load(paths))
    tag_list = [tag.strip() for tag in tags.split(",") if tag.strip()] if tags is not None else None
    state = memory.unveil_aegis(tags=tag_list, summary=summary, temperature=temperature)
    console.print_json(json.dumps(state.as_dict()))
