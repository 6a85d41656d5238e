"""Command-line surface over the knowledge graph build pipeline."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from safetykg.errors import GraphBackendError, SafetyKGError
from safetykg.pipeline.build_pipeline import KnowledgeGraphPipeline
from safetykg.storage.neo4j_manager import Neo4jManager
from safetykg.utils.config import Config, load_config
from safetykg.utils.log_setup import configure_logging

app = typer.Typer(help="Build safety-training knowledge graphs from documents.")

console = Console(color_system=None, force_terminal=False, width=120)

CONFIG_OPTION = typer.Option(Path("config/config.yaml"), help="Path to config file.")


def _load(config_path: Path, verbose: bool = False) -> Config:
    cfg = load_config(config_path)
    configure_logging(cfg.logging, verbose=verbose)
    return cfg


def _pipeline(cfg: Config) -> KnowledgeGraphPipeline:
    return KnowledgeGraphPipeline.from_config(cfg)


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=1)


def _render_entities(entities: List[Dict[str, Any]], title: str) -> None:
    table = Table(title=title)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Confidence", justify="right")
    table.add_column("Alignment")
    for entity in entities:
        suggestion = entity.get("alignmentSuggestion") or {}
        alignment = suggestion.get("type", "-")
        if alignment == "merge":
            alignment = f"merge -> {suggestion['targetEntity']['name']}"
        table.add_row(
            entity.get("id", ""),
            entity.get("name", ""),
            entity.get("type", ""),
            f"{entity.get('confidence', 0):.2f}",
            alignment,
        )
    console.print(table)


@app.command("ingest")
def ingest(
    paths: List[Path] = typer.Argument(..., help="Files to build into one task."),
    created_by: Optional[str] = typer.Option(None, help="User recorded on the task."),
    ontology_id: Optional[str] = typer.Option(None, help="Use this ontology for extraction."),
    config: Path = CONFIG_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Parse, extract and align the given files (runs in the foreground)."""
    cfg = _load(config, verbose)
    pipeline = _pipeline(cfg)
    try:
        task_id = pipeline.upload_and_start(
            paths,
            created_by=created_by,
            ontology_mode="existing" if ontology_id else "auto",
            ontology_id=ontology_id,
            background=False,
        )
    except (SafetyKGError, ValueError, FileNotFoundError) as exc:
        _fail(str(exc))
        return

    result = pipeline.get_extraction_result(task_id)
    console.print(f"Task [bold]{task_id}[/bold]: {result['status']} ({result['stageMessage']})")
    if result.get("errorMessage"):
        console.print(f"[red]{result['errorMessage']}[/red]")
        raise typer.Exit(code=1)
    _render_entities(result["draftEntities"], "Draft entities")
    console.print(f"Relations: {len(result['draftRelations'])}")


@app.command("status")
def status(
    task_id: Optional[str] = typer.Argument(None, help="Task id; lists recent tasks when omitted."),
    limit: int = typer.Option(20, help="Max tasks to list.", min=1),
    config: Path = CONFIG_OPTION,
) -> None:
    """Show a task's drafts, or the most recent tasks."""
    cfg = _load(config)
    pipeline = _pipeline(cfg)

    if task_id is None:
        page = pipeline.list_tasks(page=1, limit=limit)
        table = Table(title=f"Build tasks ({page['total']} total)")
        for column in ("ID", "Status", "Progress", "Stage", "Created"):
            table.add_column(column)
        for task in page["tasks"]:
            table.add_row(
                task["id"],
                task["status"],
                f"{task['progress']}%",
                task["stageMessage"],
                task["createdAt"],
            )
        console.print(table)
        return

    try:
        result = pipeline.get_extraction_result(task_id)
    except SafetyKGError as exc:
        _fail(exc.message)
        return
    console.print(
        f"[bold]{task_id}[/bold] {result['status']} {result['progress']}% {result['stageMessage']}"
    )
    if result.get("errorMessage"):
        console.print(f"[red]{result['errorMessage']}[/red]")
    if result["draftEntities"]:
        _render_entities(result["draftEntities"], "Draft entities")


@app.command("confirm")
def confirm(
    task_id: str = typer.Argument(..., help="Task awaiting confirmation."),
    modifications: Optional[Path] = typer.Option(
        None, help="JSON file with reviewer modifications."
    ),
    config: Path = CONFIG_OPTION,
) -> None:
    """Write a confirmed task into the graph."""
    cfg = _load(config)
    pipeline = _pipeline(cfg)
    edits = None
    if modifications is not None:
        edits = json.loads(modifications.read_text(encoding="utf-8"))
    try:
        result = pipeline.confirm_and_build(task_id, edits)
    except SafetyKGError as exc:
        _fail(exc.message)
        return
    finally:
        pipeline.close()

    stats = result["stats"]
    console.print(
        f"[green]Built task {task_id}[/green]: {stats['entity_count']} entities "
        f"({stats['new_entities']} new, {stats['updated_entities']} updated), "
        f"{stats['relation_count']} relations, {stats['skipped_relations']} skipped"
    )


@app.command("query")
def query(
    keyword: Optional[str] = typer.Argument(None, help="Substring of name or properties."),
    entity_type: Optional[str] = typer.Option(None, "--type", help="Entity type filter."),
    limit: int = typer.Option(20, help="Maximum nodes.", min=1),
    config: Path = CONFIG_OPTION,
) -> None:
    """Query graph entities."""
    cfg = _load(config)
    pipeline = _pipeline(cfg)
    try:
        result = pipeline.query_graph(keyword, entity_type, limit)
    except GraphBackendError as exc:
        _fail(exc.message)
        return
    finally:
        pipeline.close()

    if not result["nodes"]:
        console.print("[yellow]No matching entities.[/yellow]")
        return
    table = Table(title="Entities")
    for column in ("ID", "Name", "Type", "Source files"):
        table.add_column(column)
    for node in result["nodes"]:
        table.add_row(node["id"], node["name"], node["type"], str(len(node["sourceFiles"])))
    console.print(table)
    console.print(f"Edges among results: {len(result['edges'])}")


@app.command("stats")
def stats(config: Path = CONFIG_OPTION) -> None:
    """Show graph statistics."""
    cfg = _load(config)
    pipeline = _pipeline(cfg)
    try:
        result = pipeline.get_graph_stats()
    except GraphBackendError as exc:
        _fail(exc.message)
        return
    finally:
        pipeline.close()

    console.print("[bold]Graph Stats[/bold]")
    console.print(f"Entities: {result['entity_count']}")
    console.print(f"Relations: {result['relation_count']}")
    if result["type_distribution"]:
        console.print("By type:")
        for entity_type, count in result["type_distribution"].items():
            console.print(f"  {entity_type}: {count}")


@app.command("check")
def check(config: Path = CONFIG_OPTION) -> None:
    """Check Neo4j connectivity and APOC availability."""
    cfg = _load(config)
    manager = Neo4jManager(cfg.database)
    try:
        manager.connect()
        apoc = manager.check_apoc()
    except GraphBackendError as exc:
        _fail(f"{exc.message} ({exc.category.value})")
        return
    finally:
        manager.close()
    console.print(f"Neo4j: [green]reachable[/green] at {manager.uri}")
    console.print(f"APOC: {'available' if apoc else 'missing (fallback upserts will be used)'}")


def run() -> None:
    """Entrypoint for Typer."""
    app()


if __name__ == "__main__":
    run()
