"""
CLI interface for factbase.

Usage:
    factbase add "Water boils at 100 C at sea level."
    factbase query "boiling point"
    factbase issues
    factbase resolve <issue-id> keep_a
    factbase note "Sourdough" notes.md
    factbase find "bread baking"
    factbase work
    factbase status
"""

import json
import os
import sys
import time
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import KnowledgeBase
from .config import resolve_store_path
from .consistency import RESOLUTION_ACTIONS, Issue, QueryResult, query_results_json
from .errors import FactbaseError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .notes import Note

# Configure quiet mode by default (suppress verbose library output)
# Set FACTBASE_VERBOSE=1 to enable debug mode via environment
if os.environ.get("FACTBASE_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"factbase {version('factbase')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None
_active_store: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="factbase",
    help="Self-consistent statement store with a self-organizing note index.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="FACTBASE_STORE_PATH",
        help="Path to the store directory (default: ~/.factbase/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Self-consistent statement store with a self-organizing note index."""


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _one_line(text: str, width: int = 100) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[:width - 1] + "…"


def render_query_results(results: list[QueryResult], as_json: bool = False) -> str:
    if as_json:
        return query_results_json(results)
    if not results:
        return "No results."
    return "\n".join(
        f"{r.score:.3f}  {r.id}  {_one_line(r.content)}" for r in results
    )


def render_issue(issue: Issue) -> str:
    lines = [f"{issue.id}  {issue.type}  score={issue.score:.3f}"]
    lines.append(f"  A {issue.statement_a}: {_one_line(issue.content_a)}")
    if issue.source_a:
        lines.append(f"    source: {issue.source_a}")
    lines.append(f"  B {issue.statement_b}: {_one_line(issue.content_b)}")
    if issue.source_b:
        lines.append(f"    source: {issue.source_b}")
    if issue.explanation:
        lines.append(f"  why: {_one_line(issue.explanation)}")
    return "\n".join(lines)


def render_issues(issues: list[Issue], as_json: bool = False) -> str:
    if as_json:
        return json.dumps([i.to_dict() for i in issues], indent=2)
    if not issues:
        return "No open issues."
    return "\n\n".join(render_issue(i) for i in issues)


def render_notes(notes: list[Note], as_json: bool = False) -> str:
    if as_json:
        return json.dumps([
            {"id": n.id, "path": n.path, "title": n.title,
             "tags": n.tags, "summary": n.summary}
            for n in notes
        ], indent=2)
    if not notes:
        return "No notes found."
    return "\n".join(
        f"{n.id}  {n.path}  [{', '.join(n.tags)}]  {_one_line(n.summary or n.title, 80)}"
        for n in notes
    )


def render_status(status: dict) -> str:
    s, q, n = status["statements"], status["queue"], status["notes"]
    lines = [
        f"store:       {status['store']}",
        f"strategy:    {status['strategy']}",
        f"statements:  {s.get('active', 0)} active, {s.get('pending', 0)} pending, "
        f"{s.get('deleted', 0)} deleted",
        f"open issues: {status['open_issues']}",
        f"notes:       {n['total']} ({n['indexed']} indexed), "
        f"{status['categories']} categories",
        f"queue:       {q['pending']} pending, {q['processing']} processing, "
        f"{q['failed']} failed",
    ]
    if q["by_type"]:
        lines.append("             " + ", ".join(f"{k}={v}" for k, v in q["by_type"].items()))
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="FACTBASE_STORE_PATH",
        help="Path to the store directory (default: ~/.factbase/)"
    )
]


def _get_kb(store: Optional[Path]) -> KnowledgeBase:
    """Open the knowledge base, handling errors gracefully."""
    import atexit
    global _active_store

    actual_store = store if store is not None else _store_override
    _active_store = resolve_store_path(actual_store)
    try:
        kb = KnowledgeBase(actual_store)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(kb.close)
    return kb


def _fail(e: FactbaseError) -> None:
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(1)


def _read_text_arg(value: str) -> str:
    """'-' reads stdin; an existing file path reads the file; else the literal text."""
    if value == "-":
        return sys.stdin.read()
    path = Path(value).expanduser()
    try:
        if path.is_file():
            return path.read_text(encoding="utf-8")
    except OSError:
        pass
    return value


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    text: Annotated[str, typer.Argument(help="Statement text ('-' reads stdin)")],
    source: Annotated[str, typer.Option("--source", help="Where the statement came from")] = "",
    source_type: Annotated[str, typer.Option("--source-type", help="Kind of source")] = "manual",
    store: StoreOption = None,
):
    """Add a statement. It becomes searchable once checked for conflicts."""
    kb = _get_kb(store)
    if text == "-":
        text = sys.stdin.read().strip()
    try:
        result = kb.add_statement(text, source, source_type)
    except FactbaseError as e:
        _fail(e)
    if _json_output:
        typer.echo(json.dumps({"id": result.id, "title": result.title}))
    else:
        typer.echo(f"{result.id}  {result.title}")


@app.command()
def query(
    text: Annotated[str, typer.Argument(help="Query text")],
    store: StoreOption = None,
):
    """Similarity search over active statements."""
    kb = _get_kb(store)
    typer.echo(render_query_results(kb.query(text), as_json=_json_output))


@app.command()
def show(
    statement_id: Annotated[str, typer.Argument(help="Statement id")],
    touch: Annotated[bool, typer.Option("--touch", help="Mark as verified now")] = False,
    store: StoreOption = None,
):
    """Show one statement."""
    kb = _get_kb(store)
    try:
        if touch:
            kb.touch_statement(statement_id)
        typer.echo(kb.fetch_statement(statement_id))
    except FactbaseError as e:
        _fail(e)


@app.command()
def issues(store: StoreOption = None):
    """List open issues (duplicates and contradictions) awaiting review."""
    kb = _get_kb(store)
    typer.echo(render_issues(kb.list_open_issues(), as_json=_json_output))


@app.command()
def resolve(
    issue_id: Annotated[str, typer.Argument(help="Issue id")],
    action: Annotated[str, typer.Argument(help=f"One of: {', '.join(RESOLUTION_ACTIONS)}")],
    store: StoreOption = None,
):
    """Resolve an open issue."""
    kb = _get_kb(store)
    try:
        kb.resolve_issue(issue_id, action)
    except FactbaseError as e:
        _fail(e)
    typer.echo(f"Resolved {issue_id}: {action}")


@app.command()
def note(
    title: Annotated[str, typer.Argument(help="Note title (also the file name)")],
    content: Annotated[str, typer.Argument(help="Content, a file path, or '-' for stdin")],
    source: Annotated[Optional[list[str]], typer.Option(
        "--source", help="Source reference (repeatable)"
    )] = None,
    store: StoreOption = None,
):
    """Add a note to the vault. It is indexed in the background."""
    kb = _get_kb(store)
    try:
        note_id, path = kb.add_note(title, _read_text_arg(content), source or [])
    except FactbaseError as e:
        _fail(e)
    if _json_output:
        typer.echo(json.dumps({"id": note_id, "path": path}))
    else:
        typer.echo(f"{note_id}  {path}")


@app.command()
def find(
    text: Annotated[str, typer.Argument(help="Query text")],
    store: StoreOption = None,
):
    """Find notes by descending the category tree."""
    kb = _get_kb(store)
    typer.echo(render_notes(kb.query_notes(text), as_json=_json_output))


@app.command()
def tree(store: StoreOption = None):
    """Show the category tree."""
    kb = _get_kb(store)
    snapshot = kb.tree.tree_snapshot()
    if _json_output:
        typer.echo(json.dumps(snapshot, indent=2))
        return
    if not snapshot:
        typer.echo("No categories yet.")
        return

    def show_node(node: dict, indent: int) -> None:
        pad = "  " * indent
        if node["is_leaf"]:
            typer.echo(f"{pad}{node['label']} ({node['notes']} notes)")
        else:
            typer.echo(f"{pad}{node['label']}/")
            for child in node.get("children", []):
                show_node(child, indent + 1)

    for root in snapshot:
        show_node(root, 0)


@app.command()
def work(
    watch: Annotated[bool, typer.Option(
        "--watch", "-w", help="Keep running background workers until interrupted"
    )] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum tasks to process")] = 1000,
    reembed: Annotated[bool, typer.Option(
        "--reembed", help="Schedule re-embedding of statements from another model first"
    )] = False,
    backfill: Annotated[bool, typer.Option(
        "--backfill", help="Fill in missing tree summaries and embeddings afterwards"
    )] = False,
    retry_failed: Annotated[bool, typer.Option(
        "--retry-failed", help="Give failed tasks a fresh attempt budget first"
    )] = False,
    store: StoreOption = None,
):
    """Process queued background work."""
    kb = _get_kb(store)
    if retry_failed:
        typer.echo(f"Retrying {kb.queue.retry_failed()} failed tasks")
    if reembed:
        typer.echo(f"Scheduled {kb.reembed_stale()} stale embeddings")

    if watch:
        kb.start_workers()
        typer.echo("Workers running. Press Ctrl+C to stop.", err=True)
        try:
            while kb.workers.running:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            kb.close()
        return

    processed = kb.work(limit=limit)
    result = {"processed": processed}
    if backfill:
        result.update(kb.backfill_tree())
    if _json_output:
        typer.echo(json.dumps(result))
    else:
        typer.echo(", ".join(f"{k}: {v}" for k, v in result.items()))


@app.command()
def status(store: StoreOption = None):
    """Show store statistics."""
    kb = _get_kb(store)
    info = kb.status()
    if _json_output:
        typer.echo(json.dumps(info, indent=2))
    else:
        typer.echo(render_status(info))


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(
            e, context="factbase CLI", store_path=_active_store or _store_override
        )
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
