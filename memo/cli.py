"""
CLI interface for memo.

Usage:
    memo init
    memo embed "Use uv to manage Python environments" -t python,tooling
    memo embed ./notes/
    memo search "how should I manage python environments?"
    memo merge ID1 ID2 -c "combined note"
"""

import json
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Memo, WriteResult
from .config import (
    CONFIG_FILENAME,
    PROVIDERS_FILENAME,
    global_config_dir,
    init_config,
    load_app_config,
    local_config_dir,
    resolve_scope,
)
from .errors import MemoError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .search import SearchResponse
from .types import QueryResult, build_time_range, format_timestamp

# Content shown per result in list/search output
PREVIEW_CHARS = 300


# Configure quiet mode by default (suppress verbose library output)
# Set MEMO_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MEMO_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"memo {version('memo-brain')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


app = typer.Typer(
    name="memo",
    help="Personal knowledge base with multi-query semantic search.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


LocalOption = Annotated[bool, typer.Option(
    "--local", "-l",
    help="Use the local scope (./.memo)",
)]
GlobalOption = Annotated[bool, typer.Option(
    "--global", "-g",
    help="Use the global scope (~/.memo)",
)]
TagsOption = Annotated[Optional[str], typer.Option(
    "--tags", "-t",
    help="Comma-separated tags",
)]
ForceOption = Annotated[bool, typer.Option(
    "--force", "-f",
    help="Write even if similar memories exist",
)]
DupThresholdOption = Annotated[Optional[float], typer.Option(
    "--dup-threshold",
    help="Similarity at which content counts as a duplicate (default: config)",
)]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _parse_tags(tags: Optional[str]) -> Optional[list[str]]:
    """Parse ``a,b, c`` into a tag list. None when not given."""
    if tags is None:
        return None
    return [t.strip() for t in tags.split(",") if t.strip()]


def _get_memo(local: bool, global_: bool) -> Memo:
    """Open the knowledge base for the chosen scope, handling errors gracefully."""
    import atexit

    try:
        config = load_app_config(force_local=local, force_global=global_)
        memo = Memo(config)
    except MemoError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(memo.close)
    return memo


def _run(action, context: str):
    """Run an API call; report MemoError cleanly and exit 1."""
    try:
        return action()
    except (MemoError, ValueError) as e:
        from .errors import log_exception
        log_path = log_exception(e, context=context)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise typer.Exit(1)


def _preview(text: str) -> str:
    text = text.strip()
    if len(text) <= PREVIEW_CHARS:
        return text
    return text[:PREVIEW_CHARS].rstrip() + "..."


def _result_to_dict(result: QueryResult) -> dict:
    data = {
        "id": result.id,
        "content": result.content,
        "tags": sorted(result.tags),
        "updated_at": result.updated_at.isoformat(),
    }
    if result.score is not None:
        data["score"] = round(result.score, 4)
        data["score_type"] = result.score_type.value if result.score_type else None
    return data


def _format_result(result: QueryResult) -> str:
    """Two-line display: header with score/id/date/tags, then a preview."""
    header = f"[{result.score_label}] {result.id}  {format_timestamp(result.updated_at)}"
    if result.tags:
        header += "  #" + " #".join(sorted(result.tags))
    body = "\n".join(f"    {line}" for line in _preview(result.content).splitlines())
    return f"{header}\n{body}"


def _duplicate_advice(result: WriteResult) -> str:
    """Tell the user what to do about blocked content."""
    lines = [f"Found {len(result.duplicates)} similar memor"
             f"{'y' if len(result.duplicates) == 1 else 'ies'}:"]
    for match in result.duplicates:
        lines.append(f"  [{match.score:.2f}] {match.candidate.id}  {_preview(match.candidate.content)[:80]}")
    ids = [m.candidate.id for m in result.duplicates]
    if len(ids) == 1:
        lines.append(f"Suggestion: update it instead: memo update {ids[0]} \"...\"")
    elif len(ids) == 2:
        lines.append(f"Suggestion: merge them: memo merge {ids[0]} {ids[1]} -c \"...\"")
    else:
        lines.append("Suggestion: these memories overlap; consider merging or deleting some")
    lines.append("Use --force to store anyway.")
    return "\n".join(lines)


def _report_writes(results: list[WriteResult], verb: str) -> None:
    written = [r for r in results if r.memory is not None]
    blocked = [r for r in results if r.blocked]
    skipped = [r for r in results if r.error is not None]
    if _get_json_output():
        typer.echo(json.dumps({
            "written": [r.memory.id for r in written],
            "blocked": [
                {
                    "source": r.source,
                    "duplicates": [
                        {"id": m.candidate.id, "score": round(m.score, 4)} for m in r.duplicates
                    ],
                }
                for r in blocked
            ],
            "skipped": [{"source": r.source, "error": r.error} for r in skipped],
        }, indent=2))
    else:
        for r in written:
            typer.echo(f"{verb} {r.memory.id}")
        for r in blocked:
            if r.source:
                typer.echo(f"Skipped section of {r.source}", err=True)
            typer.echo(_duplicate_advice(r), err=True)
        for r in skipped:
            typer.echo(f"Skipped {r.source}: {r.error}", err=True)
    if (blocked or skipped) and not written:
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

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
):
    """Personal knowledge base with multi-query semantic search."""


@app.command()
def init(
    local: LocalOption = False,
):
    """Create the scope's config and store, and check the embedding service."""
    config_dir = local_config_dir() if local else global_config_dir()
    providers_path = global_config_dir() / PROVIDERS_FILENAME
    try:
        _, created = init_config(config_dir, local=local)
    except MemoError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    config_path = config_dir / CONFIG_FILENAME
    providers_found = providers_path.exists()

    memo = _get_memo(local, not local)
    info = _run(memo.initialize, "init")

    if _get_json_output():
        typer.echo(json.dumps({
            "scope": "local" if local else "global",
            "config": str(config_path),
            "config_created": created,
            "providers": str(providers_path),
            "providers_found": providers_found,
            "brain_path": str(info.brain_path),
            "store_created": info.created,
            "model": info.model,
            "dimension": info.dimension,
            "memories": info.count,
        }, indent=2))
        return
    typer.echo(f"{'Created' if created else 'Found'} config: {config_path}")
    if created:
        typer.echo("Edit it to choose the embedding, rerank and llm services.")
    if not providers_found:
        typer.echo(f"Note: no providers file at {providers_path}", err=True)
        typer.echo("Create it with one table per provider (name, api_key) and one "
                   "sub-table per service (type, base_url, model).", err=True)
    typer.echo(f"{'Created' if info.created else 'Found'} store: {info.brain_path}")
    typer.echo(f"Embedding: {info.model or '-'} (dimension {info.dimension}), "
               f"{info.count} memories")


@app.command()
def embed(
    input: Annotated[str, typer.Argument(help="Text, a Markdown file, or a directory")],
    tags: TagsOption = None,
    force: ForceOption = False,
    dup_threshold: DupThresholdOption = None,
    local: LocalOption = False,
    global_: GlobalOption = False,
):
    """Store text, or every section of a Markdown file or directory."""
    memo = _get_memo(local, global_)
    tag_list = _parse_tags(tags)
    path = Path(input).expanduser()
    if path.is_dir():
        results = _run(lambda: memo.add_directory(path, tag_list, force=force,
                                                  threshold=dup_threshold), "embed")
    elif path.is_file():
        results = _run(lambda: memo.add_file(path, tag_list, force=force,
                                             threshold=dup_threshold), "embed")
    else:
        results = [_run(lambda: memo.add(input, tag_list, force=force,
                                         threshold=dup_threshold), "embed")]
    _report_writes(results, "Stored")


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Question in natural language")],
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n", help="Maximum results (default: config search_limit)",
    )] = None,
    threshold: Annotated[Optional[float], typer.Option(
        "--threshold", help="Minimum similarity (default: config similarity_threshold)",
    )] = None,
    after: Annotated[Optional[str], typer.Option(
        "--after", help="Only memories updated at/after: YYYY-MM-DD[ HH:MM] (UTC)",
    )] = None,
    before: Annotated[Optional[str], typer.Option(
        "--before", help="Only memories updated at/before: YYYY-MM-DD[ HH:MM] (UTC)",
    )] = None,
    no_summary: Annotated[bool, typer.Option(
        "--no-summary", help="Skip the synthesized answer",
    )] = False,
    no_decompose: Annotated[bool, typer.Option(
        "--no-decompose", help="Search the question as-is",
    )] = False,
    local: LocalOption = False,
    global_: GlobalOption = False,
):
    """Search memories; decomposes the question when an LLM is configured."""
    try:
        time_range = build_time_range(after, before)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    memo = _get_memo(local, global_)
    response: SearchResponse = _run(lambda: memo.search(
        query,
        limit=limit,
        threshold=threshold,
        time_range=time_range,
        summarize=not no_summary,
        decompose=not no_decompose,
    ), "search")

    if _get_json_output():
        typer.echo(json.dumps({
            "query": response.query,
            "leaves": response.leaves,
            "failed_leaves": [f.query for f in response.failed_leaves],
            "results": [_result_to_dict(r) for r in response.results],
            "summary": response.summary,
            "degraded": response.degraded,
        }, indent=2, ensure_ascii=False))
        return

    if len(response.leaves) > 1:
        typer.echo(f"Searched {len(response.leaves)} sub-questions", err=True)
    for failure in response.failed_leaves:
        typer.echo(f"Warning: sub-question failed: {failure.query} ({failure.error})", err=True)
    if not response.results:
        effective = threshold if threshold is not None else memo.config.similarity_threshold
        typer.echo(f"No results found above threshold {effective:.2f}")
        return
    for result in response.results:
        typer.echo(_format_result(result))
    if response.summary:
        typer.echo("\n" + response.summary)
    elif response.summary_error:
        typer.echo(f"Warning: summary unavailable: {response.summary_error}", err=True)


@app.command("list")
def list_cmd(
    local: LocalOption = False,
    global_: GlobalOption = False,
):
    """List all memories, newest first."""
    memo = _get_memo(local, global_)
    results = _run(memo.list, "list")
    if _get_json_output():
        typer.echo(json.dumps([_result_to_dict(r) for r in results], indent=2, ensure_ascii=False))
        return
    if not results:
        typer.echo("No memories stored")
        return
    for result in results:
        typer.echo(_format_result(result))
    typer.echo(f"\n{len(results)} memories")


@app.command()
def update(
    id: Annotated[str, typer.Argument(help="Memory ID")],
    content: Annotated[str, typer.Argument(help="New content")],
    tags: TagsOption = None,
    force: ForceOption = False,
    dup_threshold: DupThresholdOption = None,
    local: LocalOption = False,
    global_: GlobalOption = False,
):
    """Rewrite a memory, keeping its creation time."""
    memo = _get_memo(local, global_)
    result = _run(lambda: memo.update(id, content, _parse_tags(tags), force=force,
                                      threshold=dup_threshold), "update")
    _report_writes([result], "Updated")


@app.command()
def merge(
    ids: Annotated[list[str], typer.Argument(help="IDs of the memories to merge (two or more)")],
    content: Annotated[str, typer.Option(
        "--content", "-c", help="Content of the merged memory",
    )],
    tags: TagsOption = None,
    force: ForceOption = False,
    dup_threshold: DupThresholdOption = None,
    local: LocalOption = False,
    global_: GlobalOption = False,
):
    """Replace several memories with one; keeps the earliest creation time."""
    memo = _get_memo(local, global_)
    result = _run(lambda: memo.merge(ids, content, _parse_tags(tags), force=force,
                                     threshold=dup_threshold), "merge")
    _report_writes([result], "Merged into")


@app.command()
def delete(
    id: Annotated[str, typer.Argument(help="Memory ID")],
    local: LocalOption = False,
    global_: GlobalOption = False,
):
    """Delete a memory."""
    memo = _get_memo(local, global_)
    _run(lambda: memo.delete(id), "delete")
    typer.echo(f"Deleted {id}")


@app.command()
def clear(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
    local: LocalOption = False,
    global_: GlobalOption = False,
):
    """Delete every memory in the scope."""
    memo = _get_memo(local, global_)
    if not yes:
        typer.confirm(f"Delete all memories in {memo.config.brain_path}?", abort=True)
    count = _run(memo.clear, "clear")
    typer.echo(f"Cleared {count} memories")


@app.command()
def config(
    local: LocalOption = False,
    global_: GlobalOption = False,
):
    """Show the active scope and configured services."""
    try:
        config_dir, is_local = resolve_scope(local, global_)
        cfg = load_app_config(force_local=local, force_global=global_)
    except MemoError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    info = {
        "scope": "local" if is_local else "global",
        "config_dir": str(config_dir),
        "brain_path": str(cfg.brain_path),
        "embedding": cfg.embedding or None,
        "rerank": cfg.rerank or None,
        "llm": cfg.llm or None,
        "similarity_threshold": cfg.similarity_threshold,
        "duplicate_threshold": cfg.duplicate_threshold,
    }
    if _get_json_output():
        typer.echo(json.dumps(info, indent=2))
        return
    for key, value in info.items():
        typer.echo(f"{key}: {value if value is not None else '-'}")


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
        log_path = log_exception(e, context="memo CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
