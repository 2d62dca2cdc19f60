#!/usr/bin/env python3
"""
ks: CLI for kbsmith knowledge bases

Usage:
    ks define "attention in transformers"     # Standardize a concept
    ks create "attention" --type=Mechanism    # Define and write a note
    ks duplicates                             # List duplicate candidates
    ks merge PAIR_ID --keep=NODE_ID           # Preview a merge
    ks merge-confirm PIPELINE_ID              # Apply a previewed merge
    ks undo SNAPSHOT_ID                       # Restore a snapshot
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, NoReturn

import click

from . import __version__ as KBSMITH_VERSION
from .config import KNOWLEDGE_TYPES, ConfigurationError, get_kb_root
from .errors import Err, KBError
from .models import PipelineContext
from .services import Services


def run_async(coro):
    """Run async function synchronously."""
    return asyncio.run(coro)


@asynccontextmanager
async def open_services() -> AsyncIterator[Services]:
    services = await Services.open(get_kb_root())
    try:
        yield services
    finally:
        await services.close()


def output(data: Any, as_json: bool = False) -> None:
    """Output data as JSON or formatted text."""
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(data)


def format_table(rows: list[dict], columns: list[str], max_widths: dict | None = None) -> str:
    """Format rows as a simple table."""
    if not rows:
        return ""

    max_widths = max_widths or {}
    widths = {col: len(col) for col in columns}
    cells: list[dict[str, str]] = []
    for row in rows:
        cell = {}
        for col in columns:
            val = str(row.get(col, ""))
            limit = max_widths.get(col, 50)
            if len(val) > limit:
                val = val[: limit - 3] + "..."
            cell[col] = val
            widths[col] = max(widths[col], len(val))
        cells.append(cell)

    lines = [
        "  ".join(col.upper().ljust(widths[col]) for col in columns),
        "  ".join("-" * widths[col] for col in columns),
    ]
    lines.extend("  ".join(cell[col].ljust(widths[col]) for col in columns) for cell in cells)
    return "\n".join(lines)


def _handle_error(ctx: click.Context, error: Exception, exit_code: int = 1) -> NoReturn:
    """Print an error, as JSON when --json-errors is set, and exit."""
    json_errors = ctx.obj.get("json_errors", False) if ctx.obj else False

    if isinstance(error, KBError):
        if json_errors:
            click.echo(error.to_json(), err=True)
        else:
            click.echo(f"Error [{error.code.value}]: {error.message}", err=True)
    elif json_errors:
        click.echo(json.dumps({"error": {"code": "CONFIGURATION_ERROR", "message": str(error)}}), err=True)
    else:
        click.echo(f"Error: {error}", err=True)
    raise SystemExit(exit_code)


def _run(ctx: click.Context, coro: Any) -> Any:
    try:
        return run_async(coro)
    except (KBError, ConfigurationError) as e:
        _handle_error(ctx, e)


def _unwrap(result: Any) -> Any:
    if isinstance(result, Err):
        raise result.error
    return result.value


def _pipeline_summary(context: PipelineContext) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "pipeline_id": context.pipeline_id,
        "kind": context.kind,
        "stage": context.stage,
        "node_id": context.node_id,
        "path": context.file_path,
    }
    if context.kind == "merge":
        summary["pair_id"] = context.merge_pair_id
        summary["deleted_path"] = context.delete_file_path
    if context.error:
        summary["error"] = context.error.model_dump(mode="json")
    return summary


# ─────────────────────────────────────────────────────────────────────────────
# Main CLI Group
# ─────────────────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=KBSMITH_VERSION, prog_name="ks")
@click.option("--json-errors", "json_errors", is_flag=True, help="Output errors as JSON (for programmatic use)")
@click.option(
    "--log-level",
    envvar="KBSMITH_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity (default INFO)",
)
@click.pass_context
def cli(ctx: click.Context, json_errors: bool, log_level: str | None):
    """ks: LLM-assisted concept notes for a Markdown knowledge base.

    \b
    Quick start:
      ks define "attention in transformers"
      ks create "attention" --type=Mechanism --parent="Deep Learning"
      ks duplicates
      ks merge a--b --keep=a && ks merge-confirm merge-...
    """
    from ._logging import configure_logging

    ctx.ensure_object(dict)
    ctx.obj["json_errors"] = json_errors
    configure_logging(log_level)


# ─────────────────────────────────────────────────────────────────────────────
# Create
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("text")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def define(ctx: click.Context, text: str, as_json: bool):
    """Standardize a concept and classify its knowledge type."""

    async def _define() -> dict[str, Any]:
        async with open_services() as services:
            return _unwrap(await services.create.define(text)).model_dump(mode="json")

    concept = _run(ctx, _define())
    if as_json:
        output(concept, as_json=True)
        return

    click.echo(f"Primary type: {concept['primary_type'] or '-'}")
    for concept_type, names in concept["standard_names"].items():
        confidence = concept["type_confidences"].get(concept_type)
        label = f"{names['english']} / {names['chinese']}" if names.get("chinese") else names["english"]
        suffix = f" ({confidence:.2f})" if confidence is not None else ""
        click.echo(f"  {concept_type}: {label}{suffix}")
    if concept["core_definition"]:
        click.echo(f"\n{concept['core_definition']}")


@cli.command()
@click.argument("text")
@click.option("--type", "concept_type", type=click.Choice(KNOWLEDGE_TYPES), help="Knowledge type (default: primary)")
@click.option("--parent", "parents", multiple=True, help="Parent note title (repeatable)")
@click.option("--dir", "target_dir", help="KB directory for the note (default: by knowledge type)")
@click.option("--sources", default="", help="Source hints passed to the writer")
@click.option("--timeout", default=600.0, show_default=True, help="Seconds to wait for the pipeline")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def create(
    ctx: click.Context,
    text: str,
    concept_type: str | None,
    parents: tuple[str, ...],
    target_dir: str | None,
    sources: str,
    timeout: float,
    as_json: bool,
):
    """Define a concept and write its note.

    \b
    Examples:
      ks create "attention in transformers"
      ks create "attention" --type=Mechanism --parent="Deep Learning"
    """

    async def _create() -> dict[str, Any]:
        async with open_services() as services:
            concept = _unwrap(await services.create.define(text))
            chosen = concept_type or concept.primary_type or next(iter(concept.standard_names))
            pipeline_id = _unwrap(
                await services.create.start_create_pipeline(
                    concept,
                    chosen,
                    parents=list(parents),
                    target_dir=target_dir,
                    sources=sources,
                    user_input=text,
                )
            )
            final = await services.create.wait_for_stage(pipeline_id, "completed", "failed", timeout=timeout)
            await services.wait_idle()
            return _pipeline_summary(services.create.get_context(pipeline_id) or final)

    summary = _run(ctx, _create())
    if summary.get("error"):
        _handle_error(ctx, KBError.from_dict(summary["error"]))
    if as_json:
        output(summary, as_json=True)
    else:
        click.echo(f"Created {summary['path']} ({summary['node_id']})")


# ─────────────────────────────────────────────────────────────────────────────
# Duplicates
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.option(
    "--status",
    type=click.Choice(["pending", "merging", "merged", "dismissed", "all"]),
    default="pending",
    show_default=True,
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def duplicates(ctx: click.Context, status: str, as_json: bool):
    """List duplicate candidate pairs."""

    async def _list() -> list[dict[str, Any]]:
        async with open_services() as services:
            pairs = services.duplicates.get_pairs(None if status == "all" else status)  # type: ignore[arg-type]
            rows = []
            for pair in pairs:
                a = services.vector_index.get_entry(pair.node_id_a)
                b = services.vector_index.get_entry(pair.node_id_b)
                row = pair.model_dump(mode="json")
                row["path_a"] = a.path if a else ""
                row["path_b"] = b.path if b else ""
                rows.append(row)
            return rows

    rows = _run(ctx, _list())
    if as_json:
        output(rows, as_json=True)
        return
    if not rows:
        click.echo("No duplicate pairs found.")
        return
    click.echo(
        format_table(rows, ["id", "type", "similarity", "status", "path_a", "path_b"], {"id": 40, "path_a": 40, "path_b": 40})
    )


@cli.command()
@click.argument("pair_id")
@click.pass_context
def dismiss(ctx: click.Context, pair_id: str):
    """Mark a pair as not duplicates; it will not be suggested again."""

    async def _dismiss() -> None:
        async with open_services() as services:
            _unwrap(await services.duplicates.mark_as_non_duplicate(pair_id))

    _run(ctx, _dismiss())
    click.echo(f"Dismissed {pair_id}")


# ─────────────────────────────────────────────────────────────────────────────
# Merge
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("pair_id")
@click.option("--keep", "keep_node_id", required=True, help="Node id of the note that survives")
@click.option("--final-name", "final_file_name", help="Rename the merged note (same directory)")
@click.option("--yes", "-y", "confirm", is_flag=True, help="Apply the merge without a separate confirm step")
@click.option("--timeout", default=600.0, show_default=True, help="Seconds to wait for the merge preview")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def merge(
    ctx: click.Context,
    pair_id: str,
    keep_node_id: str,
    final_file_name: str | None,
    confirm: bool,
    timeout: float,
    as_json: bool,
):
    """Merge a duplicate pair into one note.

    Without --yes the merged note is previewed and the pipeline waits for
    `ks merge-confirm` or `ks merge-cancel`.
    """

    async def _merge() -> dict[str, Any]:
        async with open_services() as services:
            orchestrator = services.merge
            pipeline_id = _unwrap(await orchestrator.start_merge_pipeline(pair_id, keep_node_id, final_file_name))
            preview = await orchestrator.wait_for_stage(pipeline_id, "review_changes", "failed", timeout=timeout)
            if preview.stage == "review_changes" and confirm:
                _unwrap(await orchestrator.confirm_write(pipeline_id))
                await services.wait_idle()
            summary = _pipeline_summary(orchestrator.get_context(pipeline_id) or preview)
            summary["preview"] = preview.new_content
            return summary

    summary = _run(ctx, _merge())
    if summary.get("error"):
        _handle_error(ctx, KBError.from_dict(summary["error"]))
    if as_json:
        output(summary, as_json=True)
        return
    if summary["stage"] == "review_changes":
        click.echo(summary["preview"] or "")
        click.echo(f"Run `ks merge-confirm {summary['pipeline_id']}` to apply, or `ks merge-cancel` to discard.")
    else:
        click.echo(f"Merged into {summary['path']}; removed {summary['deleted_path']}")


@cli.command("merge-confirm")
@click.argument("pipeline_id")
@click.pass_context
def merge_confirm(ctx: click.Context, pipeline_id: str):
    """Apply a previewed merge."""

    async def _confirm() -> dict[str, Any]:
        async with open_services() as services:
            _unwrap(await services.merge.confirm_write(pipeline_id))
            await services.wait_idle()
            context = services.merge.get_context(pipeline_id)
            assert context is not None
            return _pipeline_summary(context)

    summary = _run(ctx, _confirm())
    click.echo(f"Merged into {summary['path']}; removed {summary['deleted_path']}")


@cli.command("merge-cancel")
@click.argument("pipeline_id")
@click.pass_context
def merge_cancel(ctx: click.Context, pipeline_id: str):
    """Discard a previewed merge and return the pair to pending."""

    async def _cancel() -> None:
        async with open_services() as services:
            _unwrap(await services.merge.cancel_pipeline(pipeline_id))

    _run(ctx, _cancel())
    click.echo(f"Cancelled {pipeline_id}")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def pipelines(ctx: click.Context, as_json: bool):
    """List merges waiting for confirmation."""

    async def _list() -> list[dict[str, Any]]:
        async with open_services() as services:
            return [_pipeline_summary(c) for c in services.merge.get_active_pipelines()]

    rows = _run(ctx, _list())
    if as_json:
        output(rows, as_json=True)
        return
    if not rows:
        click.echo("No pipelines awaiting confirmation.")
        return
    click.echo(format_table(rows, ["pipeline_id", "stage", "pair_id", "path", "deleted_path"]))


# ─────────────────────────────────────────────────────────────────────────────
# Snapshots
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--path", "note_path", help="Only snapshots of this note")
@click.option("--cleanup", is_flag=True, help="Apply retention limits first")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def snapshots(ctx: click.Context, note_path: str | None, cleanup: bool, as_json: bool):
    """List snapshots, newest first."""

    async def _list() -> list[dict[str, Any]]:
        async with open_services() as services:
            if cleanup:
                await services.snapshots.cleanup()
            records = await services.snapshots.list_snapshots(note_path)
            return [r.model_dump(mode="json") for r in records]

    rows = _run(ctx, _list())
    if as_json:
        output(rows, as_json=True)
        return
    if not rows:
        click.echo("No snapshots found.")
        return
    click.echo(format_table(rows, ["id", "path", "label", "created"], {"path": 50, "label": 40}))


@cli.command()
@click.argument("snapshot_id")
@click.pass_context
def undo(ctx: click.Context, snapshot_id: str):
    """Restore a note from a snapshot."""

    async def _undo() -> str:
        async with open_services() as services:
            return _unwrap(await services.undo(snapshot_id))

    path = _run(ctx, _undo())
    click.echo(f"Restored {path}")


# ─────────────────────────────────────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────────────────────────────────────


def main():
    """Entry point for ks CLI."""
    cli()


if __name__ == "__main__":
    main()
