"""
Document QA - CLI Entry Point
------------------------------
Exposes Typer commands over the retrieval engine.

Usage:
    docqa chat --doc manual.txt --doc faq.txt     # Ingest files, then interactive Q&A
    docqa ask "How do I reset it?" --doc manual.txt
    docqa ask "How do I reset it?"                # Against a saved index
    docqa ingest manual.txt faq.txt               # Chunk + embed + save FAISS index
    docqa stats                                   # Index manifest and engine stats
"""
from __future__ import annotations

import sys

# Windows cp1252 terminal fix: force UTF-8 so document text with emoji
# does not crash the Rich console renderer.
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

import asyncio
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from docqa.chunking.chunker import HierarchicalChunker
from docqa.config import EngineConfig, load_config
from docqa.schemas import AnswerResult
from docqa.serving.engine import RetrievalEngine, build_default_engine
from docqa.utils.helpers import dumps_pretty, load_json
from docqa.utils.logger import setup_logger

app = typer.Typer(
    name="docqa",
    help="Hybrid retrieval & re-ranking engine for document question answering",
    add_completion=False,
)
console = Console()

ConfigOpt = typer.Option("config/config.yaml", "--config", "-c", help="Path to engine config YAML")
IndexDirOpt = typer.Option("data/index", "--index-dir", help="FAISS index directory")


# --- Helpers ------------------------------------------------------------------

def _bootstrap(config_path: str) -> EngineConfig:
    load_dotenv()
    cfg = load_config(config_path)
    setup_logger(log_level=cfg.logging.level, log_file=cfg.logging.file)
    return cfg


async def _ingest_files(engine: RetrievalEngine, paths: list[Path]) -> None:
    chunker = HierarchicalChunker()
    for path in paths:
        if not path.exists():
            console.print(f"[red]File not found: {path}[/red]")
            raise typer.Exit(1)
        doc = chunker.chunk_file(path)
        if not doc.child_texts:
            console.print(f"[yellow]Skipping empty document: {path}[/yellow]")
            continue
        await engine.ingest(
            doc.document_id,
            doc.child_texts,
            doc.parents,
            child_parent_ids=doc.child_parent_ids,
            metadata=doc.child_metadata,
        )
        status = engine.get_processing_status(doc.document_id) or {}
        console.print(
            f"[green][OK][/green] {path.name} | {len(doc.parents)} parents, "
            f"{len(doc.child_texts)} children | "
            f"batches {status.get('completed_batches', 0)}/{status.get('total_batches', 0)}"
        )
        if status.get("dropped_chunk_ids"):
            console.print(f"[yellow]  {len(status['dropped_chunk_ids'])} children dropped (failed batches)[/yellow]")


def _print_result(result: AnswerResult) -> None:
    """Render an AnswerResult to the terminal using Rich."""
    console.print()
    console.print(
        Panel(
            Markdown(result.answer),
            title="[bold green]Answer[/bold green]" + (" [dim](cached)[/dim]" if result.cached else ""),
            border_style="green",
            expand=True,
        )
    )

    if result.sources:
        table = Table(
            "No.", "Document", "Chunk", "Children", "Score", "LLM",
            box=box.SIMPLE,
            show_header=True,
            header_style="bold dim",
        )
        for src in result.sources:
            name = str(src.get("document_name") or src.get("document_id") or "")
            table.add_row(
                str(src["index"]),
                name[:45] + ("..." if len(name) > 45 else ""),
                str(src["chunk_id"])[:30],
                str(src["child_chunks_count"]),
                f"{src['score']:.2f}",
                "-" if src.get("llm_score") is None else f"{src['llm_score']:.0f}",
            )
        console.print(table)

    meta = result.metadata
    latency = meta.get("latency_ms", {})
    flags = [k for k in ("retrieval_fallback", "generation_fallback") if meta.get(k)]
    console.print(
        f"[dim]"
        f"confidence={result.confidence:.2f}  "
        f"method={meta.get('retrieval_method', '-')}  "
        f"total={latency.get('total', 0):.0f}ms"
        + (f"  flags={','.join(flags)}" if flags else "")
        + "[/dim]\n"
    )


# --- Commands -----------------------------------------------------------------

@app.command()
def chat(
    doc: list[Path] = typer.Option(..., "--doc", "-d", help="Document(s) to ingest before chatting"),
    config: str = ConfigOpt,
    tenant: Optional[str] = typer.Option(None, "--tenant", help="Scope answers to a tenant"),
) -> None:
    """Ingest documents in memory, then answer questions interactively."""
    cfg = _bootstrap(config)
    asyncio.run(_chat_async(cfg, doc, tenant))


async def _chat_async(cfg: EngineConfig, docs: list[Path], tenant: Optional[str]) -> None:
    engine, _ = build_default_engine(cfg)

    console.print()
    console.print(
        Panel(
            "[bold cyan]Document QA[/bold cyan]\n"
            "[white]Hybrid retrieval, re-ranking & grounded answers[/white]",
            box=box.DOUBLE_EDGE,
            expand=False,
        )
    )
    with console.status("[cyan]Chunking and embedding documents...[/cyan]"):
        await _ingest_files(engine, docs)

    console.print("[dim]Type 'exit', 'quit', or press Ctrl+C to quit.[/dim]\n")
    while True:
        try:
            raw = console.input("[bold cyan]You[/bold cyan] > ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye.[/dim]")
            break

        if not raw:
            continue
        if raw.lower() in {"exit", "quit", "q"}:
            console.print("[dim]Goodbye.[/dim]")
            break

        with console.status("[cyan]Thinking...[/cyan]"):
            result = await engine.answer(raw, tenant=tenant)
        _print_result(result)


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to answer"),
    doc: Optional[list[Path]] = typer.Option(None, "--doc", "-d", help="Document(s) to ingest first"),
    index_dir: str = IndexDirOpt,
    config: str = ConfigOpt,
    tenant: Optional[str] = typer.Option(None, "--tenant", help="Scope the answer to a tenant"),
    json_out: bool = typer.Option(False, "--json", help="Print result as JSON"),
) -> None:
    """
    Answer a single question.

    \b
    With --doc the files are ingested in memory first; otherwise the saved
    index in --index-dir is searched (child-level context only, since parent
    chunks are not persisted).
    """
    cfg = _bootstrap(config)
    if not doc and not (Path(index_dir) / "faiss.index").exists():
        console.print(
            f"[red]No index found in {index_dir}[/red]\n"
            "Pass --doc FILE or run: [bold]docqa ingest FILE[/bold]"
        )
        raise typer.Exit(1)

    result = asyncio.run(_ask_async(cfg, question, doc or [], None if doc else index_dir, tenant))
    if json_out:
        console.print_json(dumps_pretty(result.to_dict()))
    else:
        _print_result(result)


async def _ask_async(
    cfg: EngineConfig,
    question: str,
    docs: list[Path],
    index_dir: Optional[str],
    tenant: Optional[str],
) -> AnswerResult:
    engine, _ = build_default_engine(cfg, index_dir=index_dir)
    if docs:
        await _ingest_files(engine, docs)
    try:
        return await engine.answer(question, tenant=tenant)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)


@app.command()
def ingest(
    files: list[Path] = typer.Argument(..., help="Text files to ingest"),
    index_dir: str = IndexDirOpt,
    config: str = ConfigOpt,
) -> None:
    """
    Chunk, embed, and index documents, then save the FAISS index.

    \b
    Steps per file:
      1. Hierarchical chunking (parents + sentence-window children)
      2. Mini-batch embedding (OpenAI text-embedding-3-small)
      3. FAISS + BM25 dual index -> --index-dir
    """
    cfg = _bootstrap(config)
    asyncio.run(_ingest_async(cfg, files, index_dir))


async def _ingest_async(cfg: EngineConfig, files: list[Path], index_dir: str) -> None:
    engine, index = build_default_engine(cfg, index_dir=index_dir)
    await _ingest_files(engine, files)
    index.save(Path(index_dir))
    console.print(f"[green][OK] Index saved[/green] -> {index_dir} ({index.faiss_index.ntotal:,} vectors)")

    metrics = engine.scheduler.get_system_metrics()
    console.print(
        f"[dim]documents={metrics['total_documents']} "
        f"avg={metrics['average_processing_time_ms']}ms "
        f"peak_batches={metrics['peak_active_batches']}[/dim]"
    )


@app.command()
def stats(
    index_dir: str = IndexDirOpt,
    config: str = ConfigOpt,
) -> None:
    """Show the saved index manifest and the effective engine settings."""
    cfg = load_config(config)
    manifest_path = Path(index_dir) / "index_manifest.json"

    table = Table("Setting", "Value", box=box.SIMPLE, header_style="bold dim")
    if manifest_path.exists():
        manifest = load_json(manifest_path)
        table.add_row("Index vectors", f"{manifest.get('total_vectors', 0):,}")
        table.add_row("Dimensions", str(manifest.get("dimensions")))
        table.add_row("Documents", str(len(manifest.get("documents", []))))
    else:
        table.add_row("Index", f"[yellow]none in {index_dir}[/yellow]")

    table.add_row("Batch size / concurrency", f"{cfg.scheduler.batch_size} / {cfg.scheduler.max_concurrent_batches}")
    table.add_row("Max results / RRF k", f"{cfg.retrieval.max_results} / {cfg.retrieval.rrf_k}")
    table.add_row("HyDE", "on" if cfg.retrieval.hyde_enabled else "off")
    table.add_row("LLM re-rank", "on" if cfg.rerank.enabled else "off")
    table.add_row(
        "Cache sizes (rewrite/rerank/answer)",
        f"{cfg.cache.query_rewrite_max_size}/{cfg.cache.rerank_max_size}/{cfg.cache.answer_max_size}",
    )
    table.add_row("Models", f"{cfg.generation.preprocessing_model} / {cfg.generation.synthesis_model}")
    console.print(table)


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
