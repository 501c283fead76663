"""CLI entrypoint: ingest feeds, inspect keywords, drive publishing runs and images."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence

from rich.table import Table

from config import Settings, get_settings
from core import ArticleSet, Keyword, MarketMover, RunOutcome, SelectionItem
from orchestrator import (
    FileSelectionSink,
    HttpPipelineGateway,
    HttpSelectionSink,
    RunOrchestrator,
    format_diagnostic,
    summarize_outcome,
)
from pipeline import ArticleFilter, build_article_set, filter_articles, parse_selection, to_selection
from render import HttpImageAdapter, ImageGenerationController
from sources import BinanceMoverSource, aggregate_feeds
from utils.exceptions import ConfigurationError
from utils.logger import attach_package_loggers, console


DEFAULT_ARTICLES = Path("data") / "articles.json"


class _FetchedMovers:
    """Serves an already fetched mover list to `aggregate_feeds`."""

    def __init__(self, movers: Optional[List[MarketMover]]):
        self._movers = movers

    async def fetch_movers(self) -> Optional[List[MarketMover]]:
        return self._movers


def _load_articles(path: Path) -> ArticleSet:
    return ArticleSet.model_validate_json(path.read_text(encoding="utf-8"))


def _keyword_table(title: str, keywords: Sequence[Keyword]) -> Table:
    table = Table(title=title)
    table.add_column("keyword")
    table.add_column("score", justify="right")
    table.add_column("freq", justify="right")
    table.add_column("boosted")
    for keyword in keywords:
        table.add_row(keyword.label, f"{keyword.score:.3f}", str(keyword.frequency), "yes" if keyword.boosted else "")
    return table


def _outcome_table(outcome: RunOutcome) -> Table:
    table = Table(title=f"run {outcome.token} [{outcome.state.value}]")
    table.add_column("item")
    table.add_column("state")
    table.add_column("id", justify="right")
    table.add_column("matched by")
    table.add_column("error")
    for status in outcome.items:
        table.add_row(
            status.item_id,
            status.state.value,
            "" if status.resolved_id is None else str(status.resolved_id),
            status.matched_by or "",
            status.error or "",
        )
    return table


async def _ingest(settings: Settings, hours: Optional[int], output: Path) -> ArticleSet:
    movers = await BinanceMoverSource(settings.market, settings.scoring).fetch_movers()
    items = await aggregate_feeds(settings=settings.feed, hours=hours, movers=_FetchedMovers(movers))
    article_set = build_article_set(
        items,
        movers,
        text_settings=settings.text,
        scoring_settings=settings.scoring,
        hours=int(hours or settings.feed.hours),
    )
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(article_set.model_dump_json(indent=2), encoding="utf-8")
    return article_set


def _selection(args: argparse.Namespace) -> List[SelectionItem]:
    article_set = _load_articles(Path(args.articles))
    parsed = parse_selection(args.select, article_set.articles)
    if parsed.unknown:
        console.print(f"[yellow]unknown selection tokens: {', '.join(parsed.unknown)}[/yellow]")
    return to_selection(parsed.items)


def _orchestrator(settings: Settings, sink_kind: str) -> RunOrchestrator:
    if sink_kind not in ("http", "file"):
        raise ConfigurationError(f"unknown selection sink: {sink_kind}", {"allowed": ["http", "file"]})
    gateway = HttpPipelineGateway(settings.pipeline)
    sink = HttpSelectionSink(settings.pipeline) if sink_kind == "http" else FileSelectionSink(settings.pipeline)
    return RunOrchestrator(gateway, sink, settings=settings.orchestrator)


def _print_outcome(outcome: RunOutcome) -> None:
    console.print(_outcome_table(outcome))
    for diagnostic in outcome.diagnostics:
        console.print(format_diagnostic(diagnostic))
    console.print_json(json.dumps(summarize_outcome(outcome)))


async def _run(settings: Settings, selection: List[SelectionItem], sink_kind: str) -> RunOutcome:
    orchestrator = _orchestrator(settings, sink_kind)
    try:
        return await orchestrator.run(selection)
    finally:
        await orchestrator.gateway.aclose()
        if isinstance(orchestrator.sink, HttpSelectionSink):
            await orchestrator.sink.aclose()


async def _images(settings: Settings, selection: List[SelectionItem], args: argparse.Namespace) -> None:
    orchestrator = _orchestrator(settings, args.sink)
    adapter = HttpImageAdapter(settings.image)
    controller = ImageGenerationController(adapter, orchestrator, settings=settings.image)
    try:
        outcome = await orchestrator.run(selection)
        _print_outcome(outcome)
        job = controller.resolve_targets(
            selection,
            selected=[token for token in (args.only or "").split(",") if token],
            mode=args.filter,
            query=args.query,
        )
        await controller.run_batch(job, selection)
        for item_id in job.completed:
            console.print(f"[green]{item_id}[/green] {controller.images[item_id].url}")
            if args.attach:
                result = await controller.confirm_attach(controller.request_attach(item_id).token)
                console.print(f"  attach {'ok' if result.success else 'failed: ' + str(result.error)}")
        for item_id, error in job.failed.items():
            console.print(f"[red]{item_id}[/red] {error}")
    finally:
        await adapter.aclose()
        await orchestrator.gateway.aclose()
        if isinstance(orchestrator.sink, HttpSelectionSink):
            await orchestrator.sink.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="newsdesk aggregation and publishing-run CLI")
    parser.add_argument("--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest")
    ingest.add_argument("--hours", type=int, default=None)
    ingest.add_argument("--output", default=str(DEFAULT_ARTICLES))

    keywords = sub.add_parser("keywords")
    keywords.add_argument("--articles", default=str(DEFAULT_ARTICLES))

    browse = sub.add_parser("browse")
    browse.add_argument("--articles", default=str(DEFAULT_ARTICLES))
    browse.add_argument("--query", default="")
    browse.add_argument("--source", default="")
    browse.add_argument("--keyword", default="")
    browse.add_argument("--sort", choices=["newest", "oldest"], default="newest")
    browse.add_argument("--page", type=int, default=1)

    run = sub.add_parser("run")
    run.add_argument("--articles", default=str(DEFAULT_ARTICLES))
    run.add_argument("--select", required=True, help='display numbers or ids, e.g. "2,5,21"')
    run.add_argument("--sink", choices=["http", "file"], default=None)

    images = sub.add_parser("images")
    images.add_argument("--articles", default=str(DEFAULT_ARTICLES))
    images.add_argument("--select", required=True)
    images.add_argument("--sink", choices=["http", "file"], default=None)
    images.add_argument("--only", default="", help="comma separated item ids to generate for")
    images.add_argument("--filter", choices=["all", "noimg", "hasimg", "done", "failed"], default="all")
    images.add_argument("--query", default="")
    images.add_argument("--attach", action="store_true")

    args = parser.parse_args()
    attach_package_loggers(logging.DEBUG if args.verbose else logging.INFO)
    settings = get_settings()

    if args.command == "ingest":
        article_set = asyncio.run(_ingest(settings, args.hours, Path(args.output)))
        console.print(
            json.dumps(
                {"articles": len(article_set.articles), "boosted": article_set.boosted, "output": args.output},
                ensure_ascii=False,
            )
        )
        return

    if args.command == "keywords":
        article_set = _load_articles(Path(args.articles))
        console.print(_keyword_table("top keywords", article_set.top_keywords))
        console.print(_keyword_table("most frequent", article_set.most_frequent))
        return

    if args.command == "browse":
        article_set = _load_articles(Path(args.articles))
        page = filter_articles(
            article_set.articles,
            ArticleFilter(
                query=args.query,
                source=args.source,
                keyword=args.keyword,
                sort=args.sort,
                page=args.page,
                page_size=settings.text.page_size,
            ),
            prefixes=settings.scoring.exchange_prefixes,
        )
        table = Table(title=f"page {page.page}/{page.pages} ({page.total} articles)")
        table.add_column("#", justify="right")
        table.add_column("source")
        table.add_column("title")
        for item in page.items:
            table.add_row(str(item.num_id or ""), item.source, item.title)
        console.print(table)
        return

    selection = _selection(args)
    if not selection:
        console.print("[red]nothing selected[/red]")
        raise SystemExit(2)
    sink_kind = args.sink or settings.pipeline.sink

    if args.command == "run":
        _print_outcome(asyncio.run(_run(settings, selection, sink_kind)))
        return

    if args.command == "images":
        args.sink = sink_kind
        asyncio.run(_images(settings, selection, args))
        return


if __name__ == "__main__":
    main()
