"""
Command-line entrypoint for the predictions pipeline.

Usage:
  python -m results.main reconcile [--days-back N] [--days-forward N] [--json]
  python -m results.main scrape [--date YYYY-MM-DD] [--days-back N] [--days-forward N]
  python -m results.main import-calendar --competition ID [--name NAME] [--file PATH | --url URL]
  python -m results.main refresh-competitions
  python -m results.main recalculate
  python -m results.main compact

scrape is a dry run: it prints what the results pages hold and writes nothing.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections import defaultdict
from datetime import date
from pathlib import Path
from typing import Any, Optional, Sequence

from ingest.calendar import CalendarFeedError, normalize_feed_url
from ingest.normalization.normalizer import build_normalizer
from ingest.service import calendar_client, import_calendar, refresh_competitions
from shared.config import Settings, get_settings
from shared.models.domain import Competition, ScrapedResult
from shared.utils.logging import get_logger, setup_logging
from storage.fixture_store import FixtureStore
from storage.repository import FixtureRepository, create_repository

from results.pipeline import results_client, run_reconciliation
from results.scoring import ScoringService
from results.scraper import ResultScraper
from results.sources.bbc import BBCResultSource

logger = get_logger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _describe_row(row: ScrapedResult) -> str:
    line = f"{row.raw_team_a} {row.score_a} - {row.score_b} {row.raw_team_b}"
    if row.score_a != row.score_b:
        winner = row.raw_team_a if row.score_a > row.score_b else row.raw_team_b
        line += f"  -> winner: {winner} by {abs(row.score_a - row.score_b)}"
    else:
        line += "  -> draw"
    return line


# ── Commands ────────────────────────────────────────────────────────────

async def cmd_reconcile(args: argparse.Namespace, settings: Settings, repository: FixtureRepository) -> int:
    summary = await run_reconciliation(
        args.days_back,
        args.days_forward,
        repository=repository,
        settings=settings,
    )
    if args.json:
        _print_json(summary.model_dump(mode="json", by_alias=True))
        return 0

    print(f"Rows found: {summary.rows_found} across {summary.dates_fetched} date(s)")
    print(f"Fixtures updated: {summary.updated_count}")
    print(f"Predictions scored: {summary.predictions_scored}")
    if summary.unmatched:
        print(f"Unmatched results ({len(summary.unmatched)}):")
        for row in summary.unmatched:
            print(f"  - {row.source_date.isoformat()}  {_describe_row(row)}")
    if summary.needs_review:
        print(f"Needs manual review ({len(summary.needs_review)}):")
        for fixture in summary.needs_review:
            print(f"  - {fixture.kickoff.isoformat()}  {fixture.describe()}  [{fixture.competition_id}]")
    return 0


async def cmd_scrape(args: argparse.Namespace, settings: Settings, repository: FixtureRepository) -> int:
    async with results_client(settings) as client:
        scraper = ResultScraper(BBCResultSource(client, settings), settings)
        rows = await scraper.fetch_window(args.days_back, args.days_forward, today=args.date)

    by_date: dict[date, list[ScrapedResult]] = defaultdict(list)
    for row in rows:
        by_date[row.source_date].append(row)

    print("==================== SUMMARY ====================")
    for day in sorted(by_date):
        print(f"{day.isoformat()}: {len(by_date[day])} result(s)")
        for row in by_date[day]:
            print(f"  * {_describe_row(row)}")
    print(f"Total: {len(rows)} result(s)")
    return 0


async def cmd_import_calendar(args: argparse.Namespace, settings: Settings, repository: FixtureRepository) -> int:
    known = {c.id: c for c in await repository.load_competitions()}
    competition = known.get(args.competition) or Competition(
        id=args.competition,
        name=args.name or args.competition,
        url=args.url,
    )
    if args.name:
        competition = competition.model_copy(update={"name": args.name})

    if args.file:
        feed_text = Path(args.file).read_text(encoding="utf-8")
    else:
        url = normalize_feed_url(args.url or competition.url)
        if not url:
            print(f"Competition {competition.id} has no feed URL; pass --file or --url", file=sys.stderr)
            return 2
        async with calendar_client(settings) as client:
            feed_text = await client.get_text(url)

    try:
        summary = await import_calendar(repository, feed_text, competition, settings)
    except CalendarFeedError as exc:
        print(f"Import failed: {exc}", file=sys.stderr)
        return 1
    print(f"{competition.name}: {summary.added} new, {summary.updated} updated, {summary.skipped} skipped")
    return 0


async def cmd_refresh_competitions(args: argparse.Namespace, settings: Settings, repository: FixtureRepository) -> int:
    summary = await refresh_competitions(repository, settings)
    print(f"Refresh complete: {summary.added} added, {summary.updated} updated")
    for name in summary.failed:
        print(f"  failed: {name}")
    return 1 if summary.failed else 0


async def cmd_recalculate(args: argparse.Namespace, settings: Settings, repository: FixtureRepository) -> int:
    normalizer = build_normalizer(settings.alias_file)
    store = FixtureStore(await repository.load_fixtures(), settings=settings, team_key=normalizer.match_key)
    scored = await ScoringService(store, repository, settings, team_key=normalizer.match_key).recalculate_all()
    if store.dirty:
        await repository.persist_fixtures(store.fixtures)
    print(f"Recalculated {scored} prediction(s)")
    return 0


async def cmd_compact(args: argparse.Namespace, settings: Settings, repository: FixtureRepository) -> int:
    normalizer = build_normalizer(settings.alias_file)
    store = FixtureStore(await repository.load_fixtures(), settings=settings, team_key=normalizer.match_key)
    replaced = store.compact()
    if not replaced:
        print("No duplicate fixtures found")
        return 0
    # Predictions move first so no pick is left pointing at a deleted fixture
    moved = await repository.reassign_predictions(replaced)
    await repository.persist_fixtures(store.fixtures, removed_ids=store.removed_ids)
    print(f"Removed {len(replaced)} duplicate fixture(s); {moved} prediction(s) re-pointed, {len(store)} remain")
    return 0


COMMANDS = {
    "reconcile": cmd_reconcile,
    "scrape": cmd_scrape,
    "import-calendar": cmd_import_calendar,
    "refresh-competitions": cmd_refresh_competitions,
    "recalculate": cmd_recalculate,
    "compact": cmd_compact,
}


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="results", description="Rugby predictions pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_window(p: argparse.ArgumentParser) -> None:
        p.add_argument("--days-back", type=int, default=settings.default_days_back)
        p.add_argument("--days-forward", type=int, default=settings.default_days_forward)

    p = sub.add_parser("reconcile", help="scrape a window of results pages and attach new results")
    add_window(p)
    p.add_argument("--json", action="store_true", help="print the run summary as JSON")

    p = sub.add_parser("scrape", help="dry run: print results found per date")
    add_window(p)
    p.add_argument("--date", type=date.fromisoformat, default=None, help="centre date (default today)")

    p = sub.add_parser("import-calendar", help="import one competition calendar feed")
    p.add_argument("--competition", required=True, help="competition id")
    p.add_argument("--name", help="competition name (default: stored name, else the id)")
    src = p.add_mutually_exclusive_group()
    src.add_argument("--file", help="path to an .ics file")
    src.add_argument("--url", help="feed URL (webcal:// accepted)")

    sub.add_parser("refresh-competitions", help="re-import every competition with a feed URL")
    sub.add_parser("recalculate", help="re-derive points for every resolved fixture")
    sub.add_parser("compact", help="collapse duplicate fixtures left by older imports")
    return parser


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    async with create_repository(settings) as repository:
        return await COMMANDS[args.command](args, settings, repository)


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    setup_logging("cli", {"command": args.command})
    logger.debug("cli_invoked", command=args.command)
    return asyncio.run(_run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
