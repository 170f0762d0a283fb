import argparse
import asyncio
import logging
import os
import sys
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from library_ingest.config import Settings
from library_ingest.errors import BookSourceError, ConfigError, IngestException
from library_ingest.index_templates import put_templates
from library_ingest.loader import PartitionLoader, today_kst
from library_ingest.metrics import metrics
from library_ingest.opensearch import OpenSearchClient
from library_ingest.sources.books import fetch_books
from library_ingest.sources.libraries import fetch_libraries, fetch_page_lib_codes

logger = logging.getLogger("library_ingest")


@dataclass
class LibraryOutcome:
    page_lib_code: str
    lib_code: Optional[str] = None
    saved: int = 0
    failure: Optional[str] = None


@dataclass
class RunSummary:
    day: date
    libraries_saved: int = 0
    books_saved: int = 0
    saved: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)


async def ingest_library(
    http: httpx.AsyncClient,
    loader: PartitionLoader,
    settings: Settings,
    day: date,
    page_lib_code: str,
) -> LibraryOutcome:
    """Fetch and load one library's books; failures are logged, never raised."""
    outcome = LibraryOutcome(page_lib_code=page_lib_code)
    try:
        outcome.lib_code, books = await fetch_books(http, settings, page_lib_code)
    except BookSourceError as exc:
        outcome.failure = exc.kind
        logger.warning("[root] skipping page library %s: %s (%s)", page_lib_code, exc.kind, exc)
    except httpx.HTTPError as exc:
        outcome.failure = "http"
        logger.warning("[root] skipping page library %s: %s", page_lib_code, exc)
    except Exception as exc:
        outcome.failure = "unexpected"
        logger.exception("[root] skipping page library %s: %s", page_lib_code, exc)
    else:
        try:
            outcome.saved = await loader.save_books(day, outcome.lib_code, books)
        except (IngestException, httpx.HTTPError) as exc:
            outcome.failure = "bulk"
            logger.error("[root] loading books for %s failed: %s", outcome.lib_code, exc)
        except Exception as exc:
            outcome.failure = "unexpected"
            logger.exception("[root] loading books for %s failed: %s", outcome.lib_code, exc)
        else:
            logger.info("[root] %d books saved for %s", outcome.saved, outcome.lib_code)

    if outcome.failure:
        metrics.inc("ingest_book_source_failure_total", {"kind": outcome.failure})
    return outcome


async def run(
    settings: Settings,
    *,
    day: Optional[date] = None,
    only: Optional[Sequence[str]] = None,
    http: Optional[httpx.AsyncClient] = None,
    engine: Optional[OpenSearchClient] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RunSummary:
    day = day or today_kst()
    summary = RunSummary(day=day)

    async with AsyncExitStack() as stack:
        if http is None:
            http = await stack.enter_async_context(httpx.AsyncClient(timeout=settings.http_timeout_sec))
        if engine is None:
            engine = await stack.enter_async_context(OpenSearchClient(settings))
        loader = PartitionLoader(engine, settings, sleep=sleep)

        await put_templates(engine)

        libraries = await fetch_libraries(http, settings)
        summary.libraries_saved = await loader.save_libraries(libraries, day)
        logger.info("[root] Libraries saved")

        page_lib_codes = await fetch_page_lib_codes(http, settings)
        if only:
            wanted = set(only)
            page_lib_codes = [code for code in page_lib_codes if code in wanted]

        semaphore = asyncio.Semaphore(max(1, settings.book_concurrency))

        async def bounded(page_lib_code: str) -> LibraryOutcome:
            async with semaphore:
                return await ingest_library(http, loader, settings, day, page_lib_code)

        outcomes: List[LibraryOutcome] = await asyncio.gather(*(bounded(code) for code in page_lib_codes))

    for outcome in outcomes:
        if outcome.failure:
            summary.failed[outcome.page_lib_code] = outcome.failure
        elif outcome.lib_code is not None:
            summary.saved[outcome.lib_code] = summary.saved.get(outcome.lib_code, 0) + outcome.saved
            summary.books_saved += outcome.saved
    return summary


def _parse_day(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Load the data4library catalog into dated search indices.")
    parser.add_argument("--date", type=_parse_day, help="partition date (KST), defaults to today")
    parser.add_argument("--no-skip-existing", action="store_true", help="load even when the partition has documents")
    parser.add_argument("--concurrency", type=int, help="libraries processed at once in the book stage")
    parser.add_argument("--only", action="append", metavar="PAGE_ID", help="restrict the book stage to these page library ids")
    args = parser.parse_args(argv)

    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        logger.error("configuration error: %s", exc)
        return 2
    settings = settings.override(
        {
            "skip_if_exists": False if args.no_skip_existing else None,
            "book_concurrency": max(1, args.concurrency) if args.concurrency else None,
        }
    )

    try:
        summary = asyncio.run(run(settings, day=args.date, only=args.only))
    except (IngestException, httpx.HTTPError) as exc:
        logger.exception("[root] ingestion aborted: %s", exc)
        return 1

    logger.info(
        "[root] ingestion complete for %s: libraries=%d books=%d libraries_loaded=%d libraries_failed=%d",
        summary.day,
        summary.libraries_saved,
        summary.books_saved,
        len(summary.saved),
        len(summary.failed),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
