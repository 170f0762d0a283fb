import asyncio
import logging
import random
import time
from datetime import date, datetime, timedelta, timezone
from itertools import islice
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, TypeVar

import httpx

from library_ingest.backoff import ExponentialBackoff
from library_ingest.config import Settings
from library_ingest.errors import RetryExhausted, SearchEngineError
from library_ingest.metrics import metrics
from library_ingest.opensearch import OpenSearchClient, is_transient_status, parse_bulk_response
from library_ingest.schemas import Book, Library

logger = logging.getLogger(__name__)

KST = timezone(timedelta(hours=9), "KST")

LIBRARY = "library"
BOOK = "book"

T = TypeVar("T")
Doc = Tuple[str, Dict[str, Any]]


def today_kst(now: Optional[datetime] = None) -> date:
    current = now or datetime.now(tz=timezone.utc)
    return current.astimezone(KST).date()


def partition_name(kind: str, day: date) -> str:
    return f"{kind}-{day:%Y-%m-%d}"


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    iterator = iter(items)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


def coerce_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        try:
            return int(trimmed)
        except ValueError:
            return None
    return None


def build_library_doc(library: Library) -> Dict[str, Any]:
    return {
        "libCode": library.code,
        "libName": library.name,
        "address": library.address,
        "location": {"lat": library.latitude, "lon": library.longitude},
        "tel": library.tel,
        "fax": library.fax,
        "homepage": library.homepage,
        "BookCount": coerce_int(library.book_count),
        "operatingTime": library.operating_time,
        "closed": library.closed,
    }


def build_book_doc(lib_code: str, book: Book) -> Dict[str, Any]:
    return {
        "title": book.title,
        "authors": book.authors,
        "publisher": book.publisher,
        "publicationYear": book.publication_year,
        "isbn": book.isbn,
        "setIsbn": book.set_isbn,
        "additionSymbol": book.addition_symbol,
        "vol": book.vol,
        "kdc": book.kdc,
        "bookCount": book.book_count,
        "loanCount": book.loan_count,
        "regDate": book.reg_date or None,
        "libCode": lib_code,
    }


def book_doc_id(lib_code: str, book: Book) -> str:
    return f"{lib_code}-{book.isbn}"


class PartitionLoader:
    """Writes records into day-scoped indices.

    Each partition (or, for books, each library inside the day's book
    partition) is loaded at most once: when ``skip_if_exists`` is on and any
    document is already present for that scope, nothing is written.
    """

    def __init__(
        self,
        client: OpenSearchClient,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.client = client
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self._rng = rng

    async def save_libraries(self, libraries: Iterable[Library], day: date) -> int:
        index_name = partition_name(LIBRARY, day)
        if self.settings.skip_if_exists and await self.client.count(index_name) > 0:
            logger.info("[library] %s already populated, skipping", index_name)
            metrics.inc("ingest_partition_skipped_total", {"kind": LIBRARY})
            return 0

        await self._ensure_index(index_name)
        docs = [(library.code, build_library_doc(library)) for library in libraries if library.code]
        saved = await self._load(index_name, docs, refresh="wait_for", kind=LIBRARY)
        logger.info("[library] %d libraries saved to %s", saved, index_name)
        return saved

    async def save_books(self, day: date, lib_code: str, books: Iterable[Book]) -> int:
        index_name = partition_name(BOOK, day)
        if self.settings.skip_if_exists:
            existing = await self.client.count(index_name, {"term": {"libCode": lib_code}})
            if existing > 0:
                logger.info("[book] %s already has %d docs for %s, skipping", index_name, existing, lib_code)
                metrics.inc("ingest_partition_skipped_total", {"kind": BOOK})
                return 0

        await self._ensure_index(index_name)
        docs = ((book_doc_id(lib_code, book), build_book_doc(lib_code, book)) for book in books)
        return await self._load(index_name, docs, refresh="false", kind=BOOK)

    async def _ensure_index(self, index_name: str) -> None:
        created = await self.client.create_index(index_name)
        if created:
            logger.info("created index %s", index_name)
        else:
            logger.debug("index %s already exists", index_name)

    async def _load(self, index_name: str, docs: Iterable[Doc], refresh: str, kind: str) -> int:
        total = 0
        for batch_no, batch in enumerate(chunked(docs, self.settings.bulk_size), start=1):
            accepted = await self.bulk_with_retry(index_name, batch, refresh, kind)
            logger.debug("[%s] batch %d: %d/%d accepted", kind, batch_no, accepted, len(batch))
            total += accepted
        metrics.inc("ingest_docs_total", {"kind": kind}, total)
        return total

    async def bulk_with_retry(self, index_name: str, batch: List[Doc], refresh: str, kind: str) -> int:
        backoff = ExponentialBackoff.from_settings(self.settings, clock=self._clock, rng=self._rng)
        attempt = 0
        while True:
            attempt += 1
            try:
                status, body = await self.client.bulk_index(index_name, batch, refresh)
            except httpx.TransportError as exc:
                cause = f"{type(exc).__name__}: {exc}"
            else:
                if status < 300:
                    break
                if not is_transient_status(status):
                    raise SearchEngineError(
                        f"Bulk request to {index_name} failed (HTTP {status}): {body[:500]}",
                        status=status,
                        stage=kind.upper(),
                    )
                cause = f"HTTP {status}"

            delay = backoff.next_backoff()
            if delay is None:
                raise RetryExhausted(
                    f"Bulk request to {index_name} still failing after {attempt} attempts ({cause})",
                    attempts=attempt,
                    retryable=True,
                    stage=kind.upper(),
                )
            metrics.inc("ingest_bulk_retry_total", {"kind": kind})
            logger.warning("[bulk] %s attempt %d failed (%s), retrying in %.1fs", index_name, attempt, cause, delay)
            await self._sleep(delay)

        result = parse_bulk_response(body, status)
        accepted = 0
        rejected = []
        for item in result.items:
            content = item.content
            if content.ok:
                accepted += 1
            else:
                rejected.append(content)
        if rejected:
            first = rejected[0]
            logger.warning(
                "[bulk] %s: %d items rejected, first id=%s status=%s error=%s",
                index_name,
                len(rejected),
                first.id,
                first.status,
                first.error,
            )
        return accepted
