import asyncio
import math
from datetime import date, datetime, timezone

import httpx
import pytest

from fakes import FakeClock, FakeSearchEngine, make_settings, mock_client
from library_ingest.errors import RetryExhausted, SearchEngineError
from library_ingest.loader import PartitionLoader, chunked, partition_name, today_kst
from library_ingest.metrics import metrics
from library_ingest.opensearch import OpenSearchClient, is_transient_status
from library_ingest.schemas import Book, Library

DAY = date(2024, 3, 15)


def _book(num: int, isbn: str) -> Book:
    return Book(
        num=num,
        title=f"도서 {num}",
        authors="저자",
        publisher="출판사",
        publication_year="2020",
        isbn=isbn,
        set_isbn="",
        addition_symbol="03810",
        vol="",
        kdc="813.6",
        book_count=1,
        loan_count=num,
        reg_date="2021-03-04",
    )


def _library(code, name="도서관"):
    return Library(libCode=code, libName=name, latitude="37.5", longitude="127.0", BookCount="100")


def _run(engine, action, clock=None, **overrides):
    clock = clock or FakeClock()
    settings = make_settings(**overrides)

    async def scenario():
        async with mock_client(engine) as client:
            loader = PartitionLoader(
                OpenSearchClient(settings, client=client),
                settings,
                sleep=clock.sleep,
                clock=clock,
                rng=lambda: 0.5,
            )
            return await action(loader)

    return asyncio.run(scenario())


def test_partition_name_uses_kind_and_day():
    assert partition_name("book", DAY) == "book-2024-03-15"


def test_today_kst_rolls_over_at_kst_midnight():
    assert today_kst(datetime(2024, 3, 14, 14, 59, tzinfo=timezone.utc)) == date(2024, 3, 14)
    assert today_kst(datetime(2024, 3, 14, 15, 0, tzinfo=timezone.utc)) == date(2024, 3, 15)


def test_chunked_splits_into_fixed_batches():
    assert [len(chunk) for chunk in chunked(range(7), 3)] == [3, 3, 1]
    assert list(chunked([], 3)) == []


def test_save_libraries_indexes_by_code_and_waits_for_refresh():
    engine = FakeSearchEngine()

    saved = _run(engine, lambda loader: loader.save_libraries([_library("111042"), _library("111003")], DAY))

    assert saved == 2
    assert set(engine.indices["library-2024-03-15"]) == {"111042", "111003"}
    doc = engine.indices["library-2024-03-15"]["111042"]
    assert doc["location"] == {"lat": "37.5", "lon": "127.0"}
    assert doc["BookCount"] == 100
    assert engine.bulk_calls[0]["refresh"] == "wait_for"


def test_save_libraries_drops_records_without_code():
    engine = FakeSearchEngine()

    saved = _run(engine, lambda loader: loader.save_libraries([_library(None), _library("111042")], DAY))

    assert saved == 1
    assert list(engine.indices["library-2024-03-15"]) == ["111042"]


def test_save_libraries_skips_populated_partition_without_writing():
    engine = FakeSearchEngine()
    engine.indices["library-2024-03-15"] = {"111042": {"libCode": "111042"}}

    saved = _run(engine, lambda loader: loader.save_libraries([_library("111003")], DAY))

    assert saved == 0
    assert engine.bulk_calls == []
    assert all(request.method != "PUT" for request in engine.requests)


def test_save_libraries_tolerates_existing_empty_index():
    engine = FakeSearchEngine()
    engine.indices["library-2024-03-15"] = {}

    saved = _run(engine, lambda loader: loader.save_libraries([_library("111042")], DAY))

    assert saved == 1


def test_save_books_uses_composite_ids_without_refresh():
    engine = FakeSearchEngine()
    books = [_book(1, "9788936433598"), _book(2, "9788954682152")]

    saved = _run(engine, lambda loader: loader.save_books(DAY, "111042", books))

    assert saved == 2
    docs = engine.indices["book-2024-03-15"]
    assert set(docs) == {"111042-9788936433598", "111042-9788954682152"}
    assert docs["111042-9788936433598"]["libCode"] == "111042"
    assert docs["111042-9788936433598"]["regDate"] == "2021-03-04"
    assert engine.bulk_calls[0]["refresh"] == "false"


def test_save_books_skip_is_scoped_to_library_code():
    engine = FakeSearchEngine()
    engine.indices["book-2024-03-15"] = {"111003-9780000000001": {"libCode": "111003"}}

    async def action(loader):
        skipped = await loader.save_books(DAY, "111003", [_book(1, "9780000000002")])
        loaded = await loader.save_books(DAY, "111042", [_book(1, "9780000000003")])
        return skipped, loaded

    skipped, loaded = _run(engine, action)

    assert (skipped, loaded) == (0, 1)
    assert [call["docs"][0][0] for call in engine.bulk_calls] == ["111042-9780000000003"]


def test_save_books_rewrites_when_skip_disabled():
    engine = FakeSearchEngine()
    engine.indices["book-2024-03-15"] = {"111042-9780000000001": {"libCode": "111042"}}

    saved = _run(engine, lambda loader: loader.save_books(DAY, "111042", [_book(1, "9780000000001")]), skip_if_exists=False)

    assert saved == 1
    assert len(engine.bulk_calls) == 1


@pytest.mark.parametrize("count, chunk_size", [(1, 5), (5, 5), (6, 5), (12, 5)])
def test_save_books_issues_one_bulk_call_per_chunk(count, chunk_size):
    engine = FakeSearchEngine()
    books = [_book(i, f"97800000{i:05d}") for i in range(count)]

    saved = _run(engine, lambda loader: loader.save_books(DAY, "111042", books), bulk_size=chunk_size)

    assert saved == count
    assert len(engine.bulk_calls) == math.ceil(count / chunk_size)


def test_bulk_retries_transient_failures_then_accepts_batch():
    engine = FakeSearchEngine()
    engine.bulk_failures = [503, httpx.ConnectError("connection refused")]
    clock = FakeClock()
    books = [_book(1, "9788936433598"), _book(2, "9788954682152")]
    before = metrics.get("ingest_bulk_retry_total", {"kind": "book"})

    saved = _run(engine, lambda loader: loader.save_books(DAY, "111042", books), clock=clock)

    assert saved == 2
    assert clock.sleeps == [15.0, 22.5]
    assert metrics.get("ingest_bulk_retry_total", {"kind": "book"}) == before + 2


def test_bulk_gives_up_after_elapsed_ceiling():
    engine = FakeSearchEngine()
    engine.bulk_failures = [503] * 100
    clock = FakeClock()

    with pytest.raises(RetryExhausted) as excinfo:
        _run(engine, lambda loader: loader.save_books(DAY, "111042", [_book(1, "9788936433598")]), clock=clock)

    assert clock.sleeps
    assert max(clock.sleeps) <= 900.0
    assert sum(clock.sleeps) <= 1800.0
    assert excinfo.value.attempts == len(clock.sleeps) + 1
    assert engine.bulk_calls == []


def test_bulk_elapsed_ceiling_aborts_remaining_batches():
    engine = FakeSearchEngine()
    clock = FakeClock()
    books = [_book(i, f"97800000{i:05d}") for i in range(4)]

    async def action(loader):
        original = loader.client.bulk_index
        calls = []

        async def flaky(index_name, docs, refresh):
            calls.append(len(docs))
            if len(calls) > 1:
                engine.bulk_failures = [503]
            return await original(index_name, docs, refresh)

        loader.client.bulk_index = flaky
        try:
            await loader.save_books(DAY, "111042", books)
        except RetryExhausted:
            return calls
        raise AssertionError("expected RetryExhausted")

    calls = _run(engine, action, clock=clock, bulk_size=2, retry_max_elapsed_sec=10.0)

    assert len(engine.bulk_calls) == 1
    assert len(engine.indices["book-2024-03-15"]) == 2
    assert calls[0] == 2


def test_bulk_permanent_status_fails_without_retry():
    engine = FakeSearchEngine()
    engine.bulk_failures = [400]
    clock = FakeClock()

    with pytest.raises(SearchEngineError) as excinfo:
        _run(engine, lambda loader: loader.save_books(DAY, "111042", [_book(1, "9788936433598")]), clock=clock)

    assert excinfo.value.status == 400
    assert clock.sleeps == []


def test_unparseable_count_reply_raises_search_engine_error():
    def handler(request):
        return httpx.Response(200, text="<html>proxy</html>")

    settings = make_settings()

    async def scenario():
        async with mock_client(handler) as client:
            return await OpenSearchClient(settings, client=client).count("book-2024-03-15")

    with pytest.raises(SearchEngineError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.status == 200


def test_only_timeouts_throttling_and_server_errors_are_transient():
    assert [is_transient_status(status) for status in (408, 429, 500, 503)] == [True] * 4
    assert [is_transient_status(status) for status in (400, 401, 404, 409)] == [False] * 4
