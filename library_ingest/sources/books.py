"""Per-library holdings, scraped from the data4library open-data page.

The open API is too heavy for full holdings lists, so each library's CSV
export is downloaded instead. The page identifiers used by the site differ
from the API's library codes; the API code is recovered from the page.
"""

import csv
import io
import logging
import re
from typing import List, Tuple

import httpx
from bs4 import BeautifulSoup

from library_ingest.config import Settings
from library_ingest.errors import LibCodeParseError, NoDownloadLinkError, NoDownloadUrlError, NoLibCodeError
from library_ingest.metrics import metrics
from library_ingest.schemas import BOOK_COLUMNS, Book

logger = logging.getLogger(__name__)

LIB_CODE_RE = re.compile(r"libCode=(?P<lib_code>\d+)")
LIB_CODE_SELECTOR = ".right_linfo dl dd"
DOWNLOAD_LINK_SELECTOR = ".download_link.text_type"

# The site labels its exports EUC-KR but emits the cp949 superset.
LEGACY_ENCODING = "cp949"

ISBN_COLUMN = BOOK_COLUMNS.index("isbn")


def parse_book_page(html: str, page_lib_code: str, site_url: str) -> Tuple[str, str]:
    """Return ``(api_lib_code, csv_url)`` from a library's open-data page."""
    soup = BeautifulSoup(html, "html.parser")

    code_node = soup.select_one(LIB_CODE_SELECTOR)
    if code_node is None:
        raise NoLibCodeError(page_lib_code)
    match = LIB_CODE_RE.search(code_node.get_text())
    if match is None:
        raise LibCodeParseError(page_lib_code, f"no numeric libCode in {code_node.get_text(strip=True)!r}")

    link = soup.select_one(DOWNLOAD_LINK_SELECTOR)
    if link is None:
        raise NoDownloadLinkError(page_lib_code)
    path = (link.get("url") or "").strip()
    if not path:
        raise NoDownloadUrlError(page_lib_code)

    return match.group("lib_code"), str(httpx.URL(site_url).join(path))


def decode_csv(data: bytes) -> str:
    return data.decode(LEGACY_ENCODING, errors="replace").lstrip("\ufeff")


def parse_books(text: str) -> Tuple[List[Book], int]:
    """Parse CSV text into books; returns the books and the malformed-row count.

    Rows without an ISBN are skipped silently. Rows the CSV reader rejects
    count as malformed.
    """
    reader = csv.reader(io.StringIO(text, newline=""))

    books: List[Book] = []
    malformed = 0
    header_seen = False
    while True:
        try:
            row = next(reader)
        except StopIteration:
            break
        except csv.Error:
            # oversized or broken field; the reader resumes on the next line
            malformed += 1
            header_seen = True
            continue
        if not header_seen:
            header_seen = True
            continue
        if not any(cell.strip() for cell in row):
            continue
        if len(row) > ISBN_COLUMN and not row[ISBN_COLUMN].strip():
            metrics.inc("ingest_csv_rows_dropped_total", {"reason": "no_isbn"})
            continue
        try:
            books.append(Book.from_row(row))
        except ValueError:  # pydantic's ValidationError included
            malformed += 1
    if malformed:
        metrics.inc("ingest_csv_rows_dropped_total", {"reason": "malformed"}, malformed)
    return books, malformed


async def fetch_books(client: httpx.AsyncClient, settings: Settings, page_lib_code: str) -> Tuple[str, List[Book]]:
    page = await client.get(
        f"{settings.site_url}/openDataV",
        params={"libcode": page_lib_code, "pageSize": "1"},
        timeout=settings.http_timeout_sec,
    )
    page.raise_for_status()
    lib_code, csv_url = parse_book_page(page.text, page_lib_code, settings.site_url)

    download = await client.get(csv_url, headers={"User-Agent": ""}, timeout=settings.http_timeout_sec)
    download.raise_for_status()
    books, malformed = parse_books(decode_csv(download.content))
    if malformed:
        logger.warning("[books] %s: dropped %d malformed rows", lib_code, malformed)
    logger.info("[books] %s (page %s): %d books parsed", lib_code, page_lib_code, len(books))
    return lib_code, books
