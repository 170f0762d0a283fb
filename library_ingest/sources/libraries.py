import logging
from typing import List

import httpx
from pydantic import ValidationError

from library_ingest.config import Settings
from library_ingest.errors import LibraryListError
from library_ingest.schemas import Library, LibraryListResponse, PageLibraryList

logger = logging.getLogger(__name__)


async def fetch_libraries(client: httpx.AsyncClient, settings: Settings) -> List[Library]:
    """Fetch every library from the catalog API in a single request.

    The API pages by ``pageSize``; asking for a page larger than the catalog
    returns everything at once, and ``numFound`` must then match
    ``resultNum`` or the list is truncated.
    """
    response = await client.get(
        settings.library_api_url,
        params={
            "authKey": settings.auth_key,
            "pageSize": str(settings.library_page_size),
            "format": "json",
        },
        timeout=settings.http_timeout_sec,
    )
    response.raise_for_status()
    try:
        body = LibraryListResponse.model_validate_json(response.content).response
    except ValidationError as exc:
        raise LibraryListError(f"unparseable library list: {exc}", stage="LIBRARIES") from exc

    if body.num_found != body.result_num or body.result_num != len(body.libs):
        raise LibraryListError(
            f"library list is incomplete: numFound={body.num_found} resultNum={body.result_num} libs={len(body.libs)}",
            stage="LIBRARIES",
            detail={"numFound": body.num_found, "resultNum": body.result_num, "libs": len(body.libs)},
        )
    logger.info("[libraries] fetched %d libraries", len(body.libs))
    return [entry.lib for entry in body.libs]


async def fetch_page_lib_codes(client: httpx.AsyncClient, settings: Settings) -> List[str]:
    """Return the site's library identifiers for the configured region."""
    response = await client.post(
        f"{settings.site_url}/srchLibs",
        data={"region": settings.region, "dtl_region": settings.dtl_region, "libType": ""},
        timeout=settings.http_timeout_sec,
    )
    response.raise_for_status()
    try:
        result = PageLibraryList.model_validate_json(response.content)
    except ValidationError as exc:
        raise LibraryListError(f"unparseable library code list: {exc}", stage="LIBRARIES") from exc

    codes: List[str] = []
    seen = set()
    for row in result.rows:
        code = str(row.id)
        if code in seen:
            continue
        seen.add(code)
        codes.append(code)
    logger.info("[libraries] %d page library codes for region %s/%s", len(codes), settings.region, settings.dtl_region)
    return codes
