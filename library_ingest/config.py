import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional

from library_ingest.errors import ConfigError


def _coerce_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "y"}:
        return True
    if lowered in {"0", "false", "no", "n"}:
        return False
    return default


def _coerce_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _coerce_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _required(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise ConfigError(f"{name} is required", stage="CONFIG")
    return value


@dataclass(frozen=True)
class Settings:
    os_url: str
    auth_key: str

    library_api_url: str = "http://data4library.kr/api/libSrch"
    site_url: str = "https://www.data4library.kr"
    region: str = "11"
    dtl_region: str = "A"
    library_page_size: int = 1000000
    http_timeout_sec: float = 60.0

    os_timeout_sec: float = 120.0
    bulk_size: int = 30000

    retry_initial_sec: float = 15.0
    retry_multiplier: float = 1.5
    retry_randomization: float = 0.5
    retry_max_interval_sec: float = 900.0
    retry_max_elapsed_sec: float = 1800.0

    skip_if_exists: bool = True
    book_concurrency: int = 1

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            os_url=_required("OS_URL"),
            auth_key=_required("D4L_AUTH_KEY"),
            library_api_url=os.environ.get("D4L_API_URL", "http://data4library.kr/api/libSrch"),
            site_url=os.environ.get("D4L_SITE_URL", "https://www.data4library.kr").rstrip("/"),
            region=os.environ.get("D4L_REGION", "11"),
            dtl_region=os.environ.get("D4L_DTL_REGION", "A"),
            library_page_size=_coerce_int(os.environ.get("D4L_PAGE_SIZE"), 1000000),
            http_timeout_sec=_coerce_float(os.environ.get("D4L_TIMEOUT_SEC"), 60.0),
            os_timeout_sec=_coerce_float(os.environ.get("OS_TIMEOUT_SEC"), 120.0),
            bulk_size=_coerce_int(os.environ.get("OS_BULK_SIZE"), 30000),
            retry_initial_sec=_coerce_float(os.environ.get("OS_RETRY_INITIAL_SEC"), 15.0),
            retry_multiplier=_coerce_float(os.environ.get("OS_RETRY_MULTIPLIER"), 1.5),
            retry_randomization=_coerce_float(os.environ.get("OS_RETRY_RANDOMIZATION"), 0.5),
            retry_max_interval_sec=_coerce_float(os.environ.get("OS_RETRY_MAX_INTERVAL_SEC"), 900.0),
            retry_max_elapsed_sec=_coerce_float(os.environ.get("OS_RETRY_MAX_ELAPSED_SEC"), 1800.0),
            skip_if_exists=_coerce_bool(os.environ.get("SKIP_IF_EXISTS"), True),
            book_concurrency=max(1, _coerce_int(os.environ.get("BOOK_CONCURRENCY"), 1)),
        )

    def override(self, params: Optional[Dict[str, Any]]) -> "Settings":
        if not params:
            return self
        known = {field.name for field in fields(self)}
        changes = {key: value for key, value in params.items() if key in known and value is not None}
        return replace(self, **changes)
