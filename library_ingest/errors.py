from typing import Any, Optional


class IngestException(Exception):
    def __init__(self, message: str, retryable: bool = False, stage: Optional[str] = None, detail: Any = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.stage = stage
        self.detail = detail


class ConfigError(IngestException):
    pass


class TemplateError(IngestException):
    pass


class LibraryListError(IngestException):
    pass


class SearchEngineError(IngestException):
    def __init__(self, message: str, status: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status = status


class RetryExhausted(IngestException):
    def __init__(self, message: str, attempts: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.attempts = attempts


class BookSourceError(IngestException):
    """A library's book page could not be resolved into a CSV download.

    Subclasses name the step that failed; ``kind`` is a stable short label
    used in log lines and metrics.
    """

    kind = "book_source"

    def __init__(self, page_lib_code: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{self.kind} for page library {page_lib_code}", stage="BOOKS")
        self.page_lib_code = page_lib_code


class NoLibCodeError(BookSourceError):
    kind = "no_lib_code"


class LibCodeParseError(BookSourceError):
    kind = "lib_code_parse"


class NoDownloadLinkError(BookSourceError):
    kind = "no_link"


class NoDownloadUrlError(BookSourceError):
    kind = "no_url"
