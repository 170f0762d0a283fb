from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

BOOK_COLUMNS = (
    "num",
    "title",
    "authors",
    "publisher",
    "publication_year",
    "isbn",
    "set_isbn",
    "addition_symbol",
    "vol",
    "kdc",
    "book_count",
    "loan_count",
    "reg_date",
)


class Library(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, frozen=True)

    code: Optional[str] = Field(default=None, alias="libCode")
    name: str = Field(alias="libName")
    address: str = ""
    tel: str = ""
    fax: Optional[str] = None
    latitude: str = ""
    longitude: str = ""
    homepage: Optional[str] = None
    closed: Optional[str] = None
    operating_time: Optional[str] = Field(default=None, alias="operatingTime")
    book_count: str = Field(default="", alias="BookCount")


class LibraryEntry(BaseModel):
    lib: Library


class LibraryListBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    num_found: int = Field(alias="numFound")
    result_num: int = Field(alias="resultNum")
    libs: List[LibraryEntry] = Field(default_factory=list)


class LibraryListResponse(BaseModel):
    response: LibraryListBody


class PageLibraryRow(BaseModel):
    id: int
    cell: List[str] = Field(default_factory=list)


class PageLibraryList(BaseModel):
    rows: List[PageLibraryRow] = Field(default_factory=list)


class Book(BaseModel):
    """One holding row from a library's CSV export."""

    model_config = ConfigDict(frozen=True)

    num: int
    title: str
    authors: str
    publisher: str
    publication_year: str
    isbn: str
    set_isbn: str
    addition_symbol: str
    vol: str
    kdc: str
    book_count: int
    loan_count: int
    reg_date: str

    @classmethod
    def from_row(cls, row: Sequence[str]) -> "Book":
        if len(row) < len(BOOK_COLUMNS):
            raise ValueError(f"expected {len(BOOK_COLUMNS)} columns, got {len(row)}")
        values = {name: value.strip() for name, value in zip(BOOK_COLUMNS, row)}
        return cls.model_validate(values)


class CountResponse(BaseModel):
    count: int = 0


class BulkActionContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    index: str = Field(alias="_index")
    id: str = Field(alias="_id")
    status: int
    error: Optional[Any] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class BulkResponseItem(BaseModel):
    """A bulk result entry, keyed by the operation that produced it."""

    create: Optional[BulkActionContent] = None
    delete: Optional[BulkActionContent] = None
    index: Optional[BulkActionContent] = None
    update: Optional[BulkActionContent] = None

    @model_validator(mode="after")
    def _single_operation(self) -> "BulkResponseItem":
        present = [name for name in ("create", "delete", "index", "update") if getattr(self, name) is not None]
        if len(present) != 1:
            raise ValueError(f"bulk item must carry exactly one operation, got {present or 'none'}")
        return self

    @property
    def kind(self) -> str:
        for name in ("create", "delete", "index", "update"):
            if getattr(self, name) is not None:
                return name
        raise AssertionError("unreachable")

    @property
    def content(self) -> BulkActionContent:
        return getattr(self, self.kind)


class BulkResponse(BaseModel):
    took: int = 0
    errors: bool = False
    items: List[BulkResponseItem] = Field(default_factory=list)
