"""
Pydantic models for PubMed data.

These are the data contracts between the PubMed client and its callers.
Callers receive these models - they never see raw E-utilities responses.

All models serialize with camelCase aliases (``fullText``, ``pubDate``) and
accept either snake_case or camelCase on input.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from pubmed_server.constants import SEARCH_DEFAULT_RETMAX, SEARCH_MAX_RETMAX

_DATE_PATTERN = r"^\d{4}(/\d{2}(/\d{2})?)?$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _CoercingModel(_CamelModel):
    """Upstream sends null for empty lists; fall back to the field default."""

    @model_validator(mode="before")
    @classmethod
    def coerce_nones(cls, values):
        if not isinstance(values, dict):
            return values
        values = dict(values)
        for field_name, field_info in cls.model_fields.items():
            if field_info.is_required() or field_info.default is None:
                continue
            for key in (field_name, field_info.alias):
                if key in values and values[key] is None:
                    values[key] = field_info.default
        return values


class SearchOptions(_CamelModel):
    """Optional esearch filters. Absent fields use the upstream defaults."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    ret_max: int = Field(default=SEARCH_DEFAULT_RETMAX, ge=0, le=SEARCH_MAX_RETMAX)
    ret_start: int = Field(default=0, ge=0)
    sort: Literal["relevance", "pub_date", "author", "journal"] = "relevance"
    date_from: str | None = Field(default=None, pattern=_DATE_PATTERN)  # YYYY/MM/DD
    date_to: str | None = Field(default=None, pattern=_DATE_PATTERN)


class SearchResult(_CoercingModel):
    """Ordered PMIDs for a query plus total-count metadata."""

    query: str
    count: int  # total hits upstream, not len(pmids)
    ret_start: int = 0
    ret_max: int = 0
    pmids: list[str] = []
    query_translation: str | None = None


class ArticleSummary(_CoercingModel):
    """A single PubMed article with metadata and abstract."""

    status: Literal["ok"] = "ok"
    pmid: str  # PubMed identifier (e.g. "38472913")
    title: str | None = None
    authors: list[str] = []  # "Last, Fore" in author-list order
    journal: str | None = None
    pub_date: str | None = None  # "2023-Jun-15", "2023" or a MedlineDate string
    doi: str | None = None
    abstract: str | None = None  # labelled sections joined with spaces


class NotFoundEntry(_CamelModel):
    """Placeholder for a PMID that upstream does not know."""

    status: Literal["not_found"] = "not_found"
    pmid: str
    error: str = "PMID not found"


class FailedEntry(_CamelModel):
    """Placeholder for a PMID whose record could not be fetched or parsed."""

    status: Literal["error"] = "error"
    pmid: str
    error: str


SummaryEntry = Annotated[
    Union[ArticleSummary, NotFoundEntry, FailedEntry],
    Field(discriminator="status"),
]


class FullTextResult(_CamelModel):
    """Normalized full text for one PMID.

    ``full_text`` is None when PMC has no open full text for the article;
    ``error`` is set only when the fetch itself failed.
    """

    pmid: str
    full_text: str | None = None
    pmcid: str | None = None
    error: str | None = None
