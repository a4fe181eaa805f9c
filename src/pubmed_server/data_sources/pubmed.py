"""
PubMed API client.

Three methods:
  1. search        : Find PMIDs matching a query
  2. fetch_summary : Article metadata for PMIDs, in caller order
  3. get_full_text : PMC open-access full text for PMIDs, as Markdown

Every upstream call goes through the same pipeline:
fingerprint → cache → in-flight registry → rate limiter → transport → parse.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import TypeAdapter, ValidationError

from pubmed_server.constants import (
    PUBMED_FETCH_URL,
    PUBMED_LINK_URL,
    PUBMED_SEARCH_URL,
    SEARCH_MAX_DATE,
    SEARCH_MIN_DATE,
    SORT_MAP,
    SUMMARY_BATCH_SIZE,
)
from pubmed_server.data_sources.base_client import (
    BaseClient,
    DataSourceError,
    InvalidRequestError,
    ParseError,
    TransientUpstreamError,
)
from pubmed_server.data_sources.pubmed_parsers import (
    parse_full_text,
    parse_pmc_links,
    parse_search_response,
    parse_summary_response,
)
from pubmed_server.models.model_pubmed import (
    FailedEntry,
    FullTextResult,
    SearchOptions,
    SearchResult,
    SummaryEntry,
)

logger = logging.getLogger(__name__)

_SUMMARY_ENTRY = TypeAdapter(SummaryEntry)


class PubMedClient(BaseClient):
    """Client for querying PubMed/NCBI E-utilities."""

    ENDPOINTS: dict[str, str] = {
        "search": PUBMED_SEARCH_URL,
        "fetch": PUBMED_FETCH_URL,
        "link": PUBMED_LINK_URL,
    }
    BATCH_SIZE = SUMMARY_BATCH_SIZE

    @property
    def _source_name(self) -> str:
        return "pubmed"

    def _endpoint(self, operation: str) -> str:
        try:
            return self.ENDPOINTS[operation]
        except KeyError:
            raise ValueError(f"Unknown E-utilities operation: {operation}") from None

    def _common_params(self) -> dict[str, str]:
        params = {"tool": self.config.tool, "email": self.config.email}
        if self.config.api_key:
            params["api_key"] = self.config.api_key
        return params

    # ------------------------------------------------------------------
    # Public: search
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        options: SearchOptions | dict[str, Any] | None = None,
    ) -> SearchResult:
        """Search PubMed and return ordered PMIDs plus the total hit count."""
        query = (query or "").strip()
        if not query:
            raise InvalidRequestError(self._source_name, "Search query must not be empty")
        opts = self._search_options(options)

        async def produce() -> dict[str, Any]:
            text = await self.call("search", self._build_search_params(query, opts))
            try:
                result = parse_search_response(text, query)
            except ParseError as e:
                raise TransientUpstreamError(
                    self._source_name, "Malformed search response from upstream"
                ) from e
            logger.info("Search %r: %d of %d hits", query, len(result.pmids), result.count)
            return result.model_dump()

        data = await self._cached("search", {"query": query, **opts.model_dump()}, produce)
        return SearchResult.model_validate(data)

    def _search_options(
        self, options: SearchOptions | dict[str, Any] | None
    ) -> SearchOptions:
        if options is None:
            return SearchOptions()
        if isinstance(options, SearchOptions):
            return options
        try:
            return SearchOptions.model_validate(options)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            raise InvalidRequestError(
                self._source_name, f"Invalid search options: {problems}"
            ) from e

    @staticmethod
    def _build_search_params(query: str, opts: SearchOptions) -> dict[str, Any]:
        params: dict[str, Any] = {
            "db": "pubmed",
            "term": query,
            "retmode": "json",
            "retmax": opts.ret_max,
            "retstart": opts.ret_start,
            "sort": SORT_MAP[opts.sort],
        }
        # esearch needs both ends of a date range
        if opts.date_from or opts.date_to:
            params["datetype"] = "pdat"
            params["mindate"] = opts.date_from or SEARCH_MIN_DATE
            params["maxdate"] = opts.date_to or SEARCH_MAX_DATE
        return params

    # ------------------------------------------------------------------
    # Public: fetch_summary
    # ------------------------------------------------------------------

    async def fetch_summary(self, pmids: list[str]) -> list[SummaryEntry]:
        """
        Fetch article metadata for PMIDs.

        The result has one entry per input PMID, in input order.  Unknown
        PMIDs yield a NotFoundEntry, unparseable records a FailedEntry.
        Batches run concurrently; if every batch fails upstream the error
        is raised, otherwise the PMIDs of failed batches get FailedEntry.
        """
        pmids = self._normalize_pmids(pmids)
        unique = sorted(set(pmids), key=int)
        batches = [
            unique[i : i + self.BATCH_SIZE]
            for i in range(0, len(unique), self.BATCH_SIZE)
        ]

        results = await asyncio.gather(
            *(self._fetch_summary_batch(batch) for batch in batches),
            return_exceptions=True,
        )

        entries: dict[str, SummaryEntry] = {}
        failures: list[DataSourceError] = []
        for batch, result in zip(batches, results):
            if isinstance(result, InvalidRequestError):
                raise result
            if isinstance(result, DataSourceError):
                logger.warning("Summary batch of %d PMIDs failed: %s", len(batch), result)
                failures.append(result)
                entries.update(
                    {pmid: FailedEntry(pmid=pmid, error=str(result)) for pmid in batch}
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                entries.update(result)

        if failures and len(failures) == len(batches):
            raise failures[0]

        return [entries[pmid] for pmid in pmids]

    async def _fetch_summary_batch(self, batch: list[str]) -> dict[str, SummaryEntry]:
        async def produce() -> dict[str, Any]:
            params = {
                "db": "pubmed",
                "id": ",".join(batch),
                "retmode": "xml",
                "rettype": "abstract",
            }
            text = await self.call("fetch", params)
            try:
                parsed = parse_summary_response(text, batch)
            except ParseError as e:
                raise TransientUpstreamError(
                    self._source_name, "Malformed summary response from upstream"
                ) from e
            return {pmid: entry.model_dump() for pmid, entry in parsed.items()}

        data = await self._cached("summary", {"pmids": batch}, produce)
        return {
            pmid: _SUMMARY_ENTRY.validate_python(entry) for pmid, entry in data.items()
        }

    # ------------------------------------------------------------------
    # Public: get_full_text
    # ------------------------------------------------------------------

    async def get_full_text(self, pmids: list[str]) -> list[FullTextResult]:
        """
        Fetch PMC open-access full text for PMIDs, one independent fetch each.

        An upstream failure for one PMID is reported in that entry's
        ``error`` and never fails the rest of the batch.
        """
        pmids = self._normalize_pmids(pmids)
        unique = list(dict.fromkeys(pmids))

        results = await asyncio.gather(*(self._full_text_or_error(p) for p in unique))
        by_pmid = dict(zip(unique, results))
        return [by_pmid[pmid] for pmid in pmids]

    async def _full_text_or_error(self, pmid: str) -> FullTextResult:
        try:
            return await self._fetch_full_text(pmid)
        except DataSourceError as e:
            logger.warning("Full text failed for PMID %s: %s", pmid, e)
            return FullTextResult(pmid=pmid, error=str(e))

    async def _fetch_full_text(self, pmid: str) -> FullTextResult:
        async def produce() -> dict[str, Any]:
            link_params = {
                "dbfrom": "pubmed",
                "db": "pmc",
                "linkname": "pubmed_pmc",
                "id": pmid,
                "retmode": "json",
            }
            pmcid = parse_pmc_links(await self.call("link", link_params))
            if pmcid is None:
                logger.info("No PMC record for PMID %s", pmid)
                return FullTextResult(pmid=pmid).model_dump()

            text = await self.call("fetch", {"db": "pmc", "id": pmcid, "retmode": "xml"})
            full_text = parse_full_text(text)
            if full_text is None:
                logger.info("No open full text in %s (PMID %s)", pmcid, pmid)
            return FullTextResult(pmid=pmid, pmcid=pmcid, full_text=full_text).model_dump()

        data = await self._cached("fulltext", {"pmid": pmid}, produce)
        return FullTextResult.model_validate(data)

    # ------------------------------------------------------------------
    # Input validation
    # ------------------------------------------------------------------

    def _normalize_pmids(self, pmids: list[str]) -> list[str]:
        """Strip whitespace, a 'PMID:' prefix and leading zeros; reject non-numeric ids."""
        if isinstance(pmids, str) or not pmids:
            raise InvalidRequestError(
                self._source_name, "At least one PMID is required (a list of strings)"
            )
        cleaned = []
        for raw in pmids:
            pmid = str(raw).strip()
            if pmid.upper().startswith("PMID:"):
                pmid = pmid[5:].strip()
            if not (pmid.isascii() and pmid.isdigit()) or int(pmid) == 0:
                raise InvalidRequestError(self._source_name, f"Invalid PMID: {raw!r}")
            # upstream echoes PMIDs without leading zeros
            cleaned.append(str(int(pmid)))
        return cleaned
