"""
Stdio tool server exposing the three PubMed operations.

Tools:
  - search_pubmed : query (+ optional search options) → SearchResult JSON
  - fetch_summary : PMIDs → article summaries JSON, in request order
  - get_fulltext  : PMIDs → full-text results JSON, in request order

Operation failures come back as text content ("Error searching PubMed: ...")
rather than protocol errors, so the calling model can read them.
"""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastmcp import FastMCP

from pubmed_server.data_sources.base_client import DataSourceError
from pubmed_server.data_sources.pubmed import PubMedClient

logger = logging.getLogger(__name__)

SERVER_NAME = "pubmed-server"


class PubMedTools:
    """Tool handlers bound to one PubMedClient."""

    def __init__(self, client: PubMedClient):
        self.client = client

    async def search_pubmed(
        self, query: str, searchOptions: dict[str, Any] | None = None
    ) -> str:
        """Search PubMed for scientific articles."""
        # camelCase argument name is part of the published tool schema
        try:
            result = await self.client.search(query, searchOptions)
        except DataSourceError as e:
            logger.warning("search_pubmed failed: %s", e)
            return f"Error searching PubMed: {e}"
        return result.model_dump_json(by_alias=True, indent=2)

    async def fetch_summary(self, pmids: list[str]) -> str:
        """Fetch detailed article information from PubMed using PMIDs."""
        try:
            entries = await self.client.fetch_summary(pmids)
        except DataSourceError as e:
            logger.warning("fetch_summary failed: %s", e)
            return f"Error fetching article summaries: {e}"
        return json.dumps([e.model_dump(by_alias=True) for e in entries], indent=2)

    async def get_fulltext(self, pmids: list[str]) -> str:
        """Get full text content of PubMed articles using PMIDs."""
        try:
            results = await self.client.get_full_text(pmids)
        except DataSourceError as e:
            logger.warning("get_fulltext failed: %s", e)
            return f"Error fetching full text: {e}"
        return json.dumps([r.model_dump(by_alias=True) for r in results], indent=2)


def build_server(client: PubMedClient) -> FastMCP:
    """Create the tool server; the client's HTTP session closes on shutdown."""

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await client.close()

    mcp = FastMCP(name=SERVER_NAME, lifespan=lifespan)
    tools = PubMedTools(client)

    mcp.tool(
        tools.search_pubmed,
        name="search_pubmed",
        description=(
            "Search PubMed for scientific articles. searchOptions may set "
            "retMax, retStart, sort (relevance, pub_date, author, journal), "
            "dateFrom and dateTo (YYYY/MM/DD)."
        ),
    )
    mcp.tool(
        tools.fetch_summary,
        name="fetch_summary",
        description="Fetch detailed article information from PubMed using PMIDs.",
    )
    mcp.tool(
        tools.get_fulltext,
        name="get_fulltext",
        description="Get full text content of PubMed articles using PMIDs.",
    )
    return mcp
