"""Unit tests for the stdio tool server handlers."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from fastmcp import Client, FastMCP

from pubmed_server.data_sources.base_client import InvalidRequestError
from pubmed_server.models.model_pubmed import (
    ArticleSummary,
    FullTextResult,
    NotFoundEntry,
    SearchResult,
)
from pubmed_server.server import SERVER_NAME, PubMedTools, build_server

from payloads import esearch_json


@pytest.fixture
def client():
    return AsyncMock()


@pytest.fixture
def tools(client):
    return PubMedTools(client)


async def test_search_pubmed_returns_camel_case_json(tools, client):
    client.search.return_value = SearchResult(
        query="metformin", count=10, pmids=["1", "2"], query_translation="metformin[All]"
    )
    options = {"retMax": 2}

    text = await tools.search_pubmed("metformin", options)

    payload = json.loads(text)
    assert payload["pmids"] == ["1", "2"]
    assert payload["queryTranslation"] == "metformin[All]"
    client.search.assert_awaited_once_with("metformin", options)


async def test_search_pubmed_reports_errors_as_text(tools, client):
    client.search.side_effect = InvalidRequestError("pubmed", "Search query must not be empty")

    text = await tools.search_pubmed("")

    assert text == "Error searching PubMed: [pubmed] Search query must not be empty"


async def test_fetch_summary_returns_entries_in_order(tools, client):
    client.fetch_summary.return_value = [
        ArticleSummary(pmid="2", title="Two", pub_date="2020"),
        NotFoundEntry(pmid="9"),
    ]

    payload = json.loads(await tools.fetch_summary(["2", "9"]))

    assert [e["pmid"] for e in payload] == ["2", "9"]
    assert payload[0]["pubDate"] == "2020"
    assert payload[1]["status"] == "not_found"


async def test_fetch_summary_reports_errors_as_text(tools, client):
    client.fetch_summary.side_effect = InvalidRequestError("pubmed", "Invalid PMID: 'x'")

    text = await tools.fetch_summary(["x"])

    assert text.startswith("Error fetching article summaries:")


async def test_get_fulltext(tools, client):
    client.get_full_text.return_value = [
        FullTextResult(pmid="1", pmcid="PMC5", full_text="# T"),
        FullTextResult(pmid="2", error="[pubmed] Timeout after 30.0s"),
    ]

    payload = json.loads(await tools.get_fulltext(["1", "2"]))

    assert payload[0]["fullText"] == "# T"
    assert payload[1]["error"] == "[pubmed] Timeout after 30.0s"


async def test_get_fulltext_reports_errors_as_text(tools, client):
    client.get_full_text.side_effect = InvalidRequestError("pubmed", "At least one PMID")

    assert (await tools.get_fulltext([])).startswith("Error fetching full text:")


def test_build_server_returns_named_server(client):
    server = build_server(client)

    assert isinstance(server, FastMCP)
    assert server.name == SERVER_NAME


async def test_registered_tool_schema_uses_camel_case_options(pubmed_client):
    async with Client(build_server(pubmed_client)) as mcp_client:
        tools = {tool.name: tool for tool in await mcp_client.list_tools()}

    assert set(tools) == {"search_pubmed", "fetch_summary", "get_fulltext"}
    assert set(tools["search_pubmed"].inputSchema["properties"]) == {
        "query",
        "searchOptions",
    }
    assert tools["search_pubmed"].inputSchema["required"] == ["query"]


async def test_search_tool_call_passes_options_to_client(pubmed_client):
    upstream = AsyncMock(return_value=esearch_json(["7", "8"], count=2))

    with patch.object(pubmed_client, "call", upstream):
        async with Client(build_server(pubmed_client)) as mcp_client:
            result = await mcp_client.call_tool(
                "search_pubmed",
                {"query": "metformin", "searchOptions": {"retMax": 5, "sort": "journal"}},
            )

    payload = json.loads(result.content[0].text)
    assert payload["pmids"] == ["7", "8"]
    params = upstream.await_args.args[1]
    assert params["retmax"] == 5
    assert params["sort"] == "JournalName"


async def test_search_tool_call_reports_bad_options_as_text(pubmed_client):
    upstream = AsyncMock()

    with patch.object(pubmed_client, "call", upstream):
        async with Client(build_server(pubmed_client)) as mcp_client:
            result = await mcp_client.call_tool(
                "search_pubmed",
                {"query": "metformin", "searchOptions": {"sort": "bogus"}},
            )

    text = result.content[0].text
    assert text.startswith("Error searching PubMed: [pubmed] Invalid search options")
    assert "sort" in text
    upstream.assert_not_awaited()
