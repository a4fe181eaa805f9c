"""
Parsers for E-utilities payloads.

Pure functions, one per upstream payload shape:
  1. parse_search_response : esearch JSON → SearchResult
  2. parse_summary_response: efetch PubMed XML → {pmid: SummaryEntry}
  3. parse_pmc_links       : elink JSON → PMC id or None
  4. parse_full_text       : efetch PMC JATS XML → Markdown or None

Missing sub-fields are omitted, never fabricated.  A broken record inside a
batch is reported for that PMID only.
"""

from __future__ import annotations

import json
import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Iterable

from pubmed_server.data_sources.base_client import InvalidRequestError, ParseError
from pubmed_server.models.model_pubmed import (
    ArticleSummary,
    FailedEntry,
    NotFoundEntry,
    SearchResult,
    SummaryEntry,
)

logger = logging.getLogger(__name__)

SOURCE = "pubmed"

# JATS elements that carry no readable prose
_SKIPPED_JATS_TAGS = {
    "fig",
    "table-wrap",
    "disp-formula",
    "inline-formula",
    "supplementary-material",
    "xref",
    "object-id",
    "label",
}

_WHITESPACE = re.compile(r"\s+")
# Leftovers of dropped citation markers: "used [ ]." → "used."
_EMPTY_BRACKETS = re.compile(r"\(\s*[,;\-–]*\s*\)|\[\s*[,;\-–]*\s*\]")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([.,;:!?)\]])")


def _clean(text: str | None) -> str | None:
    if text is None:
        return None
    text = _WHITESPACE.sub(" ", text).strip()
    return text or None


def _xml_text(elem: ET.Element, path: str) -> str | None:
    """Safely extract (nested) text from an XML element."""
    found = elem.find(path)
    if found is None:
        return None
    return _clean("".join(found.itertext()))


# ---------------------------------------------------------------------------
# esearch
# ---------------------------------------------------------------------------


def parse_search_response(text: str, query: str) -> SearchResult:
    """Parse an esearch ``retmode=json`` response."""
    try:
        data = json.loads(text)
        result = data["esearchresult"]
        rejected = result.get("ERROR")
    except (json.JSONDecodeError, AttributeError, KeyError, TypeError) as e:
        raise ParseError(SOURCE, f"Malformed search response: {e}") from e

    if rejected:
        raise InvalidRequestError(SOURCE, f"Search rejected: {rejected}")

    try:
        return SearchResult(
            query=query,
            count=int(result.get("count", 0)),
            ret_start=int(result.get("retstart", 0)),
            ret_max=int(result.get("retmax", 0)),
            pmids=[str(pmid) for pmid in result.get("idlist", [])],
            query_translation=result.get("querytranslation"),
        )
    except (AttributeError, TypeError, ValueError) as e:
        raise ParseError(SOURCE, f"Malformed search response: {e}") from e


# ---------------------------------------------------------------------------
# efetch (PubMed XML)
# ---------------------------------------------------------------------------


def parse_summary_response(
    text: str, requested: Iterable[str]
) -> dict[str, SummaryEntry]:
    """
    Parse a PubMed efetch XML batch into one entry per requested PMID.

    Requested PMIDs missing from the payload become NotFoundEntry; articles
    that fail to parse become FailedEntry.  A document that is not a
    PubmedArticleSet (truncated body, HTML error page) raises ParseError.
    """
    requested = list(requested)
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ParseError(SOURCE, f"Failed to parse summary XML: {e}") from e
    if root.tag != "PubmedArticleSet":
        raise ParseError(SOURCE, f"Unexpected summary document <{root.tag}>")

    entries: dict[str, SummaryEntry] = {}
    for article_elem in root.findall(".//PubmedArticle"):
        pmid = _xml_text(article_elem, "MedlineCitation/PMID") or _xml_text(
            article_elem, ".//PMID"
        )
        if not pmid:
            continue
        try:
            entries[pmid] = parse_article(article_elem, pmid)
        except ParseError as e:
            logger.warning("Failed to parse PMID %s: %s", pmid, e)
            entries[pmid] = FailedEntry(pmid=pmid, error=str(e))

    return {
        pmid: entries.get(pmid) or NotFoundEntry(pmid=pmid) for pmid in requested
    }


def parse_article(article_elem: ET.Element, pmid: str) -> ArticleSummary:
    """Parse one <PubmedArticle> element."""
    article = article_elem.find(".//Article")
    if article is None:
        raise ParseError(SOURCE, f"PMID {pmid}: record has no <Article> element")

    return ArticleSummary(
        pmid=pmid,
        title=_xml_text(article, "ArticleTitle"),
        authors=_parse_authors(article),
        journal=_xml_text(article, "Journal/Title"),
        pub_date=_parse_pub_date(article),
        doi=_parse_doi(article_elem),
        abstract=_parse_abstract(article),
    )


def _parse_authors(article: ET.Element) -> list[str]:
    authors = []
    for author in article.findall("AuthorList/Author"):
        last_name = _xml_text(author, "LastName")
        fore_name = _xml_text(author, "ForeName") or _xml_text(author, "Initials")
        if last_name:
            authors.append(f"{last_name}, {fore_name}" if fore_name else last_name)
            continue
        collective = _xml_text(author, "CollectiveName")
        if collective:
            authors.append(collective)
    return authors


def _parse_abstract(article: ET.Element) -> str | None:
    # Abstract - may have multiple labelled sections
    parts = []
    for abs_elem in article.findall("Abstract/AbstractText"):
        text = _clean("".join(abs_elem.itertext()))
        if not text:
            continue
        label = abs_elem.get("Label")
        parts.append(f"{label}: {text}" if label else text)
    return " ".join(parts) if parts else None


def _parse_pub_date(article: ET.Element) -> str | None:
    pub_date_elem = article.find("Journal/JournalIssue/PubDate")
    if pub_date_elem is None:
        pub_date_elem = article.find(".//PubDate")
    if pub_date_elem is None:
        return None

    year = _xml_text(pub_date_elem, "Year")
    if not year:
        return _xml_text(pub_date_elem, "MedlineDate")

    pub_date = year
    month = _xml_text(pub_date_elem, "Month")
    if month:
        pub_date += f"-{month}"
        day = _xml_text(pub_date_elem, "Day")
        if day:
            pub_date += f"-{day}"
    return pub_date


def _parse_doi(article_elem: ET.Element) -> str | None:
    for id_elem in article_elem.findall("PubmedData/ArticleIdList/ArticleId"):
        if id_elem.get("IdType") == "doi" and id_elem.text:
            return id_elem.text.strip()
    for loc in article_elem.findall(".//Article/ELocationID"):
        if loc.get("EIdType") == "doi" and loc.text:
            return loc.text.strip()
    return None


# ---------------------------------------------------------------------------
# elink
# ---------------------------------------------------------------------------


def parse_pmc_links(text: str) -> str | None:
    """Return the first PMC id linked from an elink ``pubmed_pmc`` response."""
    try:
        data = json.loads(text)
        linksets = data.get("linksets", [])
    except (json.JSONDecodeError, AttributeError) as e:
        raise ParseError(SOURCE, f"Malformed link response: {e}") from e

    for linkset in linksets:
        for linksetdb in linkset.get("linksetdbs", []):
            # pubmed_pmc_refs also points at pmc (citing articles); skip it
            if linksetdb.get("linkname", "pubmed_pmc") != "pubmed_pmc":
                continue
            links = linksetdb.get("links", [])
            if links:
                return f"PMC{links[0]}"
    return None


# ---------------------------------------------------------------------------
# efetch (PMC JATS XML)
# ---------------------------------------------------------------------------


def parse_full_text(text: str) -> str | None:
    """
    Convert a PMC JATS document into readable Markdown.

    Best effort: returns None when the document is an error, has no <body>
    (publisher does not allow XML download), or cannot be decoded.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        logger.warning("Undecodable full-text document: %s", e)
        return None

    if root.find(".//error") is not None:
        return None

    article = root if root.tag == "article" else root.find(".//article")
    if article is None:
        return None
    body = article.find("body")
    if body is None:
        return None

    blocks: list[str] = []

    title = _xml_text(article, "front/article-meta/title-group/article-title")
    if title:
        blocks.append(f"# {title}")

    abstract = article.find("front/article-meta/abstract")
    if abstract is not None:
        abstract_blocks = _render_container(abstract, level=3)
        if abstract_blocks:
            blocks.append("## Abstract")
            blocks.extend(abstract_blocks)

    body_blocks = _render_container(body, level=2)
    if not body_blocks:
        return None
    blocks.extend(body_blocks)

    return "\n\n".join(blocks)


def _render_container(elem: ET.Element, level: int) -> list[str]:
    """Render paragraphs and nested <sec> elements as Markdown blocks."""
    blocks: list[str] = []
    for child in elem:
        if child.tag == "sec":
            sec_title = _xml_text(child, "title")
            inner = _render_container(child, level + 1)
            if sec_title and inner:
                blocks.append(f"{'#' * min(level, 6)} {sec_title}")
            blocks.extend(inner)
        elif child.tag == "p":
            paragraph = _paragraph_text(child)
            if paragraph:
                blocks.append(paragraph)
        elif child.tag == "list":
            items = [_paragraph_text(item) for item in child.findall("list-item")]
            items = [item for item in items if item]
            if items:
                blocks.append("\n".join(f"- {item}" for item in items))
    return blocks


def _paragraph_text(elem: ET.Element) -> str | None:
    parts: list[str] = []

    def walk(node: ET.Element) -> None:
        if node.tag in _SKIPPED_JATS_TAGS:
            if node.tail:
                parts.append(node.tail)
            return
        if node.text:
            parts.append(node.text)
        for child in node:
            walk(child)
        if node is not elem and node.tail:
            parts.append(node.tail)

    walk(elem)
    text = _EMPTY_BRACKETS.sub("", "".join(parts))
    text = _clean(text)
    return _SPACE_BEFORE_PUNCT.sub(r"\1", text) if text else None
