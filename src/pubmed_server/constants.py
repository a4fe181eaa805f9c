"""Project-wide constants."""

# -- Base client defaults ---------------------------------------------------
DEFAULT_TIMEOUT: float = 30.0
DEFAULT_MAX_ATTEMPTS: int = 3
DEFAULT_TOOL_NAME: str = "pubmed-server"

# -- Rate limits (NCBI E-utilities policy) ----------------------------------
ANONYMOUS_REQUESTS_PER_SECOND: float = 3.0
API_KEY_REQUESTS_PER_SECOND: float = 10.0

# -- Cache ------------------------------------------------------------------
CACHE_TTL: int = 86400  # 1 day in seconds

# -- PubMed / NCBI ----------------------------------------------------------
NCBI_BASE_URL: str = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
PUBMED_SEARCH_URL: str = f"{NCBI_BASE_URL}/esearch.fcgi"
PUBMED_FETCH_URL: str = f"{NCBI_BASE_URL}/efetch.fcgi"
PUBMED_LINK_URL: str = f"{NCBI_BASE_URL}/elink.fcgi"

# efetch/esummary accept at most ~200 ids per GET request
SUMMARY_BATCH_SIZE: int = 200
SEARCH_MAX_RETMAX: int = 10000
SEARCH_DEFAULT_RETMAX: int = 20

# Public sort names → esearch `sort` values
SORT_MAP: dict[str, str] = {
    "relevance": "relevance",
    "pub_date": "pub_date",
    "author": "Author",
    "journal": "JournalName",
}

# Bounds used when only one side of a date range is given
SEARCH_MIN_DATE: str = "1000/01/01"
SEARCH_MAX_DATE: str = "3000/12/31"
