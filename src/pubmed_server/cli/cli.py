"""Command-line interface for pubmed-server."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from pubmed_server.config import CONFIG_HELP, Settings, get_settings
from pubmed_server.data_sources.base_client import DataSourceError
from pubmed_server.data_sources.pubmed import PubMedClient


def load_settings(overrides: dict) -> Settings:
    """Build Settings from the environment, with command-line values winning."""
    overrides = {k: v for k, v in overrides.items() if v is not None}
    try:
        settings = Settings(**overrides) if overrides else get_settings()
    except ValidationError as e:
        if any(err["loc"] == ("email",) for err in e.errors()):
            raise click.UsageError(
                "PUBMED_EMAIL environment variable or --email argument is required\n\n"
                + CONFIG_HELP
            ) from e
        raise click.UsageError(f"Invalid configuration: {e}") from e

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    return settings


def _run(overrides: dict, operation) -> None:
    """Run one client operation and print its JSON result."""
    settings = load_settings(overrides)

    async def runner():
        async with PubMedClient(settings.to_client_config()) as client:
            return await operation(client)

    try:
        payload = asyncio.run(runner())
    except DataSourceError as e:
        raise click.ClickException(str(e)) from e
    click.echo(json.dumps(payload, indent=2))


@click.group()
@click.version_option(package_name="pubmed-server")
@click.option("--email", help="Contact email sent with every NCBI request.")
@click.option("--api-key", help="NCBI API key (raises the rate limit to 10 req/s).")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for the persistent response cache.",
)
@click.option("--cache-ttl", type=int, help="Cache TTL in seconds (default: 86400).")
@click.pass_context
def main(ctx, email, api_key, cache_dir, cache_ttl):
    """pubmed-server: rate-limited, cached access to PubMed."""
    ctx.obj = {
        "email": email,
        "api_key": api_key,
        "cache_dir": cache_dir,
        "cache_ttl": cache_ttl,
    }


@main.command()
@click.argument("query")
@click.option("--ret-max", type=int, help="Maximum number of PMIDs to return.")
@click.option("--ret-start", type=int, help="Index of the first PMID to return.")
@click.option(
    "--sort",
    type=click.Choice(["relevance", "pub_date", "author", "journal"]),
    help="Sort order for results.",
)
@click.option("--date-from", help="Start date filter (YYYY/MM/DD).")
@click.option("--date-to", help="End date filter (YYYY/MM/DD).")
@click.pass_obj
def search(overrides: dict, query: str, **options):
    """Search PubMed and print matching PMIDs."""
    options = {k: v for k, v in options.items() if v is not None}

    async def operation(client: PubMedClient):
        result = await client.search(query, options)
        return result.model_dump(by_alias=True)

    _run(overrides, operation)


@main.command()
@click.argument("pmids", nargs=-1, required=True)
@click.pass_obj
def summary(overrides: dict, pmids: tuple[str, ...]):
    """Print article summaries for PMIDs."""

    async def operation(client: PubMedClient):
        entries = await client.fetch_summary(list(pmids))
        return [entry.model_dump(by_alias=True) for entry in entries]

    _run(overrides, operation)


@main.command()
@click.argument("pmids", nargs=-1, required=True)
@click.pass_obj
def fulltext(overrides: dict, pmids: tuple[str, ...]):
    """Print PMC full text (Markdown) for PMIDs."""

    async def operation(client: PubMedClient):
        results = await client.get_full_text(list(pmids))
        return [result.model_dump(by_alias=True) for result in results]

    _run(overrides, operation)


@main.command()
@click.pass_obj
def serve(overrides: dict):
    """Run the stdio tool server."""
    from pubmed_server.server import build_server

    settings = load_settings(overrides)
    click.echo(settings.describe(), err=True)
    server = build_server(PubMedClient(settings.to_client_config()))
    click.echo("PubMed server running on stdio", err=True)
    server.run()


if __name__ == "__main__":
    main()
