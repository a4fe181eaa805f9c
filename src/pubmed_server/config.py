"""Application configuration."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

from pubmed_server.constants import DEFAULT_TIMEOUT
from pubmed_server.data_sources.base_client import CacheConfig, ClientConfig

CONFIG_HELP = """\
Configuration options:
  Environment variables:
    PUBMED_EMAIL (required): Your email address for PubMed API requests
    PUBMED_API_KEY (optional): Your PubMed API key for higher rate limits
    PUBMED_CACHE_DIR (optional): Directory path for caching API responses
    PUBMED_CACHE_TTL (optional): Cache TTL in seconds (default: 86400)

  Command line arguments:
    --email <email>: Your email address for PubMed API requests
    --api-key <key>: Your PubMed API key for higher rate limits
    --cache-dir <path>: Directory path for caching API responses
    --cache-ttl <seconds>: Cache TTL in seconds (default: 86400)"""


class Settings(BaseSettings):
    """Application settings loaded from environment variables (PUBMED_*)."""

    # NCBI contact details
    email: str
    api_key: str | None = None

    # Cache
    cache_dir: Path | None = None
    cache_ttl: int | None = None

    # App Settings
    timeout_seconds: float = DEFAULT_TIMEOUT
    log_level: str = "INFO"

    def to_client_config(self) -> ClientConfig:
        return ClientConfig(
            email=self.email,
            api_key=self.api_key or None,
            cache=CacheConfig(directory=self.cache_dir, ttl_seconds=self.cache_ttl),
            timeout_seconds=self.timeout_seconds,
        )

    def describe(self) -> str:
        """Human-readable configuration summary (the API key is never shown)."""
        if self.cache_dir:
            cache_dir = str(self.cache_dir)
        elif self.cache_ttl:
            cache_dir = "Not configured (memory cache only)"
        else:
            cache_dir = "Not configured (caching disabled)"
        ttl = f"{self.cache_ttl} seconds" if self.cache_ttl else "86400 seconds (default)"
        api_key = (
            "Configured" if self.api_key else "Not configured (using default rate limits)"
        )
        return (
            "PubMed server configuration:\n"
            f"  Email: {self.email}\n"
            f"  API Key: {api_key}\n"
            f"  Cache Directory: {cache_dir}\n"
            f"  Cache TTL: {ttl}"
        )

    class Config:
        env_prefix = "PUBMED_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        frozen = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
