"""
Application configuration using pydantic-settings.

WHAT: Database, chain node, purchase policy and realtime settings
WHY: The settlement policy and timeouts differ between local chains and testnets
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Literal
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "Novaland Negotiation Core"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database (threads, messages, users)
    DATABASE_URL: str = "sqlite:///./data/novaland.db"

    # Chain peer
    CHAIN_RPC_URL: str = "http://127.0.0.1:8545"
    MARKETPLACE_CONTRACT_ADDRESS: str = "0x5CfF31C181B3C5b038F8319d4Af79d2C43F11424"
    CHAIN_REQUEST_TIMEOUT: int = 30  # seconds per RPC request
    CHAIN_CONFIRMATION_TIMEOUT: int = 180  # seconds to wait for a receipt
    CHAIN_POLL_INTERVAL: float = 1.0  # seconds between receipt polls
    CHAIN_MAX_RETRIES: int = 3  # read calls only, purchases are never retried
    CHAIN_RETRY_DELAY: float = 1.0  # base backoff in seconds

    # Purchase policy
    # "listing": pay the live listing price (contract is the source of truth)
    # "offer": abort when the listing price differs from the accepted offer
    SETTLEMENT_PRICE_POLICY: Literal["listing", "offer"] = "listing"
    PURCHASE_REVALIDATE_LISTING: bool = True

    # Fill the shared property cache when the API starts
    PRELOAD_PROPERTIES: bool = True

    # Realtime reconciliation
    THREAD_REFETCH_DEBOUNCE_SECONDS: float = 0.1

    # CORS - accepts comma-separated string or list
    # Use str type and parse in validator to avoid JSON parsing issues
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from comma-separated string or list."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    @field_validator("MARKETPLACE_CONTRACT_ADDRESS")
    @classmethod
    def validate_contract_address(cls, v: str) -> str:
        """Reject obviously malformed contract addresses early."""
        if not (v.startswith("0x") and len(v) == 42):
            raise ValueError(f"Invalid contract address: {v}")
        return v

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"

    # Streaming / SSE
    SSE_HEARTBEAT_INTERVAL: int = 15  # seconds between heartbeat pings

    class Config:
        # Look for .env in project root first, then backend/.env
        env_file = [
            str(Path(__file__).parent.parent.parent.parent / ".env"),
            str(Path(__file__).parent.parent.parent / ".env"),
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Singleton instance
settings = Settings()
