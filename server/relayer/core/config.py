import logging
import sys
from functools import lru_cache
from pathlib import Path
from typing import Literal

from eth_account import Account
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

# Look for .env in project root (parent of server/)
_env_file = Path(__file__).resolve().parent.parent.parent.parent / ".env"

DEFAULT_CONTRACT_ADDRESS = "0x4995f6754359b2ec0b9d537c2f839e3dc01f6240"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=_env_file, extra="ignore")

    # Environment
    env: Literal["development", "production"] = "development"

    # Server
    port: int = 3001

    # Ledger
    provider_url: str = "http://127.0.0.1:8545"
    contract_address: str = DEFAULT_CONTRACT_ADDRESS
    relayer_private_key: str = ""
    chain_id: int | None = None  # None = ask the node once at first use
    ledger_timeout_seconds: float = 10.0

    # Balance (native units, e.g. MATIC) below which a warning is logged
    min_balance_warning: float = 0.05

    # Submit-vote budget: eligibility check + submission, not confirmation
    request_budget_seconds: float = 15.0

    # Fixed submission fee policy (no estimation, no live fee market)
    gas_limit: int = 500_000
    max_fee_gwei: int = 80
    priority_fee_gwei: int = 30

    # Replacement (speed-up) fee policy for stuck transactions
    replacement_gas_limit: int = 600_000
    replacement_max_fee_gwei: int = 100
    replacement_priority_fee_gwei: int = 35

    # Confirmation monitor ladder
    monitor_first_check_seconds: float = 10.0
    monitor_backoff_seconds: float = 5.0
    monitor_max_polls: int = 5
    monitor_replacement_polls: int = 3

    nonce_conflict_retries: int = 2

    # Recover the typed-data signer locally before touching the ledger
    verify_signatures: bool = False

    # Echo / debug / wallet-info endpoints
    diagnostics_enabled: bool | None = None  # None = auto (enabled in dev, disabled in prod)

    # CORS - comma-separated origins or "*" for all (dev only)
    cors_origins: str = "*"

    # Trusted proxy IPs for X-Forwarded-For (comma-separated)
    trusted_proxies: str = "127.0.0.1,::1"

    # Rate limiting (disabled by default in dev, enable in prod)
    rate_limit_enabled: bool | None = None  # None = auto (disabled in dev, enabled in prod)
    submit_rate_limit_per_minute: int = 10

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def is_rate_limit_enabled(self) -> bool:
        """Check if rate limiting is enabled (auto-detect based on env if not set)."""
        if self.rate_limit_enabled is not None:
            return self.rate_limit_enabled
        return self.is_production

    @property
    def is_diagnostics_enabled(self) -> bool:
        if self.diagnostics_enabled is not None:
            return self.diagnostics_enabled
        return not self.is_production


def _is_valid_private_key(key: str) -> bool:
    try:
        Account.from_key(key)
    except (ValueError, TypeError):
        return False
    return True


def validate_settings(settings: Settings) -> None:
    """Validate required settings and print helpful error messages."""
    errors = []

    if not settings.relayer_private_key:
        errors.append("RELAYER_PRIVATE_KEY must be set to the relayer's signing key")
    elif not _is_valid_private_key(settings.relayer_private_key):
        errors.append("RELAYER_PRIVATE_KEY is not a valid 32-byte hex private key")

    if not Web3.is_address(settings.contract_address):
        errors.append(f"CONTRACT_ADDRESS is not a valid address: {settings.contract_address!r}")

    if settings.replacement_max_fee_gwei <= settings.max_fee_gwei:
        errors.append("REPLACEMENT_MAX_FEE_GWEI must be strictly higher than MAX_FEE_GWEI")
    if settings.replacement_priority_fee_gwei <= settings.priority_fee_gwei:
        errors.append(
            "REPLACEMENT_PRIORITY_FEE_GWEI must be strictly higher than PRIORITY_FEE_GWEI"
        )

    if settings.is_production and settings.cors_origins == "*":
        errors.append(
            "CORS_ORIGINS should not be '*' in production - set to your frontend domain"
        )

    if settings.contract_address.lower() == DEFAULT_CONTRACT_ADDRESS:
        logging.warning("CONTRACT_ADDRESS not set - using the default deployment address")

    if settings.chain_id is None:
        logging.warning("CHAIN_ID not set - it will be read from the ledger on first use")

    if errors:
        for error in errors:
            logging.error("Configuration error: %s", error)
        sys.exit(1)


@lru_cache
def get_settings() -> Settings:
    settings = Settings()
    validate_settings(settings)
    return settings
