# app/core/config.py
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Settlement Gateway"
    API_V1_STR: str = "/api/v1"

    # Payment terms offered in every 402 response
    X402_PAY_TO_ADDRESS: str = "0x679D879F5d71e165bEcF5fEF4AEB595e82c055E0"
    X402_NETWORK: str = "base"  # x402 network id: "base" or "base-sepolia"
    X402_CHAIN_NAME: str = "Base"
    X402_ASSET: str = "USDC"
    X402_ASSET_CONTRACT: Optional[str] = None  # None = known USDC contract for X402_NETWORK
    X402_PRICE: str = "1.0"

    # Blockchain data source (EVM JSON-RPC)
    X402_RPC_URL: AnyHttpUrl = "https://mainnet.base.org"
    X402_RPC_TIMEOUT_SECONDS: float = 10.0
    X402_RECEIPT_TIMEOUT_SECONDS: float = 60.0
    X402_RECEIPT_POLL_INTERVAL_SECONDS: float = 2.0

    # Intent lifecycle
    X402_INTENT_EXPIRY_MINUTES: int = 30
    X402_SWEEP_INTERVAL_SECONDS: int = 300

    # Audit trail
    X402_AUDIT_ENABLED: bool = True
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    PROTECTED_CONTENT: str = "This is the protected content. Welcome, Partner."
    PROTECTED_SECRET_CODE: Optional[str] = None  # returned as secret_code with the payload when set

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
