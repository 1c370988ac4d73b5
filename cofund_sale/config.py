import os
import logging
from typing import Optional
from dotenv import load_dotenv

from cofund_sale.errors import ConfigurationError

"""
Configuration Management for the COFUND Sale

This module loads every setting of the sale service from environment variables
(optionally through a .env file) with sensible defaults, and validates them so
the service refuses to start with a broken configuration.

Configuration Sources (in order of precedence):
1. Environment variables
2. Default values defined in this module

Environment Variables:
    OWNER_ADDRESS: Address holding administrative authority over the sale
    TREASURY_ADDRESS: Address receiving withdrawn funds
    SALE_ADDRESS: Stable address of the sale proxy
    TOKEN_NAME: Entitlement token name
    TOKEN_SYMBOL: Entitlement token symbol
    TOKEN_DECIMALS: Entitlement token decimals (0-18)
    DEFAULT_RATE: Token units per wei used when a round is started without a rate
    DEFAULT_SOFT_CAP_WEI: Soft cap used when a round is started without one
    DEFAULT_ROUND_DURATION: Round length in seconds used when no end time is given
    RATE_LIMIT_PER_MINUTE: Buy requests allowed per address and minute
    LEADERBOARD_SIZE: Number of rows returned by the leaderboard
    STATE_DIR: Directory (relative to the package) holding the sale snapshot
    API_PORT: Port for the read-only HTTP API
    CORS_ALLOWED_ORIGINS: Comma-separated allowed CORS origins
    DEV_FAUCET_ENABLED: Enables the fund_account development tool
"""

logger = logging.getLogger(__name__)

load_dotenv()

WEI_PER_ETH = 10**18


def _get_env_str(key: str, default: str, required: bool = False) -> str:
    """Get environment variable as string with validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ConfigurationError(f"Required environment variable {key} is not set")
    return value


def _get_env_int(key: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    """Get environment variable as integer with validation."""
    try:
        value = int(os.getenv(key, str(default)))
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a valid integer")
    if min_val is not None and value < min_val:
        raise ConfigurationError(f"Environment variable {key} must be >= {min_val}")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"Environment variable {key} must be <= {max_val}")
    return value


def _get_env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    value = value.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off", ""):
        return False
    raise ConfigurationError(f"Environment variable {key} must be a boolean")


def _get_env_address(key: str, default: str) -> str:
    """Get environment variable as a lowercase 0x address with validation."""
    value = os.getenv(key, default).strip()
    body = value[2:] if value.startswith(("0x", "0X")) else ""
    if len(body) != 40:
        raise ConfigurationError(f"Environment variable {key} must be a 0x-prefixed 20-byte address")
    try:
        int(body, 16)
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a hexadecimal address")
    return "0x" + body.lower()


try:
    # --- Roles ---
    OWNER_ADDRESS = _get_env_address("OWNER_ADDRESS", "0x" + "0" * 39 + "1")
    TREASURY_ADDRESS = _get_env_address("TREASURY_ADDRESS", "0x" + "0" * 39 + "2")
    SALE_ADDRESS = _get_env_address("SALE_ADDRESS", "0x" + "0" * 36 + "c0fd")

    # --- Token Configuration ---
    TOKEN_NAME = _get_env_str("TOKEN_NAME", "COFUND", required=True)
    TOKEN_SYMBOL = _get_env_str("TOKEN_SYMBOL", "COFUND", required=True)
    TOKEN_DECIMALS = _get_env_int("TOKEN_DECIMALS", 18, min_val=0, max_val=18)

    # --- Round Defaults ---
    DEFAULT_RATE = _get_env_int("DEFAULT_RATE", 200, min_val=1)
    DEFAULT_SOFT_CAP_WEI = _get_env_int("DEFAULT_SOFT_CAP_WEI", WEI_PER_ETH, min_val=0)
    DEFAULT_ROUND_DURATION = _get_env_int("DEFAULT_ROUND_DURATION", 20 * 60, min_val=1)

    # --- Rate Limiting ---
    RATE_LIMIT_PER_MINUTE = _get_env_int("RATE_LIMIT_PER_MINUTE", 10, min_val=1, max_val=1000)

    # --- Leaderboard ---
    LEADERBOARD_SIZE = _get_env_int("LEADERBOARD_SIZE", 20, min_val=1, max_val=1000)

    # --- Directories ---
    STATE_DIR = _get_env_str("STATE_DIR", "sale_state")
    STATE_FILE_NAME = "sale.json"

    # --- HTTP API Configuration ---
    API_PORT = _get_env_int("API_PORT", 5000, min_val=1024, max_val=65535)
    CORS_ALLOWED_ORIGINS = [o.strip() for o in _get_env_str("CORS_ALLOWED_ORIGINS", "*").split(",") if o.strip()]

    DEV_FAUCET_ENABLED = _get_env_bool("DEV_FAUCET_ENABLED", False)

    logger.info("Configuration loaded successfully")

except ConfigurationError as e:
    logger.error(f"Configuration error: {e}")
    raise
except Exception as e:
    logger.error(f"Unexpected error loading configuration: {e}")
    raise ConfigurationError(f"Failed to load configuration: {e}")
