"""
Observer Configuration

All configurable parameters for the supply chain observer.
Values are read from the environment (and a local .env file, if present).
"""

import os
import re
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from .errors import ConfigError


DEFAULT_CONTRACT_ADDRESS = "0x9fE46736679d2D9a65F0992F2272dE9f3c7fa6e0"

ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ObserverConfig:
    """Configuration for the observer service."""

    # ========== Ledger ==========
    # JSON-RPC endpoint of the ledger node
    rpc_url: str = "http://localhost:8545"

    # Contracts whose transactions are indexed (lowercased on validate)
    contract_addresses: List[str] = field(
        default_factory=lambda: [DEFAULT_CONTRACT_ADDRESS]
    )

    # First height considered when the store is empty
    start_block: int = 0

    # Seconds between head polls for new-block notifications
    poll_interval: float = 1.0

    # HTTP timeout for a single RPC call (seconds)
    request_timeout: float = 30.0

    # ========== Storage ==========
    db_path: str = "data/observer.db"

    # ========== API ==========
    api_host: str = "127.0.0.1"
    api_port: int = 3001

    # ========== Logging ==========
    # Log backfill progress every N blocks (0 = no progress logging)
    progress_interval: int = 100

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ObserverConfig":
        """
        Build configuration from environment variables.

        Raises:
            ConfigError: If a value cannot be parsed or fails validation
        """
        load_dotenv(env_file)

        config = cls()
        config.rpc_url = os.getenv("RPC_URL", config.rpc_url)

        addresses = os.getenv("CONTRACT_ADDRESSES") or os.getenv("CONTRACT_ADDRESS")
        if addresses:
            config.contract_addresses = [
                a.strip() for a in addresses.split(",") if a.strip()
            ]

        config.start_block = _env_int("START_BLOCK", config.start_block)
        config.poll_interval = _env_float("POLL_INTERVAL", config.poll_interval)
        config.request_timeout = _env_float("REQUEST_TIMEOUT", config.request_timeout)
        config.db_path = os.getenv("DB_PATH", config.db_path)
        config.api_host = os.getenv("API_HOST", config.api_host)
        config.api_port = _env_int("PORT", config.api_port)
        config.progress_interval = _env_int("PROGRESS_INTERVAL", config.progress_interval)
        config.log_level = os.getenv("LOG_LEVEL", config.log_level).upper()

        config.validate()
        return config

    def validate(self):
        """Check ranges and formats, normalizing contract addresses."""
        if not self.rpc_url:
            raise ConfigError("RPC_URL must not be empty")

        if not self.contract_addresses:
            raise ConfigError("At least one contract address is required")

        for address in self.contract_addresses:
            if not ADDRESS_PATTERN.match(address):
                raise ConfigError(f"Invalid contract address: {address!r}")
        self.contract_addresses = [a.lower() for a in self.contract_addresses]

        if self.start_block < 0:
            raise ConfigError(f"START_BLOCK must be >= 0, got {self.start_block}")
        if self.poll_interval <= 0:
            raise ConfigError(f"POLL_INTERVAL must be > 0, got {self.poll_interval}")
        if self.request_timeout <= 0:
            raise ConfigError(f"REQUEST_TIMEOUT must be > 0, got {self.request_timeout}")
        if not 0 < self.api_port < 65536:
            raise ConfigError(f"PORT out of range: {self.api_port}")
        if self.progress_interval < 0:
            raise ConfigError(f"PROGRESS_INTERVAL must be >= 0, got {self.progress_interval}")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"Unknown LOG_LEVEL: {self.log_level}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
