"""
Configuration Management Module

Handles secure storage of configuration with an encrypted main wallet key.
Uses Fernet symmetric encryption with password-derived keys.
"""

import os
import base64
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict

import yaml
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from solders.keypair import Keypair

from utils import validate_public_key

logger = logging.getLogger(__name__)


@dataclass
class Config:
    """Bot configuration settings."""

    # Network
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    rpc_websocket_url: str = "wss://api.mainnet-beta.solana.com"

    # Token
    token_mint: str = ""
    token_mint_pumpswap: str = ""

    # Distribution gate
    distribute_to_run_delay_min: float = 5

    # Wallet allocation
    distribute_variance_percent: float = 20.0     # each share reduced by 0..N %
    distribution_reserve_percent: float = 10.0    # kept on main wallet for fees
    main_fee_reserve_lamports: int = 5_000_000

    # Volume bot
    distribute_wallet_num: int = 10
    sol_amount_to_distribute: float = 1.0
    distribute_interval_min: float = 600           # seconds between rounds
    distribute_interval_max: float = 1200
    buy_interval_min: float = 10                  # seconds between buy 1 and buy 2
    buy_interval_max: float = 40
    sell_interval_min: float = 10                 # seconds between buy 2 and sell
    sell_interval_max: float = 40
    buy_lower_percent: float = 40.0
    buy_upper_percent: float = 60.0
    volume_fee_reserve_lamports: int = 5_000_000
    round_overlap: str = "unbounded"              # unbounded | bounded
    max_inflight_rounds: int = 2

    # Market maker - buy
    distribute_wallet_num_marketmaker: int = 5
    sol_amount_to_market_maker: float = 1.0
    distribute_delta_percent: float = 10.0
    total_period_min: float = 60
    buy_interval_period_unit_sec: float = 30
    additional_time_min: float = 0
    tx_fee_lamports_per_iteration: int = 800_000

    # Market maker - sell
    sell_token_percent: float = 20.0
    sell_token_delta_percent: float = 5.0
    sell_concurrency_percent: float = 50.0
    sell_concurrency_delta_percent: float = 10.0
    sell_iteration_sleep_time_min: float = 2
    sell_iteration_sleep_time_delta_percent: float = 20.0

    # Rent thresholds (lamports)
    token_account_rent_lamports: int = 2_039_280
    mint_rent_lamports: int = 1_461_600

    # Gathering
    gather_to_other_address: bool = False
    gather_address: Optional[str] = None
    collect_sell_attempts: int = 5
    collect_stagger_seconds: float = 0.2

    # Retry
    retry_delay_seconds: float = 2.0
    sweep_attempts: int = 6

    # Security
    encrypted_private_key: Optional[str] = None
    salt: Optional[str] = None

    # Operation
    data_dir: str = "./data"
    exchange_factory: Optional[str] = None        # "package.module:callable"
    dry_run: bool = False
    log_level: str = "INFO"
    log_file: str = "./logs/swarm_bot.log"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, including ``encrypted_private_key`` as currently held."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        # Filter only valid fields
        valid_fields = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**valid_fields)

    def validate(self):
        """Raise ValueError for settings the engines cannot run with."""
        if self.distribute_wallet_num < 1 or self.distribute_wallet_num_marketmaker < 1:
            raise ValueError("Wallet counts must be at least 1")
        if not 0 <= self.distribute_variance_percent < 100:
            raise ValueError("distribute_variance_percent must be in [0, 100)")
        if not 0 <= self.distribution_reserve_percent < 100:
            raise ValueError("distribution_reserve_percent must be in [0, 100)")
        if self.buy_lower_percent > self.buy_upper_percent:
            raise ValueError("buy_lower_percent cannot exceed buy_upper_percent")
        if self.buy_interval_period_unit_sec <= 0:
            raise ValueError("buy_interval_period_unit_sec must be positive")
        if self.round_overlap not in ("unbounded", "bounded"):
            raise ValueError("round_overlap must be 'unbounded' or 'bounded'")
        if self.gather_to_other_address and not validate_public_key(self.gather_address):
            raise ValueError("gather_address must be a valid public key when gather_to_other_address is set")


class ConfigManager:
    """Manages configuration file with encrypted secrets."""

    def __init__(self, config_path: Path = Path("./bot_config.yaml")):
        self.config_path = Path(config_path)
        self._kdf_iterations = 480000  # OWASP recommended minimum

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive encryption key from password using PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._kdf_iterations,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password.encode()))
        return key

    def _encrypt_private_key(self, private_key: str, password: str, salt: bytes) -> str:
        """Encrypt the main wallet secret (base58 keypair) with password."""
        pk_clean = private_key.strip()

        try:
            Keypair.from_base58_string(pk_clean)
        except Exception:
            raise ValueError("Private key must be a base58 encoded 64-byte keypair")

        key = self._derive_key(password, salt)
        f = Fernet(key)
        encrypted = f.encrypt(pk_clean.encode())
        return base64.b64encode(encrypted).decode()

    def _decrypt_private_key(self, encrypted_key: str, password: str, salt: bytes) -> str:
        """Decrypt the main wallet secret."""
        key = self._derive_key(password, salt)
        f = Fernet(key)
        encrypted_bytes = base64.b64decode(encrypted_key.encode())
        return f.decrypt(encrypted_bytes).decode()

    def exists(self) -> bool:
        return self.config_path.exists()

    def create_config(
        self,
        config_data: Dict[str, Any],
        private_key: str,
        password: str
    ) -> Config:
        """Create new configuration with encrypted private key."""
        salt = os.urandom(16)
        salt_b64 = base64.b64encode(salt).decode()

        encrypted_key = self._encrypt_private_key(private_key, password, salt)

        config_data = dict(config_data)
        config_data["encrypted_private_key"] = encrypted_key
        config_data["salt"] = salt_b64

        config = Config.from_dict(config_data)
        self._save_config(config)

        logger.info(f"Configuration created at {self.config_path}")
        return config

    def load_config(self, password: Optional[str] = None) -> Config:
        """Load configuration; decrypt the main key when a password is given."""
        config = Config.from_dict(self.read_raw_config())

        if password is not None and config.encrypted_private_key and config.salt:
            salt = base64.b64decode(config.salt)
            config.encrypted_private_key = self._decrypt_private_key(
                config.encrypted_private_key,
                password,
                salt
            )

        logger.info("Configuration loaded successfully")
        return config

    def read_raw_config(self) -> Dict[str, Any]:
        """Read config without decrypting (for status checks)."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _save_config(self, config: Config):
        """Save configuration to YAML file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        data = config.to_dict()

        with open(self.config_path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

        # Set restrictive permissions (owner read/write only)
        os.chmod(self.config_path, 0o600)

        logger.info(f"Configuration saved to {self.config_path}")

    def update_config(self, updates: Dict[str, Any]) -> Config:
        """Update configuration values, keeping the encrypted key untouched."""
        data = self.read_raw_config()
        data.update(updates)

        config = Config.from_dict(data)
        self._save_config(config)

        logger.info("Configuration updated")
        return config


# Default configuration template
DEFAULT_CONFIG = """
# Swarm Volume / Market Maker Bot Configuration
# This file contains encrypted credentials - keep it secure!

rpc_url: https://api.mainnet-beta.solana.com
rpc_websocket_url: wss://api.mainnet-beta.solana.com

# Token
token_mint: ""
token_mint_pumpswap: ""

# Minutes to wait after a distribution before a bot may launch
distribute_to_run_delay_min: 5

# Wallet allocation
distribute_variance_percent: 20.0
distribution_reserve_percent: 10.0
main_fee_reserve_lamports: 5000000

# Volume bot (intervals in seconds)
distribute_wallet_num: 10
sol_amount_to_distribute: 1.0
distribute_interval_min: 600
distribute_interval_max: 1200
buy_interval_min: 10
buy_interval_max: 40
sell_interval_min: 10
sell_interval_max: 40
buy_lower_percent: 40.0
buy_upper_percent: 60.0
volume_fee_reserve_lamports: 5000000
round_overlap: unbounded
max_inflight_rounds: 2

# Market maker - buy
distribute_wallet_num_marketmaker: 5
sol_amount_to_market_maker: 1.0
distribute_delta_percent: 10.0
total_period_min: 60
buy_interval_period_unit_sec: 30
additional_time_min: 0
tx_fee_lamports_per_iteration: 800000

# Market maker - sell
sell_token_percent: 20.0
sell_token_delta_percent: 5.0
sell_concurrency_percent: 50.0
sell_concurrency_delta_percent: 10.0
sell_iteration_sleep_time_min: 2
sell_iteration_sleep_time_delta_percent: 20.0

# Gathering
gather_to_other_address: false
gather_address: null

# Operation
data_dir: ./data
exchange_factory: null
dry_run: false
log_level: INFO
log_file: ./logs/swarm_bot.log

# Encrypted credentials (DO NOT MODIFY)
encrypted_private_key: null
salt: null
""".strip()
