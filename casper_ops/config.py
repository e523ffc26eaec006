"""
Orchestrator Configuration

Loads orchestrator settings from YAML, merged over the testnet defaults.
Keys may be written in snake_case or in the camelCase used by the
platform's JSON config (pollIntervalMs, maxAttempts, ...).
"""

import os
import re
from dataclasses import dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from loguru import logger


MOTES_PER_CSPR = 1_000_000_000

DEFAULT_ENDPOINTS = [
    "https://rpc.testnet.casperlabs.io/rpc",
    "https://node-clarity-testnet.make.services/rpc",
]

ENDPOINTS_ENV_VAR = "CASPER_OPS_ENDPOINTS"

_CAMEL_RE = re.compile(r'(?<!^)(?=[A-Z])')

# camelCase option names whose snake_case form differs from a plain split
_ALIASES = {
    'min_stake_c_s_p_r': 'min_stake_cspr',
    'min_stake': 'min_stake_cspr',
    'min_bridge_c_s_p_r': 'min_bridge',
    'max_bridge_c_s_p_r': 'max_bridge',
}


@dataclass
class OrchestratorConfig:
    """All tunables of the chain client, economics and polling engine"""

    # Chain client
    endpoints: List[str] = field(default_factory=lambda: list(DEFAULT_ENDPOINTS))
    rpc_timeout_seconds: float = 30.0
    chain_name: str = "casper-test"
    explorer_url: str = "https://testnet.cspr.live"

    # Polling
    poll_interval_ms: int = 5000
    max_attempts: int = 120
    backoff_multiplier: float = 1.0
    max_poll_interval_ms: int = 60000
    jitter_ratio: float = 0.1
    max_poll_seconds: Optional[float] = 3600.0

    # Deployment pricing (motes)
    deploy_base_cost_motes: int = 2_500_000_000
    deploy_per_byte_motes: int = 1_000

    # Staking
    min_stake_cspr: Decimal = Decimal("5")
    min_lock_days: int = 7
    max_lock_days: int = 365
    inflation_rate: float = 0.02
    apy_scaling_factor: float = 400.0
    apy_band: Tuple[float, float] = (5.0, 15.0)

    # Bridge
    native_chain: str = "casper-test"
    bridge_fee_percent: Dict[str, Decimal] = field(default_factory=lambda: {
        'casper-test': Decimal("0.5"),
        'sepolia': Decimal("0.75"),
    })
    min_bridge: Decimal = Decimal("0.1")
    max_bridge: Decimal = Decimal("10000")

    # Accept degraded balances / synthetic validators when checking preconditions
    sandbox: bool = False

    ledger_path: str = "operations.db"

    def __post_init__(self):
        self.poll_interval_ms = int(self.poll_interval_ms)
        self.max_attempts = int(self.max_attempts)
        self.deploy_base_cost_motes = int(self.deploy_base_cost_motes)
        self.deploy_per_byte_motes = int(self.deploy_per_byte_motes)
        self.min_stake_cspr = Decimal(str(self.min_stake_cspr))
        self.min_bridge = Decimal(str(self.min_bridge))
        self.max_bridge = Decimal(str(self.max_bridge))
        self.bridge_fee_percent = {
            chain: Decimal(str(pct)) for chain, pct in self.bridge_fee_percent.items()
        }
        self.apy_band = (float(self.apy_band[0]), float(self.apy_band[1]))
        self.validate()

    def validate(self):
        """Reject settings the engine cannot run with"""
        if not self.endpoints:
            raise ValueError("At least one RPC endpoint is required")
        if self.poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ValueError("jitter_ratio must be in [0, 1)")
        low, high = self.apy_band
        if low > high:
            raise ValueError(f"apy_band minimum {low} exceeds maximum {high}")
        if self.min_lock_days > self.max_lock_days:
            raise ValueError("min_lock_days exceeds max_lock_days")
        if self.native_chain not in self.bridge_fee_percent:
            raise ValueError(f"No bridge fee configured for native chain {self.native_chain}")
        for chain, pct in self.bridge_fee_percent.items():
            if pct < 0 or pct > 100:
                raise ValueError(f"Bridge fee for {chain} must be within [0, 100] percent")

    @property
    def supported_chains(self) -> List[str]:
        return list(self.bridge_fee_percent.keys())

    def explorer_deploy_url(self, deploy_hash: str) -> str:
        return f"{self.explorer_url}/deploy/{deploy_hash}"

    @classmethod
    def from_dict(cls, data: Dict) -> 'OrchestratorConfig':
        """Build config from a (possibly camelCase) mapping, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            name = _normalize_key(key)
            if name in known:
                kwargs[name] = value
            else:
                logger.warning(f"Ignoring unknown config option: {key}")

        if 'apy_band' in kwargs:
            kwargs['apy_band'] = tuple(kwargs['apy_band'])

        return cls(**kwargs)


def _normalize_key(key: str) -> str:
    snake = _CAMEL_RE.sub('_', key).lower()
    return _ALIASES.get(snake, snake)


def load_config(config_path: Optional[str] = None) -> OrchestratorConfig:
    """
    Load configuration from YAML

    Missing or unreadable files fall back to the defaults; invalid values
    still raise ValueError.

    Args:
        config_path: Path to YAML config (optional)

    Returns:
        OrchestratorConfig
    """
    data: Dict = {}

    if config_path:
        try:
            config_file = Path(config_path)
            if config_file.exists():
                with open(config_file, 'r', encoding='utf-8') as f:
                    data = yaml.safe_load(f) or {}
                logger.info(f"Loaded orchestrator config from {config_file}")
            else:
                logger.warning(f"Config file {config_file} not found, using defaults")
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {config_path}: {e}, using defaults")
            data = {}

    env_endpoints = os.environ.get(ENDPOINTS_ENV_VAR)
    if env_endpoints:
        data['endpoints'] = [url.strip() for url in env_endpoints.split(',') if url.strip()]
        logger.info(f"Using RPC endpoints from {ENDPOINTS_ENV_VAR}")

    return OrchestratorConfig.from_dict(data)
