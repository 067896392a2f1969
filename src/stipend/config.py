"""Configuration — stipend parameters and chain connection settings.

Stipend parameters live in config/stipend_params.json:

    {
      "max_monthly_amount": 10000000000,
      "funding_source": "treasury",
      "token_decimals": 6,
      "administrators": ["admin"]
    }

Chain settings are secrets and come from the environment (the CLI loads
a .env file first):

    STIPEND_RPC_URL, STIPEND_OPERATOR_KEY, STIPEND_TOKEN_ADDRESS,
    STIPEND_CHAIN_ID (default 11155111, Sepolia)
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
PARAMS_FILE = "stipend_params.json"
SEPOLIA_CHAIN_ID = 11155111


@dataclass(frozen=True)
class StipendConfig:
    """Stipend parameters."""

    max_monthly_amount: int
    funding_source: str
    administrators: List[str] = field(default_factory=list)
    token_decimals: int = 6

    def __post_init__(self) -> None:
        if self.max_monthly_amount <= 0:
            raise ValueError(
                f"max_monthly_amount must be positive, got {self.max_monthly_amount}"
            )
        if not self.funding_source.strip():
            raise ValueError("funding_source must not be empty")
        if self.token_decimals < 0:
            raise ValueError(
                f"token_decimals must be non-negative, got {self.token_decimals}"
            )

    @classmethod
    def from_dict(cls, params: Mapping) -> StipendConfig:
        return cls(
            max_monthly_amount=int(params["max_monthly_amount"]),
            funding_source=str(params["funding_source"]),
            administrators=[str(a) for a in params.get("administrators", [])],
            token_decimals=int(params.get("token_decimals", 6)),
        )

    @classmethod
    def from_config_dir(cls, config_dir: Path = DEFAULT_CONFIG_DIR) -> StipendConfig:
        """Load from <config_dir>/stipend_params.json."""
        params = json.loads((config_dir / PARAMS_FILE).read_text(encoding="utf-8"))
        return cls.from_dict(params)

    def format_amount(self, amount: int) -> str:
        """Render base units as a decimal string (4000000000 → '4000.000000')."""
        if self.token_decimals == 0:
            return str(amount)
        sign = "-" if amount < 0 else ""
        whole, frac = divmod(abs(amount), 10 ** self.token_decimals)
        return f"{sign}{whole}.{frac:0{self.token_decimals}d}"


@dataclass(frozen=True)
class ChainConfig:
    """Connection settings for the ERC-20 payment rail."""

    rpc_url: str
    operator_key: str
    token_address: str
    chain_id: int = SEPOLIA_CHAIN_ID

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> ChainConfig:
        """Build from STIPEND_* environment variables.

        Raises ValueError naming every missing variable.
        """
        if env is None:
            env = os.environ
        required = ("STIPEND_RPC_URL", "STIPEND_OPERATOR_KEY", "STIPEND_TOKEN_ADDRESS")
        missing = [name for name in required if not env.get(name)]
        if missing:
            raise ValueError(f"Missing chain settings: {', '.join(missing)}")
        return cls(
            rpc_url=env["STIPEND_RPC_URL"],
            operator_key=env["STIPEND_OPERATOR_KEY"],
            token_address=env["STIPEND_TOKEN_ADDRESS"],
            chain_id=int(env.get("STIPEND_CHAIN_ID") or SEPOLIA_CHAIN_ID),
        )
