"""On-chain payment rails."""

from stipend.chain.erc20_rail import ERC20Rail

__all__ = ["ERC20Rail"]
