"""ERC-20 payment rail — pays stipends in a stablecoin on an EVM chain.

The operator key signs every payout. Two funding arrangements work:
- The funding source IS the operator account: payouts use transfer().
- The funding source is another account (e.g. a treasury multisig) that
  has approved the operator: payouts use transferFrom(), and what the
  source can supply is min(balance, allowance).

Each transfer waits for one confirmation. A rejected or reverted
transaction is a failed transfer (False), which aborts the disbursement
batch. A broadcast transaction whose receipt does not arrive in time
raises TransferUnconfirmedError: the engine keeps that recipient marked
as paid, because the transaction may still be mined.

Confirmed transfers cannot be recalled, so this rail is NOT
transactional: if a later transfer in the same batch fails, the earlier
payouts stand and stay marked as paid. Check funding_status() before a
large batch.
"""

from __future__ import annotations

from typing import Any, Optional

from stipend.config import ChainConfig
from stipend.errors import TransferUnconfirmedError

# Minimal ERC-20 ABI: only the calls this rail makes.
ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "transfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "transferFrom",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


class ERC20Rail:
    """Funds-movement rail backed by an ERC-20 token contract.

    Usage:
        rail = ERC20Rail(ChainConfig.from_env())
        rail.available("0xTreasury...")
        rail.transfer("0xTreasury...", "0xRecipient...", 4_000_000_000)

    A pre-built Web3 client can be passed in (tests, shared providers);
    otherwise one is created lazily from config.rpc_url.
    """

    def __init__(
        self,
        config: ChainConfig,
        web3: Optional[Any] = None,
        receipt_timeout: int = 300,
    ) -> None:
        from eth_account import Account

        self._config = config
        self._w3 = web3
        self._account = Account.from_key(config.operator_key)
        self._receipt_timeout = receipt_timeout
        self._token: Optional[Any] = None

    @property
    def rail_id(self) -> str:
        return "erc20"

    @property
    def operator_address(self) -> str:
        return self._account.address

    def available(self, source: str) -> int:
        token = self._contract()
        source_addr = self._checksum(source)
        balance = int(token.functions.balanceOf(source_addr).call())
        if source_addr == self._account.address:
            return balance
        allowance = int(
            token.functions.allowance(source_addr, self._account.address).call()
        )
        return min(balance, allowance)

    def transfer(self, source: str, to: str, amount: int) -> bool:
        """Send one payout and wait for its receipt.

        Returns False when nothing reached the chain (bad address, revert
        on simulation, RPC rejection) or the transaction reverted. Raises
        TransferUnconfirmedError when the transaction was broadcast but no
        receipt arrived in time, since it may still be mined.
        """
        from web3.exceptions import ContractLogicError, TimeExhausted

        if amount <= 0:
            return False
        w3 = self._web3()
        try:
            source_addr = self._checksum(source)
            to_addr = self._checksum(to)
            token = self._contract()
            if source_addr == self._account.address:
                call = token.functions.transfer(to_addr, amount)
            else:
                call = token.functions.transferFrom(source_addr, to_addr, amount)
            tx = call.build_transaction({
                "from": self._account.address,
                "nonce": w3.eth.get_transaction_count(self._account.address),
                "chainId": self._config.chain_id,
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        except (ContractLogicError, ValueError):
            # ValueError carries bad addresses and JSON-RPC rejections.
            return False

        try:
            receipt = w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout,
            )
        except TimeExhausted:
            raise TransferUnconfirmedError(
                f"Transaction {tx_hash.hex()} to {to_addr} not confirmed "
                f"within {self._receipt_timeout}s"
            )
        return receipt["status"] == 1

    def _web3(self) -> Any:
        if self._w3 is None:
            from web3 import HTTPProvider, Web3

            self._w3 = Web3(HTTPProvider(self._config.rpc_url))
        return self._w3

    def _contract(self) -> Any:
        if self._token is None:
            self._token = self._web3().eth.contract(
                address=self._checksum(self._config.token_address),
                abi=ERC20_ABI,
            )
        return self._token

    @staticmethod
    def _checksum(address: str) -> str:
        from web3 import Web3

        return Web3.to_checksum_address(address)
