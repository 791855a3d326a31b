"""
USDT payments on EVM chains.

Verifies a claimed transfer by reading the transaction receipt over JSON-RPC
and decoding the ERC20 Transfer log. Token decimals differ per network
(18 on BSC, 6 on Polygon), so every amount conversion goes through the
network definition.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

import httpx
from web3 import Web3

from .config import Settings
from .errors import ConfigurationError
from .utils import format_amount, now_vn, to_decimal

logger = logging.getLogger("usdt")

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

RATE_LOCK_MINUTES = 15


@dataclass(frozen=True)
class UsdtNetwork:
    name: str
    chain_id: int
    usdt_contract: str
    decimals: int
    rpc_url: str

    def to_token_amount(self, raw_amount) -> Decimal:
        return Decimal(int(raw_amount)) / (Decimal(10) ** self.decimals)

    def to_raw_amount(self, amount) -> int:
        return int((to_decimal(amount) * (Decimal(10) ** self.decimals)).to_integral_value(ROUND_HALF_UP))


@dataclass
class VerificationResult:
    verified: bool
    actual_amount: Decimal | None = None
    sender: str | None = None
    recipient: str | None = None
    error: str | None = None


NETWORK_ALIASES = {"bsc": "bsc", "bnb": "bsc", "polygon": "polygon", "matic": "polygon"}


def get_network(name: str, settings: Settings) -> UsdtNetwork | None:
    key = NETWORK_ALIASES.get((name or "").lower())
    if key == "bsc":
        return UsdtNetwork(
            name="bsc",
            chain_id=56,
            usdt_contract="0x55d398326f99059fF775485246999027B3197955",
            decimals=18,
            rpc_url=settings.bsc_rpc_url,
        )
    if key == "polygon":
        return UsdtNetwork(
            name="polygon",
            chain_id=137,
            usdt_contract="0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
            decimals=6,
            rpc_url=settings.polygon_rpc_url,
        )
    return None


def vnd_to_usdt(amount_vnd, rate) -> Decimal:
    return (to_decimal(amount_vnd) * to_decimal(rate)).quantize(Decimal("0.01"), ROUND_HALF_UP)


def build_qr_value(network: UsdtNetwork, wallet: str, usdt_amount) -> str:
    """EIP-681 token transfer URI."""
    return (
        f"ethereum:{network.usdt_contract}@{network.chain_id}/transfer"
        f"?address={wallet}&uint256={network.to_raw_amount(usdt_amount)}"
    )


def generate_payment_info(amount_vnd, settings: Settings, network_name: str = "bsc") -> dict:
    network = get_network(network_name, settings)
    if network is None:
        raise ValueError(f"Unsupported network: {network_name}")
    usdt_amount = vnd_to_usdt(amount_vnd, settings.vnd_to_usd_rate)
    return {
        "walletAddress": settings.company_usdt_wallet,
        "amount": int(to_decimal(amount_vnd)),
        "usdtAmount": float(usdt_amount),
        "network": network.name.upper(),
        "qrValue": build_qr_value(network, settings.company_usdt_wallet, usdt_amount),
    }


def get_exchange_rate(settings: Settings) -> dict:
    # static rate until a price oracle is wired in
    return {"vndToUsd": settings.vnd_to_usd_rate, "timestamp": now_vn().isoformat(), "source": "static"}


def lock_exchange_rate(session_id: str, settings: Settings) -> dict:
    return {
        "sessionId": session_id,
        "rate": settings.vnd_to_usd_rate,
        "expiresAt": (now_vn() + timedelta(minutes=RATE_LOCK_MINUTES)).isoformat(),
    }


def _topic_address(topic: str) -> str:
    return Web3.to_checksum_address("0x" + topic[-40:])


class RpcError(RuntimeError):
    pass


class UsdtVerifier:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.transport = transport

    async def get_transaction_receipt(self, tx_hash: str, network: UsdtNetwork) -> dict | None:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_getTransactionReceipt",
            "params": [tx_hash],
        }
        async with httpx.AsyncClient(transport=self.transport, timeout=self.settings.rpc_timeout_seconds) as client:
            r = await client.post(network.rpc_url, json=payload)
            r.raise_for_status()
            res = r.json()
        if res.get("error"):
            raise RpcError(res["error"].get("message") if isinstance(res["error"], dict) else str(res["error"]))
        return res.get("result")

    async def verify_transaction(self, tx_hash: str, expected_amount, network_name: str = "bsc") -> VerificationResult:
        network = get_network(network_name, self.settings)
        if network is None:
            return VerificationResult(verified=False, error=f"Unsupported network: {network_name}")

        wallet = self.settings.company_usdt_wallet
        if not wallet:
            raise ConfigurationError("DGNX_USDT_WALLET not configured")

        try:
            receipt = await self.get_transaction_receipt(tx_hash, network)
        except (httpx.HTTPError, RpcError, ValueError) as e:
            logger.warning("[USDT] Receipt lookup failed for %s: %s", tx_hash, e)
            return VerificationResult(verified=False, error=f"Verification error: {e}")

        if not receipt:
            return VerificationResult(verified=False, error="Transaction not found")

        if int(receipt.get("status") or "0x0", 16) != 1:
            return VerificationResult(verified=False, error="Transaction failed")

        contract = network.usdt_contract.lower()
        transfer_log = next(
            (
                log for log in receipt.get("logs") or []
                if (log.get("address") or "").lower() == contract
                and (log.get("topics") or [""])[0].lower() == TRANSFER_EVENT_TOPIC
            ),
            None,
        )
        if transfer_log is None:
            return VerificationResult(verified=False, error="USDT transfer not found in transaction")

        topics = transfer_log["topics"]
        if len(topics) < 3:
            return VerificationResult(verified=False, error="Malformed transfer event")

        amount_hex = topics[3] if len(topics) > 3 else (transfer_log.get("data") or "0x0")[:66]
        try:
            actual_amount = network.to_token_amount(int(amount_hex, 16))
            recipient = _topic_address(topics[2])
            sender = _topic_address(topics[1])
        except (TypeError, ValueError):
            logger.warning("[USDT] Undecodable Transfer log in %s: %s", tx_hash, transfer_log)
            return VerificationResult(verified=False, error="Malformed transfer event")
        if recipient.lower() != wallet.lower():
            return VerificationResult(verified=False, actual_amount=actual_amount, sender=sender,
                                      recipient=recipient, error="Wrong recipient")

        # no upper bound: overpayment is accepted as-is
        expected = to_decimal(expected_amount)
        floor = expected * (1 - to_decimal(self.settings.usdt_tolerance))
        if actual_amount < floor:
            return VerificationResult(
                verified=False,
                actual_amount=actual_amount,
                sender=sender,
                recipient=recipient,
                error=f"Insufficient amount. Expected: {format_amount(expected)}, Received: {format_amount(actual_amount)}",
            )

        return VerificationResult(verified=True, actual_amount=actual_amount, sender=sender, recipient=recipient)
