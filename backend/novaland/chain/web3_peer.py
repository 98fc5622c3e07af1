"""
web3.py chain peer implementation.

WHAT: Marketplace contract access over JSON-RPC
WHY: Read listings and execute PurchaseProperty against a real node
HOW: AsyncWeb3 HTTP provider, retries with backoff for reads, no retries for writes
"""

import asyncio
from typing import Any

from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError

from .abi import MARKETPLACE_ABI, PROPERTY_STRUCT_LENGTH
from .types import (
    ChainStatus,
    OnChainProperty,
    TxHandle,
    TxReceipt,
    ChainUnavailableError,
    ChainTimeoutError,
    TransactionRejectedError,
    ChainResponseError,
)
from ..core.config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


def _field(struct: Any, index: int, name: str) -> Any:
    """Read a struct field from a decoded tuple or a named mapping."""
    if isinstance(struct, dict):
        return struct[name]
    return struct[index]


def decode_property(struct: Any) -> OnChainProperty:
    """
    Decode one FetchProperties struct.

    Raises:
        ChainResponseError: struct is too short or has wrong field types
    """
    if not isinstance(struct, dict) and len(struct) < PROPERTY_STRUCT_LENGTH:
        raise ChainResponseError(f"Property struct has {len(struct)} fields, expected {PROPERTY_STRUCT_LENGTH}")
    try:
        images = _field(struct, 5, "images")
        location = _field(struct, 6, "location")
        documents = _field(struct, 7, "documents")
        return OnChainProperty(
            product_id=int(_field(struct, 0, "productID")),
            owner=str(_field(struct, 1, "owner")),
            price_wei=int(_field(struct, 2, "price")),
            title=_field(struct, 3, "propertyTitle") or "",
            category=_field(struct, 4, "category") or "",
            images=list(images) if isinstance(images, (list, tuple)) else [],
            location=list(location) if isinstance(location, (list, tuple)) else [],
            documents=list(documents) if isinstance(documents, (list, tuple)) else [documents],
            description=_field(struct, 8, "description") or "",
            nft_id=str(_field(struct, 9, "nftId") or ""),
            is_listed=bool(_field(struct, 10, "isListed")),
        )
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise ChainResponseError(f"Invalid property struct: {e}") from e


class Web3ChainPeer:
    """Marketplace contract peer backed by web3.py."""

    def __init__(
        self,
        rpc_url: str | None = None,
        contract_address: str | None = None,
        w3: AsyncWeb3 | None = None
    ):
        """Initialize the AsyncWeb3 client and contract binding."""
        self.rpc_url = rpc_url or settings.CHAIN_RPC_URL
        self.request_timeout = settings.CHAIN_REQUEST_TIMEOUT
        self.poll_interval = settings.CHAIN_POLL_INTERVAL
        self.max_retries = settings.CHAIN_MAX_RETRIES
        self.retry_delay = settings.CHAIN_RETRY_DELAY

        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self.rpc_url))
        self.contract_address = Web3.to_checksum_address(
            contract_address or settings.MARKETPLACE_CONTRACT_ADDRESS
        )
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=MARKETPLACE_ABI)

    async def _read(self, label: str, call):
        """
        Run a read-only call with timeout and exponential backoff.

        Args:
            label: Name used in log lines
            call: Zero-argument callable returning an awaitable

        Raises:
            ChainTimeoutError: Every attempt timed out
            ChainUnavailableError: Node unreachable or call failed
        """
        for attempt in range(self.max_retries):
            try:
                return await asyncio.wait_for(call(), timeout=self.request_timeout)
            except TimeoutError as e:
                logger.warning(f"Chain read {label} timed out (attempt {attempt + 1}/{self.max_retries})")
                if attempt == self.max_retries - 1:
                    raise ChainTimeoutError(f"{label} timed out after {self.max_retries} attempts") from e
            except OSError as e:
                logger.error(f"Chain node unreachable during {label} (attempt {attempt + 1}/{self.max_retries}): {e}")
                if attempt == self.max_retries - 1:
                    raise ChainUnavailableError(f"Chain node is not reachable: {e}") from e
            except (ContractLogicError, Web3RPCError) as e:
                # Contract/RPC errors are deterministic, retrying will not help
                raise ChainUnavailableError(f"{label} failed: {e}") from e
            await asyncio.sleep(self.retry_delay * (2 ** attempt))

    async def ping(self) -> ChainStatus:
        """
        Check node and contract availability.

        Returns:
            ChainStatus with chain id and property count
        """
        try:
            chain_id = await asyncio.wait_for(self.w3.eth.chain_id, timeout=5.0)
            count = await asyncio.wait_for(
                self.contract.functions.propertyIndex().call(),
                timeout=5.0
            )
            return ChainStatus(
                available=True,
                rpc_url=self.rpc_url,
                chain_id=int(chain_id),
                property_count=int(count)
            )
        except TimeoutError:
            logger.warning("Chain ping timed out")
            return ChainStatus(available=False, rpc_url=self.rpc_url, error="Connection timeout")
        except OSError as e:
            logger.warning(f"Chain node not reachable: {e}")
            return ChainStatus(available=False, rpc_url=self.rpc_url, error="Connection refused - is the node running?")
        except Exception as e:
            logger.error(f"Chain ping failed: {e}")
            return ChainStatus(available=False, rpc_url=self.rpc_url, error=str(e))

    async def fetch_properties(self) -> list[OnChainProperty]:
        """
        Fetch every property struct from the contract.

        Malformed structs are skipped with a warning.
        """
        raw_structs = await self._read(
            "FetchProperties",
            lambda: self.contract.functions.FetchProperties().call()
        )
        properties = []
        for index, struct in enumerate(raw_structs or []):
            try:
                properties.append(decode_property(struct))
            except ChainResponseError as e:
                logger.warning(f"Skipping invalid property struct at index {index}: {e}")
        logger.info(f"Fetched {len(properties)} properties from contract {self.contract_address}")
        return properties

    async def fetch_property(self, property_id: int) -> OnChainProperty | None:
        """Find one property; the contract has no by-id getter."""
        for prop in await self.fetch_properties():
            if prop.product_id == int(property_id):
                return prop
        logger.warning(f"Property {property_id} not found via FetchProperties")
        return None

    async def has_pending_transactions(self, address: str) -> bool:
        """
        Whether the account has sent transactions that are not mined yet.

        The pending nonce runs ahead of the mined nonce while the node holds
        an unmined transaction from the account.
        """
        account = Web3.to_checksum_address(address)
        pending = await self._read(
            "pending nonce", lambda: self.w3.eth.get_transaction_count(account, "pending")
        )
        mined = await self._read(
            "mined nonce", lambda: self.w3.eth.get_transaction_count(account, "latest")
        )
        logger.debug(f"Nonces for {account}: pending={pending}, mined={mined}")
        return int(pending) > int(mined)

    async def submit_purchase(self, property_id: int, buyer: str, *, value_wei: int) -> TxHandle:
        """
        Send PurchaseProperty from the buyer's node-managed account.

        Never retried: a resubmission could pay twice.

        Raises:
            TransactionRejectedError: Revert during estimation or RPC refusal
            ChainUnavailableError: Node unreachable, nothing was sent
            ChainTimeoutError: Submission outcome unknown
        """
        buyer_checksum = Web3.to_checksum_address(buyer)
        fn = self.contract.functions.PurchaseProperty(int(property_id), buyer_checksum)
        logger.info(
            f"Calling PurchaseProperty(id={property_id}, buyer={buyer_checksum}) with value {value_wei} wei"
        )
        try:
            tx_hash = await asyncio.wait_for(
                fn.transact({"from": buyer_checksum, "value": int(value_wei)}),
                timeout=self.request_timeout
            )
        except TimeoutError as e:
            raise ChainTimeoutError(f"PurchaseProperty submission timed out: {e}") from e
        except (ContractLogicError, Web3RPCError) as e:
            raise TransactionRejectedError(str(e)) from e
        except OSError as e:
            raise ChainUnavailableError(f"Chain node is not reachable: {e}") from e

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(f"Purchase transaction sent: {tx_hash_hex}")
        return TxHandle(tx_hash=tx_hash_hex, property_id=int(property_id), buyer=buyer.lower(), value_wei=int(value_wei))

    async def wait_for_confirmation(self, handle: TxHandle, *, timeout: float) -> TxReceipt:
        """
        Poll for the receipt of a submitted transaction.

        Raises:
            ChainTimeoutError: No receipt within `timeout` seconds
            ChainUnavailableError: Node became unreachable while polling
        """
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                handle.tx_hash,
                timeout=timeout,
                poll_latency=self.poll_interval
            )
        except TimeExhausted as e:
            raise ChainTimeoutError(f"No receipt for {handle.tx_hash} after {timeout}s") from e
        except OSError as e:
            raise ChainUnavailableError(f"Lost connection while confirming {handle.tx_hash}: {e}") from e

        logger.info(f"Purchase transaction {handle.tx_hash} mined (status={receipt['status']})")
        return TxReceipt(
            tx_hash=handle.tx_hash,
            status=int(receipt["status"]),
            block_number=receipt.get("blockNumber")
        )
