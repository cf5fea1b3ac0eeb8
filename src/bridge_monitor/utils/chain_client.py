"""
Chain access for the bridge monitor.

ChainClient reads bridge logs from one chain over JSON-RPC, retries transient
transport failures with exponential backoff, and remembers the hashes of the
blocks it has returned so that a later reorganisation is reported instead of
silently re-emitting different events.
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import BlockNotFound, Web3Exception

from ..errors import ReorgDetected, RpcError
from ..models import ChainEvent, ChainId, EventType

T = TypeVar("T")

RETRYABLE_ERRORS = (ConnectionError, OSError, asyncio.TimeoutError, Web3Exception)


def to_hex_str(value: HexBytes | bytes | str) -> str:
    """
    Normalize a hash (bytes, HexBytes or hex string) to a lowercase 0x string.

    :param value: The value to normalize
    :return: 0x-prefixed lowercase hex string
    """
    match value:
        case HexBytes():
            return Web3.to_hex(bytes(value))
        case bytes():
            return Web3.to_hex(value)
        case str() if value.startswith(("0x", "0X")):
            return "0x" + value[2:].lower()
        case str():
            return "0x" + value.lower()
        case _:
            raise ValueError(f"Unexpected hash type: {type(value)}")


class ChainClient:
    """Reads bridge events and block data from a single chain."""

    # Bridge events per chain and the category each maps to
    BRIDGE_EVENTS: dict[ChainId, dict[str, EventType]] = {
        ChainId.L1: {
            "DepositInitiated": EventType.DEPOSIT,
            "WithdrawalFinalized": EventType.WITHDRAWAL,
        },
        ChainId.L2: {
            "DepositFinalized": EventType.DEPOSIT,
            "WithdrawalInitiated": EventType.WITHDRAWAL,
        },
    }
    TOKEN_EVENTS: dict[str, EventType] = {"Transfer": EventType.TRANSFER}

    def __init__(
        self,
        chain_id: ChainId,
        rpc_url: str,
        bridge_address: str,
        bridge_abi: list[dict[str, Any]],
        token_address: str | None = None,
        token_abi: list[dict[str, Any]] | None = None,
        confirmation_lag: int = 6,
        retry_count: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        request_timeout: int = 30,
        reorg_window: int = 64,
        w3: AsyncWeb3 | None = None
    ) -> None:
        """
        Initialize the chain client.

        Args:
            chain_id: Which layer this client reads
            rpc_url: HTTP RPC endpoint URL
            bridge_address: Address of the bridge contract
            bridge_abi: Bridge contract ABI
            token_address: Optional token contract whose transfers are recorded
            token_abi: ABI for the token contract
            confirmation_lag: Blocks behind head before a block is final
            retry_count: Retries after the first failed attempt
            base_delay: Initial backoff delay in seconds
            max_delay: Backoff ceiling in seconds
            request_timeout: HTTP request timeout in seconds
            reorg_window: Number of recent block hashes tracked for reorg checks
            w3: Pre-built AsyncWeb3 instance (used for testing)
        """
        self.chain_id = chain_id
        self.rpc_url = rpc_url
        self.confirmation_lag = confirmation_lag
        self.retry_count = retry_count
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.reorg_window = reorg_window

        self.w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )

        # (contract, event name, event type) triples queried on every fetch
        self._event_sources: list[tuple[Any, str, EventType]] = []
        bridge = self.w3.eth.contract(address=Web3.to_checksum_address(bridge_address), abi=bridge_abi)
        for event_name, event_type in self.BRIDGE_EVENTS[chain_id].items():
            self._add_source(bridge, event_name, event_type)

        if token_address and token_abi:
            token = self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=token_abi)
            for event_name, event_type in self.TOKEN_EVENTS.items():
                self._add_source(token, event_name, event_type)

        # Canonical block hashes by height, oldest first
        self._block_hashes: OrderedDict[int, str] = OrderedDict()

        self.last_head: int | None = None
        self.rpc_failures = 0
        self.reorgs_detected = 0

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}.{chain_id.value}")

    def _add_source(self, contract: Any, event_name: str, event_type: EventType) -> None:
        if not hasattr(contract.events, event_name):
            raise ValueError(f"Event {event_name} not found in contract ABI")
        self._event_sources.append((contract, event_name, event_type))

    # Raw RPC calls, kept thin so they can be replaced in tests

    async def _get_block_number(self) -> int:
        return await self.w3.eth.block_number

    async def _get_block(self, block_number: int) -> Any:
        return await self.w3.eth.get_block(block_number)

    async def _get_logs(self, contract: Any, event_name: str, from_block: int, to_block: int) -> list[Any]:
        event_obj = getattr(contract.events, event_name)
        return await event_obj.get_logs(from_block=from_block, to_block=to_block)

    async def _get_receipt(self, tx_hash: str) -> Any:
        return await self.w3.eth.get_transaction_receipt(tx_hash)

    async def _get_transaction(self, tx_hash: str) -> Any:
        return await self.w3.eth.get_transaction(tx_hash)

    async def _call_with_retry(
        self,
        description: str,
        func: Callable[..., Awaitable[T]],
        *args: Any
    ) -> T:
        """
        Call an RPC coroutine, retrying transient failures with backoff.

        Raises:
            RpcError: If every attempt failed
        """
        last_error: BaseException | None = None
        attempts = self.retry_count + 1

        for attempt in range(attempts):
            try:
                return await func(*args)
            except BlockNotFound:
                raise
            except RETRYABLE_ERRORS as e:
                last_error = e
                self.rpc_failures += 1
                if attempt + 1 >= attempts:
                    break
                delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                self.logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{attempts}): {e}. "
                    f"Retrying in {delay}s"
                )
                await asyncio.sleep(delay)

        self.logger.error(f"{description} failed after {attempts} attempts: {last_error}")
        raise RpcError(f"{description} failed after {attempts} attempts: {last_error}", attempts) from last_error

    async def current_head(self) -> int:
        """
        Latest block number reported by the node.

        Raises:
            RpcError: If the node could not be reached
        """
        head = await self._call_with_retry("eth_blockNumber", self._get_block_number)
        self.last_head = head
        return head

    async def safe_head(self) -> int:
        """Highest block treated as final under the confirmation lag."""
        return max(0, await self.current_head() - self.confirmation_lag)

    async def block_hash(self, block_number: int) -> str | None:
        """Current canonical hash at a height, or None if the block is gone."""
        try:
            block = await self._call_with_retry(f"eth_getBlockByNumber({block_number})", self._get_block, block_number)
        except BlockNotFound:
            return None
        if block is None:
            return None
        return to_hex_str(block["hash"])

    def _remember(self, block_number: int, block_hash: str) -> None:
        self._block_hashes[block_number] = block_hash
        self._block_hashes = OrderedDict(sorted(self._block_hashes.items()))
        highest = next(reversed(self._block_hashes))
        while self._block_hashes and next(iter(self._block_hashes)) <= highest - self.reorg_window:
            self._block_hashes.popitem(last=False)

    def forget_from(self, block_number: int) -> None:
        """Drop tracked hashes at or above a height."""
        for height in [h for h in self._block_hashes if h >= block_number]:
            del self._block_hashes[height]

    def tracked_hash(self, block_number: int) -> str | None:
        return self._block_hashes.get(block_number)

    async def verify_canonical(self) -> None:
        """
        Check previously returned blocks against the current chain.

        Block hashes commit to their ancestors, so the highest tracked block
        is checked first and the rest only when it has changed.

        Raises:
            ReorgDetected: With the lowest height whose hash changed
        """
        if not self._block_hashes:
            return

        highest = next(reversed(self._block_hashes))
        if await self.block_hash(highest) == self._block_hashes[highest]:
            return

        for height, stored in list(self._block_hashes.items()):
            if await self.block_hash(height) != stored:
                self.reorgs_detected += 1
                self.forget_from(height)
                self.logger.warning(f"Block {height} changed on {self.chain_id.value}, reporting reorg")
                raise ReorgDetected(self.chain_id, height)

    async def fetch_events(self, from_block: int, to_block: int) -> list[ChainEvent]:
        """
        Fetch and normalize bridge events in an inclusive block range.

        Args:
            from_block: First block of the range
            to_block: Last block of the range

        Returns:
            Events ordered by (block_number, log_index)

        Raises:
            RpcError: On transport failure after retries
            ReorgDetected: If an earlier returned block is no longer canonical
        """
        await self.verify_canonical()

        raw_logs: list[tuple[Any, EventType]] = []
        for contract, event_name, event_type in self._event_sources:
            logs = await self._call_with_retry(
                f"eth_getLogs {event_name} [{from_block}, {to_block}]",
                self._get_logs, contract, event_name, from_block, to_block
            )
            raw_logs.extend((log, event_type) for log in logs)

        raw_logs.sort(key=lambda item: (item[0]["blockNumber"], item[0]["logIndex"]))

        blocks: dict[int, Any] = {}
        receipts: dict[str, Any] = {}
        events = [await self._normalize(log, event_type, blocks, receipts) for log, event_type in raw_logs]

        for height, block in blocks.items():
            self._remember(height, to_hex_str(block["hash"]))
        if to_block not in blocks and (end_hash := await self.block_hash(to_block)) is not None:
            self._remember(to_block, end_hash)

        if events:
            self.logger.info(
                f"Found {len(events)} bridge events on {self.chain_id.value} "
                f"in blocks {from_block}-{to_block}"
            )
        return events

    async def _normalize(
        self,
        log: Any,
        event_type: EventType,
        blocks: dict[int, Any],
        receipts: dict[str, Any]
    ) -> ChainEvent:
        """Turn a decoded log into a ChainEvent with gas and timestamp data."""
        block_number: int = log["blockNumber"]
        tx_hash = to_hex_str(log["transactionHash"])

        if block_number not in blocks:
            blocks[block_number] = await self._call_with_retry(
                f"eth_getBlockByNumber({block_number})", self._get_block, block_number
            )
        block = blocks[block_number]
        block_hash = to_hex_str(block["hash"])

        # A log from a different block than the one we just read means the
        # chain moved under us mid-fetch
        if log.get("blockHash") is not None and to_hex_str(log["blockHash"]) != block_hash:
            self.reorgs_detected += 1
            self.forget_from(block_number)
            raise ReorgDetected(self.chain_id, block_number)

        if tx_hash not in receipts:
            receipts[tx_hash] = await self._call_with_retry(
                f"eth_getTransactionReceipt({tx_hash[:10]}...)", self._get_receipt, tx_hash
            )
        receipt = receipts[tx_hash]

        gas_used = receipt.get("gasUsed")
        gas_price = receipt.get("effectiveGasPrice")
        if gas_price is None:
            tx = await self._call_with_retry(
                f"eth_getTransactionByHash({tx_hash[:10]}...)", self._get_transaction, tx_hash
            )
            gas_price = tx.get("gasPrice")

        args = log.get("args", {})
        sender = args.get("from")
        recipient = args.get("to")
        amount = args.get("amount", args.get("value", 0))
        deposit_id = args.get("depositId") if event_type is EventType.DEPOSIT else None

        return ChainEvent(
            chain_id=self.chain_id,
            event_type=event_type,
            transaction_hash=tx_hash,
            block_number=block_number,
            log_index=log["logIndex"],
            block_hash=block_hash,
            from_address=Web3.to_checksum_address(sender) if sender else None,
            to_address=Web3.to_checksum_address(recipient) if recipient else None,
            amount=str(amount),
            deposit_id=int(deposit_id) if deposit_id is not None else None,
            gas_used=int(gas_used) if gas_used is not None else None,
            gas_price_wei=int(gas_price) if gas_price is not None else None,
            timestamp=int(block["timestamp"]),
        )

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the client.

        Returns:
            Dictionary with status information
        """
        return {
            "chain_id": self.chain_id.value,
            "rpc_url": self.rpc_url,
            "last_head": self.last_head,
            "tracked_blocks": len(self._block_hashes),
            "rpc_failures": self.rpc_failures,
            "reorgs_detected": self.reorgs_detected,
        }
