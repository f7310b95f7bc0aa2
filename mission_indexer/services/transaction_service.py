"""
Transaction service for mission lifecycle writes (finalize / refund).

Each attempt re-validates eligibility against fresh state, estimates gas to
surface reverts early, signs with the configured key, submits and waits for
the receipt. Attempts never raise; the outcome is an ActionResponse.
"""

import asyncio
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from mission_indexer.contracts import MISSION_ABI, MissionStatus, normalize_address
from .mission_reader import MissionReader
from .mission_repository import MissionRepository
from .rpc_client import RpcAccessLayer


logger = structlog.get_logger(__name__)


class ActionResult(Enum):
    """Result types for finalize / refund attempts."""
    SUCCESS = "success"
    NOT_ELIGIBLE = "not_eligible"  # Nothing to do, no retry
    FAILED = "failed"  # Real failure, eligible for backoff


@dataclass
class ActionResponse:
    """Response from a finalize / refund attempt."""
    result: ActionResult
    tx_hash: str = ""
    error_message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.result is ActionResult.SUCCESS


FINALIZE_FUNCTION = "finalizeMission"
REFUND_FUNCTION = "refundPlayers"


class TransactionActions:
    """Idempotency-gated finalize / refund submission."""

    def __init__(
        self,
        rpc: RpcAccessLayer,
        reader: MissionReader,
        repository: MissionRepository,
        private_key: Optional[str] = None,
        receipt_poll_attempts: int = 60,
        receipt_poll_interval: float = 1.0,
        gas_safety_multiplier: float = 1.2
    ):
        self.logger = logger.bind(service="transaction_actions")
        self.rpc = rpc
        self.reader = reader
        self.repository = repository
        self.receipt_poll_attempts = receipt_poll_attempts
        self.receipt_poll_interval = receipt_poll_interval
        self.gas_safety_multiplier = gas_safety_multiplier
        self.account = Account.from_key(private_key) if private_key else None
        # Entries vanish once no caller holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

        if self.account:
            self.logger.info("Transaction signer loaded", signer=self.account.address)
        else:
            self.logger.warning("No signer key configured, finalize / refund disabled")

    def _lock_for(self, address: str) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[address] = lock
        return lock

    async def attempt_finalize(self, address: str) -> ActionResponse:
        """Submit ``finalizeMission()`` if the mission still needs settling."""
        return await self._attempt(address, FINALIZE_FUNCTION, self._check_finalize)

    async def attempt_refund(self, address: str) -> ActionResponse:
        """Submit ``refundPlayers()`` for a failed mission with pending refunds."""
        return await self._attempt(address, REFUND_FUNCTION, self._check_refund)

    async def _attempt(self, address: str, function_name: str, check) -> ActionResponse:
        address = normalize_address(address)
        lock = self._lock_for(address)

        if lock.locked():
            return ActionResponse(ActionResult.NOT_ELIGIBLE, error_message="attempt already in progress")

        async with lock:
            try:
                reason = await check(address)
                if reason:
                    self.logger.debug(
                        "Action not eligible",
                        mission=address,
                        action=function_name,
                        reason=reason
                    )
                    return ActionResponse(ActionResult.NOT_ELIGIBLE, error_message=reason)

                if self.account is None:
                    return ActionResponse(ActionResult.NOT_ELIGIBLE, error_message="signer key not configured")

                return await self._submit(address, function_name)

            except Exception as e:
                self.logger.error(
                    "❌ Action attempt failed",
                    mission=address,
                    action=function_name,
                    error=str(e),
                    error_type=type(e).__name__
                )
                return ActionResponse(ActionResult.FAILED, error_message=str(e))

    async def _check_refund(self, address: str) -> Optional[str]:
        mission = await self.repository.get_mission(address)
        if mission is None:
            return "mission not indexed"
        if mission.finalized:
            return "already finalized"
        if mission.status != MissionStatus.FAILED:
            return f"status is {mission.status_enum.label}"
        if mission.all_refunded:
            return "all players refunded"
        return None

    async def _check_finalize(self, address: str) -> Optional[str]:
        mission = await self.repository.get_mission(address)
        if mission is None:
            return "mission not indexed"
        if mission.finalized:
            return "already finalized"
        if mission.status not in (MissionStatus.PARTLY_SUCCESS, MissionStatus.SUCCESS):
            return f"status is {mission.status_enum.label}"

        snapshot = await self.reader.read_snapshot(address)
        refunds_pending = snapshot.status == MissionStatus.FAILED and not snapshot.all_refunded
        if snapshot.cro_current_wei <= 0 and not refunds_pending:
            return "nothing left to settle on-chain"
        return None

    async def _submit(self, address: str, function_name: str) -> ActionResponse:
        account = self.account
        checksum = AsyncWeb3.to_checksum_address(address)

        def contract_call(w3):
            contract = w3.eth.contract(address=checksum, abi=MISSION_ABI)
            return getattr(contract.functions, function_name)()

        # Surfaces revert reasons before anything is signed
        gas = await self.rpc.call(
            lambda w3: contract_call(w3).estimate_gas({"from": account.address}),
            "estimateGas",
            site=function_name
        )

        async def sign_and_send(w3):
            nonce = await w3.eth.get_transaction_count(account.address, "pending")
            gas_price = await w3.eth.gas_price
            chain_id = await w3.eth.chain_id
            tx = await contract_call(w3).build_transaction({
                "from": account.address,
                "nonce": nonce,
                "gas": int(gas * self.gas_safety_multiplier),
                "gasPrice": gas_price,
                "chainId": chain_id,
            })
            signed = account.sign_transaction(tx)
            return await w3.eth.send_raw_transaction(signed.raw_transaction)

        raw_hash = await self.rpc.call(sign_and_send, "sendRawTransaction", site=function_name)
        tx_hash = AsyncWeb3.to_hex(raw_hash)

        self.logger.info("📤 Transaction sent", mission=address, action=function_name, tx_hash=tx_hash)

        receipt = await self._wait_for_receipt(raw_hash)
        if receipt is None:
            return ActionResponse(ActionResult.FAILED, tx_hash=tx_hash, error_message="receipt not found")

        if receipt.get("status") != 1:
            return ActionResponse(ActionResult.FAILED, tx_hash=tx_hash, error_message="transaction reverted")

        self.logger.info("✅ Transaction confirmed", mission=address, action=function_name, tx_hash=tx_hash)
        return ActionResponse(ActionResult.SUCCESS, tx_hash=tx_hash)

    async def _wait_for_receipt(self, tx_hash):
        for _ in range(self.receipt_poll_attempts):
            try:
                return await self.rpc.call(
                    lambda w3: w3.eth.get_transaction_receipt(tx_hash),
                    "getTransactionReceipt",
                    site="wait_for_receipt"
                )
            except TransactionNotFound:
                await asyncio.sleep(self.receipt_poll_interval)
        return None
