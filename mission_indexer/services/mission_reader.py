"""
Chain views used by the indexer: mission snapshot (with realtime status) and the
factory change log. Every call goes through the RPC access layer.
"""

from typing import List, Optional

import structlog
from web3 import AsyncWeb3

from mission_indexer.contracts import (
    MISSION_ABI, FACTORY_ABI, MissionSnapshot, FactoryChange,
    decode_mission_data, decode_factory_changes, normalize_address
)
from .rpc_client import RpcAccessLayer


logger = structlog.get_logger(__name__)


class MissionReader:
    """Reads mission and factory state through an RpcAccessLayer."""

    def __init__(self, rpc: RpcAccessLayer, factory_address: Optional[str] = None):
        self.logger = logger.bind(service="mission_reader")
        self.rpc = rpc
        self.factory_address = factory_address

    @staticmethod
    def _mission_contract(w3, address: str):
        return w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=MISSION_ABI)

    async def read_snapshot(self, address: str) -> MissionSnapshot:
        """
        Full snapshot of one mission, read at a single block.

        Raises:
            SnapshotDecodeError: if the contract returns an unexpected shape
            Any RPC error left after the access layer's retry
        """
        address = normalize_address(address)

        async def fetch(w3):
            block = await w3.eth.block_number
            contract = self._mission_contract(w3, address)
            data = await contract.functions.getMissionData().call(block_identifier=block)
            status = await contract.functions.getRealtimeStatus().call(block_identifier=block)
            return block, data, status

        block, data, status = await self.rpc.call(fetch, "getMissionData", site="read_snapshot")
        return decode_mission_data(address, data, status, block_number=block)

    async def read_factory_changes(self, after_seq: int, max_items: int) -> List[FactoryChange]:
        """Changes with sequence greater than ``after_seq``, at most ``max_items``."""
        if not self.factory_address:
            self.logger.debug("No factory address configured, skipping change poll")
            return []

        factory_address = AsyncWeb3.to_checksum_address(self.factory_address)

        async def fetch(w3):
            contract = w3.eth.contract(address=factory_address, abi=FACTORY_ABI)
            return await contract.functions.getMissionChangesAfter(after_seq, max_items).call()

        raw = await self.rpc.call(fetch, "getMissionChangesAfter", site="read_factory_changes")
        return decode_factory_changes(raw)
