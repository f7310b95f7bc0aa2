"""
Mission Indexer

Mirrors on-chain mission contracts into a relational store and drives
their lifecycle forward:
- Resilient JSON-RPC access with endpoint failover
- Idempotent snapshot reconciliation
- Once-per-second lifecycle scheduler with finalize / refund triggers
- Factory cursor sync and kick ingestion
"""

__version__ = "0.1.0"
