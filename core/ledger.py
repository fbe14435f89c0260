"""
core/ledger.py — Ledger Anchor Backend
=======================================
Every audited mutation is mirrored as a hash-chained block. The relational
database stays the source of truth; the anchor makes tampering with the audit
trail detectable. Blocks are written after the commit they describe (see
anchor_pending); AuditLog rows and entities keep the event digest, which the
block carries.

Backends:
  1. "simulation" — in-memory hash chain, no external dependencies (default)
  2. "ethereum"   — writes the event digest to an EVM node via web3.py

Set LEDGER_BACKEND in .env to switch.
All modules call: from core.ledger import ledger
"""

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from config import settings

logger = logging.getLogger("aidledger.ledger")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def payload_hash(data: dict) -> str:
    return hashlib.sha3_256(json.dumps(data, sort_keys=True, default=str).encode()).hexdigest()


# ── Simulated chain (default — works with zero setup) ─────────────────────────
class SimulatedChain:
    """
    In-memory hash chain.
    Resets when the server restarts; the audit_logs table keeps the hashes.
    """

    def __init__(self):
        self.blocks = []
        self.block_number = 0

    async def connect(self):
        logger.info("SimulatedChain: ready (in-memory mode)")
        if not self.blocks:
            self._mine_block("GENESIS", {"message": "AidLedger genesis block"})

    async def disconnect(self):
        logger.info("SimulatedChain: disconnected")

    async def ping(self) -> str:
        return f"ok — simulated chain, {len(self.blocks)} blocks"

    def _mine_block(self, block_type: str, data: dict) -> dict:
        prev_hash = self.blocks[-1]["hash"] if self.blocks else "0" * 64
        timestamp = _now_iso()
        header = {
            "block_number": self.block_number,
            "block_type": block_type,
            "data": data,
            "digest": payload_hash(data),
            "prev_hash": prev_hash,
            "timestamp": timestamp,
        }
        block = {**header, "hash": payload_hash(header)}
        self.blocks.append(block)
        self.block_number += 1
        return block

    async def write_block(self, block_type: str, data: dict) -> dict:
        block = self._mine_block(block_type, data)
        logger.debug(f"Block #{block['block_number']} written [{block_type}] hash={block['hash'][:16]}...")
        return block

    async def get_block(self, block_hash: str) -> Optional[dict]:
        """Look a block up by its own hash or by the event digest it carries."""
        for block in self.blocks:
            if block_hash in (block["hash"], block["digest"]):
                return block
        return None

    async def verify_chain(self) -> bool:
        """Recompute every hash and link; False if any block was altered."""
        prev = "0" * 64
        for block in self.blocks:
            header = {k: v for k, v in block.items() if k != "hash"}
            if block["prev_hash"] != prev or payload_hash(header) != block["hash"]:
                return False
            if block["digest"] != payload_hash(block["data"]):
                return False
            prev = block["hash"]
        return True


# ── Ethereum anchor ───────────────────────────────────────────────────────────
class EthereumChain:
    """
    Anchors event digests as zero-value self-transactions on an EVM chain.
    Needs WEB3_PROVIDER_URL and DEPLOYER_PRIVATE_KEY, plus the `ethereum` extra.

    web3's HTTP provider is synchronous, so every call runs in a worker
    thread and a slow confirmation never stalls the event loop.
    """

    def __init__(self, w3=None):
        self.w3 = w3

    async def connect(self):
        try:
            from web3 import Web3
        except ImportError:
            raise ImportError("LEDGER_BACKEND=ethereum needs web3: pip install 'aidledger[ethereum]'")
        w3 = Web3(Web3.HTTPProvider(settings.WEB3_PROVIDER_URL))
        if not await asyncio.to_thread(w3.is_connected):
            raise ConnectionError(f"No EVM node at {settings.WEB3_PROVIDER_URL}")
        self.w3 = w3
        logger.info(f"EthereumChain: connected at block #{await asyncio.to_thread(lambda: w3.eth.block_number)}")

    async def disconnect(self):
        self.w3 = None
        logger.info("EthereumChain: disconnected")

    async def ping(self) -> str:
        if self.w3 is None:
            return "disconnected"
        height = await asyncio.to_thread(lambda: self.w3.eth.block_number)
        return f"ok, EVM block #{height}"

    def _anchor(self, block_type: str, digest: str):
        sender = self.w3.eth.account.from_key(settings.DEPLOYER_PRIVATE_KEY)
        unsigned = {
            "from": sender.address,
            "to": sender.address,
            "value": 0,
            "data": self.w3.to_hex(text=f"aidledger:{block_type}:{digest}"),
            "gas": 30000,
            "gasPrice": self.w3.eth.gas_price,
            "nonce": self.w3.eth.get_transaction_count(sender.address),
            "chainId": settings.CHAIN_ID,
        }
        signed = self.w3.eth.account.sign_transaction(unsigned, settings.DEPLOYER_PRIVATE_KEY)
        sent = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return self.w3.eth.wait_for_transaction_receipt(sent)

    async def write_block(self, block_type: str, data: dict) -> dict:
        if self.w3 is None:
            raise RuntimeError("EthereumChain is not connected")
        digest = payload_hash(data)
        receipt = await asyncio.to_thread(self._anchor, block_type, digest)
        return {
            "block_type": block_type,
            "digest": digest,
            "hash": receipt.transactionHash.hex(),
            "block_number": receipt.blockNumber,
            "timestamp": _now_iso(),
        }

    async def get_block(self, block_hash: str) -> Optional[dict]:
        if self.w3 is None:
            return None
        found = await asyncio.to_thread(self.w3.eth.get_transaction, block_hash)
        return dict(found) if found else None


# ── Post-commit anchoring ─────────────────────────────────────────────────────
# Events are queued on the session and only reach the chain once the database
# commit that carries their AuditLog rows has succeeded.
PENDING_ANCHORS = "aidledger.pending_anchors"


def stage_anchor(db, block_type: str, data: dict) -> str:
    """Queue an event on the session; returns the digest its block will carry."""
    db.info.setdefault(PENDING_ANCHORS, []).append((block_type, data))
    return payload_hash(data)


def discard_anchors(db) -> int:
    return len(db.info.pop(PENDING_ANCHORS, None) or [])


async def anchor_pending(db) -> list:
    """Write every queued event to the ledger, in staging order."""
    pending = db.info.pop(PENDING_ANCHORS, None) or []
    return [await ledger.write_block(block_type, data) for block_type, data in pending]


# ── Factory — picks the backend from .env ─────────────────────────────────────
def _create_ledger():
    backend = settings.LEDGER_BACKEND.lower()
    if backend == "ethereum":
        logger.info("Using Ethereum ledger anchor")
        return EthereumChain()
    logger.info("Using simulated ledger anchor (development mode)")
    return SimulatedChain()


# Singleton — import this everywhere:  from core.ledger import ledger
ledger = _create_ledger()
