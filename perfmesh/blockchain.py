"""A small hash-linked chain of data blocks with JSON import and export."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

GENESIS_DATA = "创世区块"
GENESIS_PREVIOUS_HASH = "0"

_REQUIRED_FIELDS = ("index", "timestamp", "data", "hash", "previousHash")


class ChainError(ValueError):
    """Raised when a chain document is malformed or fails verification."""


def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


def _iso(timestamp: datetime) -> str:
    return timestamp.isoformat(timespec="seconds")


@dataclass
class Block:
    """One block: its position, creation time, payload and link to its predecessor."""

    index: int
    timestamp: datetime
    data: str
    previous_hash: str = ""
    hash: str = field(init=False)

    def __post_init__(self) -> None:
        self.hash = self.calculate_hash()

    def calculate_hash(self) -> str:
        """Return the SHA-256 hex digest of the block's contents."""
        text = f"{self.index}{_iso(self.timestamp)}{self.data}{self.previous_hash}"
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "timestamp": _iso(self.timestamp),
            "data": self.data,
            "hash": self.hash,
            "previousHash": self.previous_hash,
        }


def _genesis_block() -> Block:
    return Block(0, _now(), GENESIS_DATA, GENESIS_PREVIOUS_HASH)


def _block_from_dict(entry: Any) -> Block:
    if not isinstance(entry, Mapping):
        raise ChainError("block entry is not an object")
    missing = [name for name in _REQUIRED_FIELDS if name not in entry]
    if missing:
        raise ChainError(f"block entry lacks fields: {', '.join(missing)}")

    index = entry["index"]
    if isinstance(index, bool) or not isinstance(index, (int, float)):
        raise ChainError("block index is not a number")
    try:
        timestamp = datetime.fromisoformat(str(entry["timestamp"]))
    except ValueError as exc:
        raise ChainError(f"invalid block timestamp: {entry['timestamp']!r}") from exc

    block = Block(int(index), timestamp, str(entry["data"]), str(entry["previousHash"]))
    if block.hash != str(entry["hash"]):
        raise ChainError(f"hash mismatch in block {block.index}")
    return block


class Blockchain:
    """An append-only list of blocks, each holding the hash of the one before."""

    def __init__(self) -> None:
        self._blocks: list[Block] = [_genesis_block()]

    def __len__(self) -> int:
        return len(self._blocks)

    def __iter__(self) -> Iterator[Block]:
        return iter(self._blocks)

    @property
    def chain(self) -> list[Block]:
        """The blocks in order, as a new list."""
        return list(self._blocks)

    @property
    def latest_block(self) -> Block:
        return self._blocks[-1]

    def add_block(self, data: str) -> Block:
        """Append a block holding ``data`` and return it."""
        latest = self.latest_block
        block = Block(latest.index + 1, _now(), data, latest.hash)
        self._blocks.append(block)
        return block

    def is_chain_valid(self) -> bool:
        """Check every block's hash and its link to the previous block."""
        if not self._blocks:
            return False
        for previous, current in zip(self._blocks, self._blocks[1:]):
            if current.hash != current.calculate_hash():
                return False
            if current.previous_hash != previous.hash:
                return False
        return True

    def to_json(self) -> str:
        """Serialise the chain as a JSON document with a ``chain`` array."""
        return json.dumps(
            {"chain": [block.to_dict() for block in self._blocks]},
            ensure_ascii=False,
            indent=4,
        )

    def from_json(self, document: str | bytes | Mapping[str, Any]) -> None:
        """Replace the chain with the one in ``document``.

        Malformed documents leave the chain untouched. A document whose blocks
        parse but do not link up resets the chain to a fresh genesis block.
        Either way ``ChainError`` is raised.
        """
        if isinstance(document, (str, bytes, bytearray)):
            try:
                document = json.loads(document)
            except json.JSONDecodeError as exc:
                raise ChainError(f"invalid JSON: {exc}") from exc
        if not isinstance(document, Mapping):
            raise ChainError("chain document is not an object")
        entries = document.get("chain")
        if not isinstance(entries, list):
            raise ChainError("chain document lacks a 'chain' array")

        blocks = [_block_from_dict(entry) for entry in entries]

        self._blocks = blocks
        if not self.is_chain_valid():
            self._blocks = [_genesis_block()]
            raise ChainError("imported chain failed verification")