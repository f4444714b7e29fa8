import json
from datetime import datetime

import pytest

from perfmesh.blockchain import GENESIS_DATA, Block, Blockchain, ChainError


def test_new_chain_has_genesis_block():
    chain = Blockchain()
    assert len(chain) == 1
    genesis = chain.latest_block
    assert genesis.index == 0
    assert genesis.previous_hash == "0"
    assert genesis.data == GENESIS_DATA
    assert chain.is_chain_valid()


def test_block_hash_is_sha256_hex_and_stable():
    block = Block(3, datetime(2024, 1, 1, 12, 0, 0), "payload", "abc")
    assert len(block.hash) == 64
    assert all(c in "0123456789abcdef" for c in block.hash)
    assert block.hash == block.calculate_hash()
    twin = Block(3, datetime(2024, 1, 1, 12, 0, 0), "payload", "abc")
    assert twin.hash == block.hash


def test_hash_depends_on_every_field():
    ts = datetime(2024, 1, 1, 12, 0, 0)
    base = Block(1, ts, "x", "p").hash
    assert Block(2, ts, "x", "p").hash != base
    assert Block(1, datetime(2024, 1, 1, 12, 0, 1), "x", "p").hash != base
    assert Block(1, ts, "y", "p").hash != base
    assert Block(1, ts, "x", "q").hash != base


def test_add_block_links_to_previous():
    chain = Blockchain()
    genesis = chain.latest_block
    first = chain.add_block("cpu=10")
    second = chain.add_block("cpu=20")
    assert first.index == 1 and second.index == 2
    assert first.previous_hash == genesis.hash
    assert second.previous_hash == first.hash
    assert chain.latest_block is second
    assert chain.is_chain_valid()


def test_tampering_breaks_validity():
    chain = Blockchain()
    chain.add_block("a")
    chain.add_block("b")
    chain.chain[1].data = "changed"
    assert chain.is_chain_valid() is False


def test_json_round_trip():
    chain = Blockchain()
    chain.add_block("one")
    chain.add_block("two")
    restored = Blockchain()
    restored.from_json(chain.to_json())
    assert [b.to_dict() for b in restored] == [b.to_dict() for b in chain]
    assert restored.is_chain_valid()


def test_json_document_layout():
    chain = Blockchain()
    chain.add_block("one")
    doc = json.loads(chain.to_json())
    assert set(doc) == {"chain"}
    assert [entry["index"] for entry in doc["chain"]] == [0, 1]
    assert set(doc["chain"][1]) == {"index", "timestamp", "data", "hash", "previousHash"}
    assert doc["chain"][1]["previousHash"] == doc["chain"][0]["hash"]


def test_from_json_rejects_hash_mismatch_and_keeps_chain():
    chain = Blockchain()
    chain.add_block("kept")
    before = [b.to_dict() for b in chain]
    doc = json.loads(chain.to_json())
    doc["chain"][1]["data"] = "forged"
    with pytest.raises(ChainError):
        chain.from_json(doc)
    assert [b.to_dict() for b in chain] == before


def test_from_json_broken_link_resets_to_genesis():
    ts = datetime(2024, 5, 1, 8, 30, 0)
    genesis = Block(0, ts, GENESIS_DATA, "0")
    orphan = Block(1, ts, "data", "not-the-genesis-hash")
    doc = {"chain": [genesis.to_dict(), orphan.to_dict()]}
    chain = Blockchain()
    chain.add_block("x")
    with pytest.raises(ChainError):
        chain.from_json(doc)
    assert len(chain) == 1
    assert chain.latest_block.data == GENESIS_DATA


def test_from_json_empty_chain_fails_and_resets():
    chain = Blockchain()
    chain.add_block("x")
    with pytest.raises(ChainError):
        chain.from_json({"chain": []})
    assert len(chain) == 1
    assert chain.latest_block.index == 0


@pytest.mark.parametrize(
    "document",
    [
        "[1, 2, 3]",
        "not json",
        {"blocks": []},
        {"chain": {}},
        {"chain": [42]},
        {"chain": [{"index": 0, "timestamp": "2024-01-01T00:00:00", "data": "d"}]},
    ],
)
def test_from_json_rejects_malformed(document):
    chain = Blockchain()
    with pytest.raises(ChainError):
        chain.from_json(document)
    assert len(chain) == 1