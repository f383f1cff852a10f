from __future__ import annotations

import json

from alertgov.audit.store import JSONLAuditStore


def test_append_chains_hashes(tmp_path, clock):
    store = JSONLAuditStore(tmp_path / "audit" / "log.jsonl", clock=clock)
    first = store.append("alice", "weights.override", {"w1": 0.4})
    second = store.append("bob", "state.reset", {})
    assert "_prev" not in first.diff
    assert second.diff["_prev"] == first.hash
    assert store.verify_chain() == {"ok": True, "entries": 2, "last_hash": second.hash}
    assert [e["action"] for e in store.tail(10)] == ["weights.override", "state.reset"]


def test_chain_continues_across_instances(tmp_path, clock):
    path = tmp_path / "log.jsonl"
    first = JSONLAuditStore(path, clock=clock).append("alice", "a", {})
    second = JSONLAuditStore(path, clock=clock).append("alice", "b", {})
    assert second.diff["_prev"] == first.hash


def test_tampering_is_detected(tmp_path, clock):
    path = tmp_path / "log.jsonl"
    store = JSONLAuditStore(path, clock=clock)
    store.append("alice", "a", {"x": 1})
    store.append("alice", "b", {"x": 2})
    lines = path.read_text(encoding="utf-8").splitlines()
    entry = json.loads(lines[0])
    entry["diff"]["x"] = 99
    lines[0] = json.dumps(entry)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    result = store.verify_chain()
    assert result["ok"] is False
    assert result["failure_index"] == 0
    assert result["reason"] == "hash_mismatch"
