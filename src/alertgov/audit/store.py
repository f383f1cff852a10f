from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional


@dataclass
class AuditEntry:
    ts: str
    actor: str
    action: str
    diff: Dict[str, Any]
    hash: str


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JSONLAuditStore:
    """Append-only operator audit trail on disk.

    Each entry is one JSON line with a SHA256 over {ts, actor, action, diff};
    ``diff._prev`` carries the previous entry's hash, forming a chain.
    """

    def __init__(self, path: Path, clock: Callable[[], datetime] = _utcnow) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch()
        self.clock = clock
        self._lock = threading.Lock()
        self._last_hash: Optional[str] = self._read_last_hash()

    @staticmethod
    def _compute_hash(payload: Dict[str, Any]) -> str:
        blob = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return hashlib.sha256(blob).hexdigest()

    def _read_last_hash(self) -> Optional[str]:
        last = ""
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    last = line
        if not last:
            return None
        try:
            return json.loads(last).get("hash")
        except json.JSONDecodeError:
            return None

    def append(self, actor: str, action: str, diff: Dict[str, Any]) -> AuditEntry:
        with self._lock:
            body = dict(diff)
            if self._last_hash and "_prev" not in body:
                body["_prev"] = self._last_hash
            base = {"ts": self.clock().isoformat(), "actor": actor, "action": action, "diff": body}
            entry = AuditEntry(hash=self._compute_hash(base), **base)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(entry), ensure_ascii=False, default=str) + "\n")
            self._last_hash = entry.hash
            return entry

    def _entries(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return out

    def tail(self, limit: int = 100) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        with self._lock:
            return self._entries()[-limit:]

    def verify_chain(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Recompute each hash and check every ``_prev`` link."""
        with self._lock:
            entries = self._entries()
        if limit is not None and limit > 0:
            entries = entries[-limit:]
        prev_hash: Optional[str] = None
        for idx, e in enumerate(entries):
            base = {k: e[k] for k in ("ts", "actor", "action", "diff") if k in e}
            if self._compute_hash(base) != e.get("hash"):
                return {"ok": False, "entries": idx + 1, "failure_index": idx, "reason": "hash_mismatch"}
            d = e.get("diff", {})
            link = d.get("_prev") if isinstance(d, dict) else None
            if prev_hash and link != prev_hash:
                return {"ok": False, "entries": idx + 1, "failure_index": idx, "reason": "prev_link_mismatch"}
            prev_hash = e.get("hash")
        return {"ok": True, "entries": len(entries), "last_hash": prev_hash}
