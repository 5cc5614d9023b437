"""FX sample history, window seeds, and trigger times for the condition checker.

``RedisFxState`` shares this state between the runner, which refreshes rates,
and the forked RQ work-horses that evaluate conditions. ``MemoryFxState`` keeps
it in the current process when no broker is reachable.

Redis layout:
- ``fx:history:{pair}`` is a sorted set of JSON samples scored by epoch seconds.
- ``fx:seeds:{pair}`` is a hash of window name to the JSON seed sample.
- ``conditions:last-triggered`` is a hash of rule id to ISO trigger time.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from redis import Redis

from stablepay.utils.datetime import as_utc

LAST_TRIGGERED_KEY = "conditions:last-triggered"


@dataclass
class FxSample:
    pair: str
    rate: float
    timestamp: datetime
    source: str

    def to_json(self) -> str:
        return json.dumps(
            {"pair": self.pair, "rate": self.rate, "timestamp": as_utc(self.timestamp).isoformat(), "source": self.source}
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "FxSample":
        data = json.loads(raw)
        return cls(data["pair"], float(data["rate"]), datetime.fromisoformat(data["timestamp"]), data["source"])


class FxState(Protocol):
    def append(self, sample: FxSample, *, keep_after: datetime) -> None: ...

    def latest(self, pair: str) -> FxSample | None: ...

    def sample_at_or_before(self, pair: str, cutoff: datetime) -> FxSample | None: ...

    def seed(self, pair: str, window: str) -> FxSample | None: ...

    def set_seed_if_missing(self, window: str, sample: FxSample) -> bool: ...

    def seeds(self) -> dict[tuple[str, str], FxSample]: ...

    def pairs(self) -> list[str]: ...

    def last_triggered(self, rule_id: str) -> datetime | None: ...

    def mark_triggered(self, rule_id: str, at: datetime) -> None: ...


class MemoryFxState:
    """Process-local state; lost on restart."""

    def __init__(self) -> None:
        self._history: dict[str, deque[FxSample]] = {}
        self._seeds: dict[tuple[str, str], FxSample] = {}
        self._triggered: dict[str, datetime] = {}

    def append(self, sample: FxSample, *, keep_after: datetime) -> None:
        history = self._history.setdefault(sample.pair, deque())
        history.append(sample)
        while history and history[0].timestamp < keep_after:
            history.popleft()

    def latest(self, pair: str) -> FxSample | None:
        history = self._history.get(pair)
        return history[-1] if history else None

    def sample_at_or_before(self, pair: str, cutoff: datetime) -> FxSample | None:
        for sample in reversed(self._history.get(pair, ())):
            if sample.timestamp <= cutoff:
                return sample
        return None

    def seed(self, pair: str, window: str) -> FxSample | None:
        return self._seeds.get((pair, window))

    def set_seed_if_missing(self, window: str, sample: FxSample) -> bool:
        if (sample.pair, window) in self._seeds:
            return False
        self._seeds[(sample.pair, window)] = sample
        return True

    def seeds(self) -> dict[tuple[str, str], FxSample]:
        return dict(self._seeds)

    def pairs(self) -> list[str]:
        return [pair for pair, history in self._history.items() if history]

    def last_triggered(self, rule_id: str) -> datetime | None:
        return self._triggered.get(rule_id)

    def mark_triggered(self, rule_id: str, at: datetime) -> None:
        self._triggered[rule_id] = at


class RedisFxState:
    """State shared by every process connected to the same Redis."""

    def __init__(self, connection: Redis, *, prefix: str = "stablepay") -> None:
        self.connection = connection
        self._prefix = prefix

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    @staticmethod
    def _score(moment: datetime) -> float:
        return as_utc(moment).timestamp()

    def append(self, sample: FxSample, *, keep_after: datetime) -> None:
        key = self._key("fx", "history", sample.pair)
        pipe = self.connection.pipeline()
        pipe.zadd(key, {sample.to_json(): self._score(sample.timestamp)})
        pipe.zremrangebyscore(key, "-inf", f"({self._score(keep_after)}")
        pipe.execute()

    def latest(self, pair: str) -> FxSample | None:
        members = self.connection.zrange(self._key("fx", "history", pair), -1, -1)
        return FxSample.from_json(members[0]) if members else None

    def sample_at_or_before(self, pair: str, cutoff: datetime) -> FxSample | None:
        members = self.connection.zrevrangebyscore(
            self._key("fx", "history", pair), self._score(cutoff), "-inf", start=0, num=1
        )
        return FxSample.from_json(members[0]) if members else None

    def seed(self, pair: str, window: str) -> FxSample | None:
        raw = self.connection.hget(self._key("fx", "seeds", pair), window)
        return FxSample.from_json(raw) if raw else None

    def set_seed_if_missing(self, window: str, sample: FxSample) -> bool:
        return bool(self.connection.hsetnx(self._key("fx", "seeds", sample.pair), window, sample.to_json()))

    def seeds(self) -> dict[tuple[str, str], FxSample]:
        found: dict[tuple[str, str], FxSample] = {}
        for key in self.connection.scan_iter(match=self._key("fx", "seeds", "*")):
            pair = (key.decode() if isinstance(key, bytes) else key).rsplit(":", 1)[-1]
            for window, raw in self.connection.hgetall(key).items():
                name = window.decode() if isinstance(window, bytes) else window
                found[(pair, name)] = FxSample.from_json(raw)
        return found

    def pairs(self) -> list[str]:
        keys = self.connection.scan_iter(match=self._key("fx", "history", "*"))
        return sorted((key.decode() if isinstance(key, bytes) else key).rsplit(":", 1)[-1] for key in keys)

    def last_triggered(self, rule_id: str) -> datetime | None:
        raw = self.connection.hget(self._key(LAST_TRIGGERED_KEY), rule_id)
        if not raw:
            return None
        return datetime.fromisoformat(raw.decode() if isinstance(raw, bytes) else raw)

    def mark_triggered(self, rule_id: str, at: datetime) -> None:
        self.connection.hset(self._key(LAST_TRIGGERED_KEY), rule_id, as_utc(at).isoformat())
