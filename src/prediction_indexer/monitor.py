"""Advisory wallet heuristics and the listener's bet dedup cache."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Hashable

from prediction_indexer.models import SuspicionCheck

log = logging.getLogger("idx.monitor")


class SuspiciousWalletMonitor:
    """Flags wallets placing more than ``max_bets`` bets inside a trailing window.

    Counts live in memory only and never block a bet.
    """

    def __init__(self, window_sec: float = 60.0, max_bets: int = 10, clock: Callable[[], float] = time.monotonic):
        self.window_sec = window_sec
        self.max_bets = max_bets
        self._clock = clock
        self.bet_counts: dict[str, int] = {}
        self._recent: dict[str, deque[float]] = {}

    def check(self, wallet: str) -> SuspicionCheck:
        now = self._clock()
        wallet = wallet.lower()
        self.bet_counts[wallet] = self.bet_counts.get(wallet, 0) + 1

        recent = self._recent.setdefault(wallet, deque())
        while recent and now - recent[0] >= self.window_sec:
            recent.popleft()
        recent.append(now)

        flags: list[str] = []
        if len(recent) > self.max_bets:
            flags.append(f"High frequency betting: {len(recent)} bets in the last minute.")
        return SuspicionCheck(is_suspicious=bool(flags), flags=tuple(flags))


class ProcessedBetCache:
    """Insertion-timestamped keys; ``sweep`` drops entries older than the TTL."""

    def __init__(self, ttl_sec: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._seen: dict[Hashable, float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._seen

    def add_if_absent(self, key: Hashable) -> bool:
        """True if the key was new and is now recorded."""
        if key in self._seen:
            return False
        self._seen[key] = self._clock()
        return True

    def sweep(self) -> int:
        cutoff = self._clock() - self.ttl_sec
        expired = [k for k, ts in self._seen.items() if ts < cutoff]
        for key in expired:
            del self._seen[key]
        if expired:
            log.debug("CACHE_SWEEP │ dropped %d of %d", len(expired), len(expired) + len(self._seen))
        return len(expired)
