"""
Qualification standings.

A competitor's record is always rebuilt from every completed qualification
match they played, never patched incrementally, so a corrected result simply
replays into the right totals.

Ranking: score (2 per win, 1 per tie) -> secondary points -> competitor id.
"""
import hashlib
import json
import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

from .formats import QUALIFICATION, ScoringFormat
from .models import QualificationRecord

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 300


def recompute(store, tournament_id: str, competitor_id: str, fmt: ScoringFormat,
              cache: 'StandingsCache' = None) -> QualificationRecord:
    """Rebuild one competitor's qualification record from their completed matches."""

    def replay(record, matches):
        record.mp = record.wins = record.ties = record.losses = record.points = 0
        for match in matches:
            if match.competitor1_id == competitor_id:
                mine, theirs = match.score1, match.score2
            else:
                mine, theirs = match.score2, match.score1

            record.mp += 1
            result = fmt.classify(mine, theirs)
            if result == 'win':
                record.wins += 1
            elif result == 'loss':
                record.losses += 1
            else:
                record.ties += 1
            record.points += fmt.secondary(mine, theirs)
        return record

    record = store.rebuild_qualification(tournament_id, competitor_id, replay)
    if cache is not None:
        cache.invalidate(tournament_id)
    logger.debug(f'Recomputed {competitor_id} in {tournament_id}: {record}')
    return record


def _order_key(record: QualificationRecord):
    return (-record.score, -record.points, record.competitor_id)


def rank(records: List[QualificationRecord]) -> List[dict]:
    """Standings rows grouped by group, each with its rank inside the group."""
    rows = []
    by_group: Dict[str, List[QualificationRecord]] = {}
    for record in records:
        by_group.setdefault(record.group, []).append(record)

    for group in sorted(by_group):
        for position, record in enumerate(sorted(by_group[group], key=_order_key), start=1):
            row = record.to_dict()
            row['rank'] = position
            rows.append(row)
    return rows


def seed_for_finals(records: List[QualificationRecord], top_n: int = 8) -> List[str]:
    """Competitor ids of the ``top_n`` best qualifiers, best first, across all groups."""
    return [r.competitor_id for r in sorted(records, key=_order_key)[:top_n]]


class StandingsCache:
    """Ranked standings per ``(tournament_id, stage)`` with a TTL and an ETag."""

    def __init__(self, ttl: float = DEFAULT_CACHE_TTL, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, object, str]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def etag(payload) -> str:
        encoded = json.dumps(payload, sort_keys=True, default=str).encode('utf-8')
        return hashlib.sha1(encoded).hexdigest()

    def get(self, tournament_id: str, stage: str = QUALIFICATION) -> Optional[Tuple[object, str]]:
        """Return ``(payload, etag)`` or None when missing or expired."""
        key = (tournament_id, stage)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, payload, tag = entry
            if self._clock() - stored_at > self.ttl:
                del self._entries[key]
                return None
            return payload, tag

    def set(self, tournament_id: str, payload, stage: str = QUALIFICATION) -> str:
        tag = self.etag(payload)
        with self._lock:
            self._entries[(tournament_id, stage)] = (self._clock(), payload, tag)
        return tag

    def invalidate(self, tournament_id: str, stage: str = None):
        with self._lock:
            for key in list(self._entries):
                if key[0] == tournament_id and (stage is None or key[1] == stage):
                    del self._entries[key]

    def clear(self):
        with self._lock:
            self._entries.clear()
