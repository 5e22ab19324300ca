"""Qualification setup: group entries and round-robin match generation."""
from itertools import combinations
from typing import List

from .errors import ValidationError
from .formats import QUALIFICATION
from .models import Match, QualificationRecord


def build_records(tournament_id: str, entries: list, competitors: dict) -> List[QualificationRecord]:
    """Turn ``[{competitor_id, group, seeding?}]`` into fresh qualification records.

    ``competitors`` maps id to Competitor for everyone who may enter.
    """
    if not isinstance(entries, list) or not entries:
        raise ValidationError('entries must be a non-empty list', field='entries')

    records = []
    seen = set()
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get('competitor_id'):
            raise ValidationError('Each entry needs a competitor_id', field='entries')
        competitor_id = entry['competitor_id']
        competitor = competitors.get(competitor_id)
        if competitor is None or competitor.deleted:
            raise ValidationError(f'Unknown competitor: {competitor_id}', field='entries')
        if competitor_id in seen:
            raise ValidationError(f'Competitor entered twice: {competitor_id}', field='entries')
        seen.add(competitor_id)

        group = str(entry.get('group') or 'A').strip().upper()
        seeding = entry.get('seeding')
        if seeding is not None and (isinstance(seeding, bool) or not isinstance(seeding, int)):
            raise ValidationError('seeding must be an integer', field='entries')
        records.append(QualificationRecord(tournament_id, competitor_id, group=group, seeding=seeding))
    return records


def generate_round_robin(tournament_id: str, records: List[QualificationRecord], new_id) -> List[Match]:
    """Every pair inside each group plays once. ``seq`` runs from 1 across the whole stage."""
    groups = {}
    for record in records:
        groups.setdefault(record.group, []).append(record)

    matches = []
    seq = 1
    for group in sorted(groups):
        # Seeded entries first, then entry order
        ordered = sorted(groups[group], key=lambda r: r.seeding if r.seeding is not None else float('inf'))
        for first, second in combinations(ordered, 2):
            matches.append(Match(
                id=new_id(),
                tournament_id=tournament_id,
                seq=seq,
                stage=QUALIFICATION,
                round=group,
                competitor1_id=first.competitor_id,
                competitor2_id=second.competitor_id,
            ))
            seq += 1
    return matches
