"""
Double elimination bracket topology for the finals.

In double elimination:
- Competitors must lose twice to be eliminated
- Winners Bracket: competitors that haven't lost yet
- Losers Bracket: competitors that have lost once
- Grand Final: Winners bracket champion vs Losers bracket champion
- Grand Final Reset: if the losers bracket champion wins the Grand Final,
  one more match decides the title

Finals always take the top 8 qualifiers, so the bracket is a fixed table of
17 matches rather than something computed from the field size. Every row
says where the winner and the loser go next (match seq + slot position).
"""
from typing import Dict, List, Optional, Tuple

from .errors import UnsupportedBracketSize
from .models import SlotTarget, TopologyEntry

BRACKET_SIZE = 8
GRAND_FINAL_SEQ = 16
RESET_SEQ = 17

WINNERS = 'winners'
LOSERS = 'losers'
GRAND_FINAL = 'grand_final'

# Quarterfinal seed pairs: seeds 1 and 2 can only meet in the Winners Final.
SEED_PAIRS = [(1, 8), (4, 5), (2, 7), (3, 6)]

ROUND_NAMES = {
    'winners_qf': 'Winners Quarterfinal',
    'winners_sf': 'Winners Semifinal',
    'winners_final': 'Winners Final',
    'losers_r1': 'Losers Round 1',
    'losers_r2': 'Losers Round 2',
    'losers_r3': 'Losers Round 3',
    'losers_sf': 'Losers Semifinal',
    'losers_final': 'Losers Final',
    'grand_final': 'Grand Final',
    'grand_final_reset': 'Grand Final Reset',
}

# seq, round, bracket, winner goes to (seq, position), loser goes to (seq, position)
#
# Quarterfinal losers keep their parity ((seq - 1) % 2 + 1) in Losers Round 1.
# Losers Round 1 survivors cross over to the other Losers Round 2 match so they
# don't immediately meet the semifinal loser from their own half.
_BRACKET_8 = [
    (1, 'winners_qf', WINNERS, (5, 1), (8, 1)),
    (2, 'winners_qf', WINNERS, (5, 2), (8, 2)),
    (3, 'winners_qf', WINNERS, (6, 1), (9, 1)),
    (4, 'winners_qf', WINNERS, (6, 2), (9, 2)),
    (5, 'winners_sf', WINNERS, (7, 1), (10, 1)),
    (6, 'winners_sf', WINNERS, (7, 2), (11, 1)),
    (7, 'winners_final', WINNERS, (16, 1), (15, 2)),
    (8, 'losers_r1', LOSERS, (11, 2), None),
    (9, 'losers_r1', LOSERS, (10, 2), None),
    (10, 'losers_r2', LOSERS, (12, 1), None),
    (11, 'losers_r2', LOSERS, (13, 1), None),
    (12, 'losers_r3', LOSERS, (14, 1), None),
    (13, 'losers_r3', LOSERS, (14, 2), None),
    (14, 'losers_sf', LOSERS, (15, 1), None),
    (15, 'losers_final', LOSERS, (16, 2), None),
    (16, 'grand_final', GRAND_FINAL, None, None),
    (17, 'grand_final_reset', GRAND_FINAL, None, None),
]


def _target(pair: Optional[Tuple[int, int]]) -> Optional[SlotTarget]:
    return SlotTarget(*pair) if pair else None


def generate(size: int) -> List[TopologyEntry]:
    """Return the bracket topology for ``size`` seeded competitors, ordered by seq."""
    if size != BRACKET_SIZE:
        raise UnsupportedBracketSize(size)

    entries = []
    for seq, round_key, bracket, winner_to, loser_to in _BRACKET_8:
        seeds = SEED_PAIRS[seq - 1] if round_key == 'winners_qf' else None
        entries.append(TopologyEntry(
            seq=seq,
            round=round_key,
            bracket=bracket,
            winner_to=_target(winner_to),
            loser_to=_target(loser_to),
            seeds=seeds,
        ))
    return entries


def index_by_seq(topology: List[TopologyEntry]) -> Dict[int, TopologyEntry]:
    return {entry.seq: entry for entry in topology}


def feeders(topology: List[TopologyEntry], seq: int) -> Dict[int, List[Tuple[int, str]]]:
    """Which (source seq, 'winner' | 'loser') fill each slot of match ``seq``."""
    slots = {1: [], 2: []}
    for entry in topology:
        if entry.winner_to and entry.winner_to.seq == seq:
            slots[entry.winner_to.position].append((entry.seq, 'winner'))
        if entry.loser_to and entry.loser_to.seq == seq:
            slots[entry.loser_to.position].append((entry.seq, 'loser'))
    return slots


def is_bye_slot(topology: List[TopologyEntry], seq: int, position: int) -> bool:
    """True when nothing can ever fill this slot.

    Seeded quarterfinal slots and the reset match (filled straight from the
    Grand Final) are never byes.
    """
    entry = index_by_seq(topology).get(seq)
    if entry is None or entry.seeds or seq == RESET_SEQ:
        return False
    return not feeders(topology, seq)[position]


def bye_matches(topology: List[TopologyEntry]) -> List[int]:
    """Matches with exactly one fed slot; their lone competitor advances by walkover."""
    return [entry.seq for entry in topology
            if any(is_bye_slot(topology, entry.seq, position) for position in (1, 2))]


def get_round_name(round_key: str) -> str:
    """Get the display name for a round key."""
    return ROUND_NAMES.get(round_key, round_key)


def bracket_sections(matches: list) -> Dict[str, list]:
    """Split finals matches into winners, losers and grand final lists, each ordered by seq."""
    sections = {WINNERS: [], LOSERS: [], GRAND_FINAL: []}
    for match in sorted(matches, key=lambda m: m.seq):
        sections.setdefault(match.bracket or WINNERS, []).append(match)
    return sections
