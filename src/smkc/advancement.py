"""
Advancement through the finals bracket.

Given the topology and a completed match, work out which downstream slots the
winner and loser move into. Pure: nothing here reads or writes storage, the
caller applies the returned operations.
"""
from typing import List, Optional

from .bracket import GRAND_FINAL_SEQ, RESET_SEQ, index_by_seq, is_bye_slot
from .errors import NotFound
from .models import SlotTarget, TopologyEntry


class SlotFill:
    """Put ``competitor_id`` into slot ``position`` of match ``target_seq``."""

    def __init__(self, target_seq, position, competitor_id):
        self.target_seq = target_seq
        self.position = position
        self.competitor_id = competitor_id

    def __eq__(self, other):
        return isinstance(other, SlotFill) and self.to_dict() == other.to_dict()

    def to_dict(self):
        return {'target_seq': self.target_seq, 'position': self.position, 'competitor_id': self.competitor_id}

    def __repr__(self):
        return f"SlotFill(seq={self.target_seq}, position={self.position}, competitor={self.competitor_id})"


class Walkover:
    """Match ``seq`` has a bye: ``competitor_id`` wins it without playing."""

    def __init__(self, seq, competitor_id):
        self.seq = seq
        self.competitor_id = competitor_id

    def __eq__(self, other):
        return isinstance(other, Walkover) and (self.seq, self.competitor_id) == (other.seq, other.competitor_id)

    def to_dict(self):
        return {'seq': self.seq, 'competitor_id': self.competitor_id}

    def __repr__(self):
        return f"Walkover(seq={self.seq}, competitor={self.competitor_id})"


class Advancement:
    def __init__(self):
        self.fills: List[SlotFill] = []
        self.walkovers: List[Walkover] = []
        self.reset_required = False
        self.champion_id = None

    @property
    def tournament_complete(self) -> bool:
        return self.champion_id is not None

    def to_dict(self):
        return {
            'fills': [f.to_dict() for f in self.fills],
            'walkovers': [w.to_dict() for w in self.walkovers],
            'reset_required': self.reset_required,
            'tournament_complete': self.tournament_complete,
            'champion_id': self.champion_id,
        }

    def __repr__(self):
        return (f"Advancement(fills={self.fills}, walkovers={self.walkovers}, "
                f"reset={self.reset_required}, champion={self.champion_id})")


def resolve(topology: List[TopologyEntry], completed_seq: int, winner_id, loser_id,
            winner_position: Optional[int] = None) -> Advancement:
    """Slot fills, walkovers and the champion signal for a completed finals match.

    ``winner_position`` is the slot (1 or 2) the winner played from. It only
    matters for the Grand Final: a win from slot 2 (the losers bracket side)
    forces the reset match instead of ending the tournament.
    """
    entries = index_by_seq(topology)
    entry = entries.get(completed_seq)
    if entry is None:
        raise NotFound(f'No bracket match with seq {completed_seq}')

    advancement = Advancement()

    if entry.winner_to:
        _fill(topology, entries, advancement, entry.winner_to, winner_id)
    if entry.loser_to and loser_id is not None:
        _fill(topology, entries, advancement, entry.loser_to, loser_id)

    if completed_seq == GRAND_FINAL_SEQ:
        if winner_position == 2:
            # Both finalists now have one loss: replay with the same sides.
            advancement.reset_required = True
            advancement.fills.append(SlotFill(RESET_SEQ, 1, loser_id))
            advancement.fills.append(SlotFill(RESET_SEQ, 2, winner_id))
        else:
            advancement.champion_id = winner_id
    elif completed_seq == RESET_SEQ:
        advancement.champion_id = winner_id

    return advancement


def _fill(topology, entries, advancement: Advancement, target: SlotTarget, competitor_id):
    advancement.fills.append(SlotFill(target.seq, target.position, competitor_id))
    other = 2 if target.position == 1 else 1
    if not is_bye_slot(topology, target.seq, other):
        return
    advancement.walkovers.append(Walkover(target.seq, competitor_id))
    next_target = entries[target.seq].winner_to
    if next_target:
        _fill(topology, entries, advancement, next_target, competitor_id)
