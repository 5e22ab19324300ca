"""
Scoring formats.

A tournament runs one format. The format decides what a valid score looks
like, who won, and what goes into the secondary standings metric:

- ``bm`` Battle Mode: rounds won. Qualification plays 4 rounds (2-2 is a tie).
- ``mr`` Match Race: races won. Qualification is best of 5, unfinished sets tie.
- ``gp`` Grand Prix: driver points over a 4-race cup (1st = 9, 2nd = 6).

Finals matches of every format must produce a winner; rounds formats play
best of 5 (first to 3).
"""
from typing import Dict, Optional

from .errors import ValidationError

QUALIFICATION = 'qualification'
FINALS = 'finals'

FINALS_TARGET_WINS = 3
GP_RACES_PER_CUP = 4
GP_POSITION_POINTS = {1: 9, 2: 6}


def _check_score(value, field: str, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f'{field} must be an integer', field=field)
    if value < 0 or value > maximum:
        raise ValidationError(f'{field} must be between 0 and {maximum}', field=field)
    return value


class ScoringFormat:
    key = None
    name = None
    max_score = 0

    def validate(self, score1, score2, detail=None, stage=QUALIFICATION) -> Optional[Dict]:
        """Validate a submitted result and return the detail payload to store."""
        _check_score(score1, 'score1', self.max_score)
        _check_score(score2, 'score2', self.max_score)
        if stage == FINALS:
            self._validate_finals(score1, score2)
        else:
            self._validate_qualification(score1, score2)
        return self._validate_detail(score1, score2, detail)

    def _validate_qualification(self, score1, score2):
        pass

    def _validate_finals(self, score1, score2):
        if score1 == score2:
            raise ValidationError('Finals matches must have a winner', field='score1')

    def _validate_detail(self, score1, score2, detail):
        if detail is not None and not isinstance(detail, dict):
            raise ValidationError('detail must be an object', field='detail')
        return detail

    def classify(self, mine, theirs) -> str:
        if mine > theirs:
            return 'win'
        if theirs > mine:
            return 'loss'
        return 'tie'

    def secondary(self, mine, theirs) -> int:
        return mine - theirs

    def finals_winner(self, score1, score2) -> int:
        """Slot (1 or 2) that won a finals match."""
        if score1 == score2:
            raise ValidationError('Finals matches must have a winner', field='score1')
        return 1 if score1 > score2 else 2

    def __repr__(self):
        return f"{self.__class__.__name__}(key={self.key})"


class RoundsFormat(ScoringFormat):
    """Formats scored by rounds or races won."""
    max_score = 5

    def _validate_finals(self, score1, score2):
        if max(score1, score2) != FINALS_TARGET_WINS or min(score1, score2) >= FINALS_TARGET_WINS:
            raise ValidationError(
                f'Finals are best of 5: one side needs exactly {FINALS_TARGET_WINS} wins',
                field='score1')

    def _validate_detail(self, score1, score2, detail):
        detail = super()._validate_detail(score1, score2, detail)
        if not detail or not detail.get('rounds'):
            return detail
        rounds = detail['rounds']
        if not isinstance(rounds, list):
            raise ValidationError('detail.rounds must be a list', field='detail')
        won = [0, 0]
        for r in rounds:
            if not isinstance(r, dict) or r.get('winner') not in (1, 2):
                raise ValidationError('Each round needs a winner of 1 or 2', field='detail')
            won[r['winner'] - 1] += 1
        if won != [score1, score2]:
            raise ValidationError('Round winners do not add up to the scores', field='detail')
        return detail

    def classify(self, mine, theirs) -> str:
        if mine >= FINALS_TARGET_WINS:
            return 'win'
        if theirs >= FINALS_TARGET_WINS:
            return 'loss'
        return 'tie'


class BattleMode(RoundsFormat):
    key = 'bm'
    name = 'Battle Mode'
    qualification_rounds = 4

    def _validate_qualification(self, score1, score2):
        if score1 + score2 != self.qualification_rounds:
            raise ValidationError(
                f'Qualification battles are {self.qualification_rounds} rounds: scores must add up to 4',
                field='score1')


class MatchRace(RoundsFormat):
    key = 'mr'
    name = 'Match Race'

    def _validate_qualification(self, score1, score2):
        if score1 + score2 > self.max_score:
            raise ValidationError('Match race is best of 5: at most 5 races', field='score1')
        if score1 > FINALS_TARGET_WINS or score2 > FINALS_TARGET_WINS:
            raise ValidationError('Match race ends at 3 wins', field='score1')


class GrandPrix(ScoringFormat):
    key = 'gp'
    name = 'Grand Prix'
    max_score = GP_RACES_PER_CUP * GP_POSITION_POINTS[1]

    def _validate_detail(self, score1, score2, detail):
        detail = super()._validate_detail(score1, score2, detail)
        if not detail or not detail.get('races'):
            return detail
        races = detail['races']
        if not isinstance(races, list) or len(races) != GP_RACES_PER_CUP:
            raise ValidationError(f'A cup has exactly {GP_RACES_PER_CUP} races', field='detail')
        scored = []
        total1 = total2 = 0
        for race in races:
            if not isinstance(race, dict):
                raise ValidationError('Each race must be an object', field='detail')
            position1 = race.get('position1')
            position2 = race.get('position2')
            for position in (position1, position2):
                if isinstance(position, bool) or not isinstance(position, int) or not 1 <= position <= 8:
                    raise ValidationError('Race positions must be between 1 and 8', field='detail')
            if position1 == position2:
                raise ValidationError('Two drivers cannot share a finishing position', field='detail')
            points1 = driver_points(position1)
            points2 = driver_points(position2)
            total1 += points1
            total2 += points2
            scored.append(dict(race, points1=points1, points2=points2))
        if (total1, total2) != (score1, score2):
            raise ValidationError(
                f'Race positions give {total1}-{total2}, not {score1}-{score2}', field='detail')
        return dict(detail, races=scored)

    def secondary(self, mine, theirs) -> int:
        return mine


def driver_points(position: int) -> int:
    """Driver points for a finishing position."""
    return GP_POSITION_POINTS.get(position, 0)


FORMATS = {f.key: f for f in (BattleMode(), MatchRace(), GrandPrix())}


def get_format(key: str) -> ScoringFormat:
    try:
        return FORMATS[key]
    except KeyError:
        raise ValidationError(f'Unknown format: {key}', field='format') from None
