"""
Records persisted by the tournament store.

Every record round-trips through plain dicts (``to_dict``/``from_dict``) so it
can be written with ``yaml.dump`` and read back with ``yaml.safe_load``.
"""
import copy


class Tournament:
    def __init__(self, id, name, format, status='qualification', champion_id=None, created=None):
        self.id = id
        self.name = name
        self.format = format
        self.status = status
        self.champion_id = champion_id
        self.created = created

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'format': self.format,
            'status': self.status,
            'champion_id': self.champion_id,
            'created': self.created,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            format=data.get('format', 'bm'),
            status=data.get('status', 'qualification'),
            champion_id=data.get('champion_id'),
            created=data.get('created'),
        )

    def __repr__(self):
        return f"Tournament(id={self.id}, format={self.format}, status={self.status})"


class Competitor:
    def __init__(self, id, name, handle, password_hash=None, deleted=False):
        self.id = id
        self.name = name
        self.handle = handle
        self.password_hash = password_hash
        self.deleted = deleted

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'handle': self.handle,
            'password_hash': self.password_hash,
            'deleted': self.deleted,
        }

    def public_dict(self):
        """Competitor as exposed over the API (no password hash)."""
        return {'id': self.id, 'name': self.name, 'handle': self.handle, 'deleted': self.deleted}

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            handle=data.get('handle', ''),
            password_hash=data.get('password_hash'),
            deleted=bool(data.get('deleted', False)),
        )

    def __repr__(self):
        return f"Competitor(id={self.id}, handle={self.handle})"


class ReportedScore:
    """One competitor's claim about the result of a match."""

    def __init__(self, score1, score2, detail=None, reported_by=None, reported_at=None):
        self.score1 = score1
        self.score2 = score2
        self.detail = detail
        self.reported_by = reported_by
        self.reported_at = reported_at

    def same_scores(self, other):
        return self.score1 == other.score1 and self.score2 == other.score2

    def to_dict(self):
        return {
            'score1': self.score1,
            'score2': self.score2,
            'detail': self.detail,
            'reported_by': self.reported_by,
            'reported_at': self.reported_at,
        }

    @classmethod
    def from_dict(cls, data):
        if not data:
            return None
        return cls(
            score1=data.get('score1'),
            score2=data.get('score2'),
            detail=data.get('detail'),
            reported_by=data.get('reported_by'),
            reported_at=data.get('reported_at'),
        )

    def __repr__(self):
        return f"ReportedScore({self.score1}-{self.score2}, by={self.reported_by})"


class Match:
    def __init__(self, id, tournament_id, seq, stage, competitor1_id=None, competitor2_id=None,
                 score1=0, score2=0, completed=False, detail=None, version=1,
                 round=None, bracket=None, report1=None, report2=None, walkover=False):
        self.id = id
        self.tournament_id = tournament_id
        self.seq = seq
        self.stage = stage
        self.round = round
        self.bracket = bracket
        self.competitor1_id = competitor1_id
        self.competitor2_id = competitor2_id
        self.score1 = score1
        self.score2 = score2
        self.completed = completed
        self.detail = detail
        self.version = version
        self.report1 = report1
        self.report2 = report2
        self.walkover = walkover

    def competitor(self, slot):
        return self.competitor1_id if slot == 1 else self.competitor2_id

    def set_competitor(self, slot, competitor_id):
        if slot == 1:
            self.competitor1_id = competitor_id
        else:
            self.competitor2_id = competitor_id

    def report(self, slot):
        return self.report1 if slot == 1 else self.report2

    def set_report(self, slot, report):
        if slot == 1:
            self.report1 = report
        else:
            self.report2 = report

    def involves(self, competitor_id):
        return competitor_id is not None and competitor_id in (self.competitor1_id, self.competitor2_id)

    def copy(self):
        return copy.deepcopy(self)

    def to_dict(self):
        return {
            'id': self.id,
            'tournament_id': self.tournament_id,
            'seq': self.seq,
            'stage': self.stage,
            'round': self.round,
            'bracket': self.bracket,
            'competitor1_id': self.competitor1_id,
            'competitor2_id': self.competitor2_id,
            'score1': self.score1,
            'score2': self.score2,
            'completed': self.completed,
            'detail': self.detail,
            'version': self.version,
            'report1': self.report1.to_dict() if self.report1 else None,
            'report2': self.report2.to_dict() if self.report2 else None,
            'walkover': self.walkover,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data['id'],
            tournament_id=data['tournament_id'],
            seq=data['seq'],
            stage=data['stage'],
            round=data.get('round'),
            bracket=data.get('bracket'),
            competitor1_id=data.get('competitor1_id'),
            competitor2_id=data.get('competitor2_id'),
            score1=data.get('score1', 0),
            score2=data.get('score2', 0),
            completed=bool(data.get('completed', False)),
            detail=data.get('detail'),
            version=data.get('version', 1),
            report1=ReportedScore.from_dict(data.get('report1')),
            report2=ReportedScore.from_dict(data.get('report2')),
            walkover=bool(data.get('walkover', False)),
        )

    def __repr__(self):
        return (f"Match(seq={self.seq}, stage={self.stage}, round={self.round}, "
                f"{self.competitor1_id} vs {self.competitor2_id}, v{self.version})")


class QualificationRecord:
    def __init__(self, tournament_id, competitor_id, group='A', seeding=None,
                 mp=0, wins=0, ties=0, losses=0, points=0):
        self.tournament_id = tournament_id
        self.competitor_id = competitor_id
        self.group = group
        self.seeding = seeding
        self.mp = mp
        self.wins = wins
        self.ties = ties
        self.losses = losses
        self.points = points

    @property
    def score(self):
        return self.wins * 2 + self.ties

    def to_dict(self):
        return {
            'tournament_id': self.tournament_id,
            'competitor_id': self.competitor_id,
            'group': self.group,
            'seeding': self.seeding,
            'mp': self.mp,
            'wins': self.wins,
            'ties': self.ties,
            'losses': self.losses,
            'points': self.points,
            'score': self.score,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            tournament_id=data['tournament_id'],
            competitor_id=data['competitor_id'],
            group=data.get('group', 'A'),
            seeding=data.get('seeding'),
            mp=data.get('mp', 0),
            wins=data.get('wins', 0),
            ties=data.get('ties', 0),
            losses=data.get('losses', 0),
            points=data.get('points', 0),
        )

    def __repr__(self):
        return (f"QualificationRecord(competitor={self.competitor_id}, group={self.group}, "
                f"W{self.wins}/T{self.ties}/L{self.losses}, score={self.score})")


class SlotTarget:
    """Where a competitor goes next: match ``seq`` at slot ``position`` (1 or 2)."""

    def __init__(self, seq, position):
        self.seq = seq
        self.position = position

    def __eq__(self, other):
        return isinstance(other, SlotTarget) and (self.seq, self.position) == (other.seq, other.position)

    def __hash__(self):
        return hash((self.seq, self.position))

    def __repr__(self):
        return f"SlotTarget(seq={self.seq}, position={self.position})"


class TopologyEntry:
    def __init__(self, seq, round, bracket, winner_to=None, loser_to=None, seeds=None):
        self.seq = seq
        self.round = round
        self.bracket = bracket
        self.winner_to = winner_to
        self.loser_to = loser_to
        self.seeds = seeds

    def to_dict(self):
        def target(t):
            return {'seq': t.seq, 'position': t.position} if t else None
        return {
            'seq': self.seq,
            'round': self.round,
            'bracket': self.bracket,
            'seeds': list(self.seeds) if self.seeds else None,
            'winner_to': target(self.winner_to),
            'loser_to': target(self.loser_to),
        }

    def __repr__(self):
        return f"TopologyEntry(seq={self.seq}, round={self.round}, winner_to={self.winner_to}, loser_to={self.loser_to})"
