"""
Match lifecycle orchestration.

Ties the pieces together: validate a result with the tournament's format,
write it through the optimistic concurrency controller, then either replay
qualification standings or push the winner and loser through the finals
bracket.
"""
import logging
import re
from datetime import datetime, timedelta
from typing import List, Optional

from werkzeug.security import check_password_hash, generate_password_hash

from . import reports
from .advancement import resolve
from .bracket import BRACKET_SIZE, bracket_sections, generate, get_round_name
from .errors import MatchAlreadyCompleted, NotFound, UnsupportedBracketSize, ValidationError
from .formats import FINALS, QUALIFICATION, get_format
from .locking import update_match
from .models import Competitor, Match, ReportedScore, Tournament
from .qualification import build_records, generate_round_robin
from .standings import StandingsCache, rank, recompute, seed_for_finals
from .storage import new_id, slugify

logger = logging.getLogger(__name__)

HANDLE_PATTERN = re.compile(r'^[a-z0-9_-]{2,32}$')

STATUS_QUALIFICATION = 'qualification'
STATUS_FINALS = 'finals'
STATUS_COMPLETE = 'complete'


def match_view(match: Match) -> dict:
    """Match as returned to clients: the stored row plus its report state."""
    data = match.to_dict()
    data['report_state'] = reports.report_state(match)
    data['waiting_for'] = reports.waiting_for(match)
    if match.stage == FINALS:
        data['round_name'] = get_round_name(match.round)
    return data


class MatchService:
    def __init__(self, store, audit=None, cache: StandingsCache = None, escalation_hours: float = 24):
        self.store = store
        self.audit = audit
        self.cache = cache
        self.escalation_hours = escalation_hours

    def _audit(self, tournament_id, action, actor, target=None, details=None):
        if self.audit is not None:
            self.audit.record(tournament_id, action, actor=actor, target=target, details=details)

    def _invalidate(self, tournament_id):
        if self.cache is not None:
            self.cache.invalidate(tournament_id)

    # -- tournaments ------------------------------------------------------

    def create_tournament(self, name: str, fmt: str, actor: str = None) -> Tournament:
        name = (name or '').strip()
        if not name:
            raise ValidationError('Tournament name is required', field='name')
        get_format(fmt)
        tournament = Tournament(id=slugify(name), name=name, format=fmt,
                                created=datetime.now().isoformat())
        tournament = self.store.create_tournament(tournament)
        logger.info(f'Created tournament {tournament.id} ({fmt})')
        self._audit(tournament.id, 'create_tournament', actor, tournament.id, {'format': fmt})
        return tournament

    def get_tournament(self, tournament_id: str) -> Tournament:
        return self.store.get_tournament(tournament_id)

    def list_tournaments(self) -> List[Tournament]:
        return self.store.list_tournaments()

    # -- competitors ------------------------------------------------------

    def create_competitor(self, name: str, handle: str, password: str = None,
                          actor: str = None) -> Competitor:
        name = (name or '').strip()
        handle = (handle or '').strip().lower()
        if not name:
            raise ValidationError('Competitor name is required', field='name')
        if not HANDLE_PATTERN.match(handle):
            raise ValidationError('Handle must be 2-32 characters of a-z, 0-9, _ or -', field='handle')
        if password is not None and len(password) < 4:
            raise ValidationError('Password must be at least 4 characters', field='password')

        competitor = Competitor(
            id=new_id(),
            name=name,
            handle=handle,
            password_hash=generate_password_hash(password) if password else None,
        )
        self.store.create_competitor(competitor)
        self._audit(None, 'create_competitor', actor, competitor.id, {'handle': handle})
        return competitor

    def delete_competitor(self, competitor_id: str, actor: str = None) -> Competitor:
        """Soft delete: past matches keep pointing at the competitor."""
        competitor = self.store.get_competitor(competitor_id)
        if competitor.deleted:
            raise NotFound(f'Competitor not found: {competitor_id}')
        competitor.deleted = True
        self.store.save_competitor(competitor)
        self._audit(None, 'delete_competitor', actor, competitor_id)
        return competitor

    def list_competitors(self, include_deleted: bool = False) -> List[Competitor]:
        return self.store.list_competitors(include_deleted=include_deleted)

    def authenticate_competitor(self, handle: str, password: str) -> Optional[Competitor]:
        competitor = self.store.find_competitor_by_handle(handle or '')
        if competitor is None or not competitor.password_hash:
            return None
        if not check_password_hash(competitor.password_hash, password or ''):
            return None
        return competitor

    # -- stage setup ------------------------------------------------------

    def setup_qualification(self, tournament_id: str, entries: list, actor: str = None) -> List[Match]:
        """Replace the qualification field and its round-robin matches."""
        tournament = self.store.get_tournament(tournament_id)
        if tournament.status != STATUS_QUALIFICATION:
            raise ValidationError('Qualification is closed once finals have started', field='entries')

        competitors = {c.id: c for c in self.store.list_competitors()}
        records = build_records(tournament_id, entries, competitors)
        matches = generate_round_robin(tournament_id, records, new_id)

        self.store.replace_qualifications(tournament_id, records)
        self.store.replace_stage_matches(tournament_id, QUALIFICATION, matches)
        self._invalidate(tournament_id)
        logger.info(f'Set up qualification for {tournament_id}: {len(records)} competitors, {len(matches)} matches')
        self._audit(tournament_id, 'setup_qualification', actor, tournament_id,
                    {'competitors': len(records), 'matches': len(matches)})
        return matches

    def generate_finals(self, tournament_id: str, top_n: int = BRACKET_SIZE, actor: str = None) -> dict:
        """Seed the top qualifiers into a fresh double elimination bracket."""
        tournament = self.store.get_tournament(tournament_id)
        if top_n != BRACKET_SIZE:
            raise UnsupportedBracketSize(top_n)

        records = self.store.list_qualifications(tournament_id)
        if len(records) < top_n:
            raise ValidationError(f'Need {top_n} qualified competitors, have {len(records)}', field='top_n')

        seeds = seed_for_finals(records, top_n)
        matches = []
        for entry in generate(top_n):
            competitor1_id = competitor2_id = None
            if entry.seeds:
                competitor1_id = seeds[entry.seeds[0] - 1]
                competitor2_id = seeds[entry.seeds[1] - 1]
            matches.append(Match(
                id=new_id(),
                tournament_id=tournament_id,
                seq=entry.seq,
                stage=FINALS,
                round=entry.round,
                bracket=entry.bracket,
                competitor1_id=competitor1_id,
                competitor2_id=competitor2_id,
            ))

        self.store.replace_stage_matches(tournament_id, FINALS, matches)
        tournament.status = STATUS_FINALS
        tournament.champion_id = None
        self.store.save_tournament(tournament)
        logger.info(f'Generated finals for {tournament_id} with seeds {seeds}')
        self._audit(tournament_id, 'generate_finals', actor, tournament_id, {'seeds': seeds})
        return self.bracket(tournament_id)

    # -- results ----------------------------------------------------------

    def update_match(self, tournament_id: str, match_id: str, version, score1, score2,
                     detail=None, actor: str = None) -> Match:
        """Administrator enters the result directly."""
        tournament = self.store.get_tournament(tournament_id)
        fmt = get_format(tournament.format)
        if isinstance(version, bool) or not isinstance(version, int):
            raise ValidationError('version is required', field='version')

        match = self.store.get_match(tournament_id, match_id)
        if match.stage == FINALS and match.completed:
            raise MatchAlreadyCompleted()
        detail = fmt.validate(score1, score2, detail, stage=match.stage)

        def change(m):
            if m.stage == FINALS:
                if m.completed:
                    raise MatchAlreadyCompleted()
                if m.competitor1_id is None or m.competitor2_id is None:
                    raise ValidationError('Both competitors must be known before scoring', field='score1')
            m.score1 = score1
            m.score2 = score2
            m.detail = detail
            m.completed = True

        updated = update_match(self.store, tournament_id, match_id, version, change)
        self._audit(tournament_id, 'update_match', actor, match_id,
                    {'score1': score1, 'score2': score2, 'version': updated.version})
        self._on_completed(tournament, updated, fmt)
        return updated

    def report_score(self, tournament_id: str, match_id: str, slot, score1, score2, detail=None,
                     actor: str = None, version=None):
        """A competitor reports the result from their side. Returns ``(match, outcome)``."""
        tournament = self.store.get_tournament(tournament_id)
        fmt = get_format(tournament.format)
        if version is not None and (isinstance(version, bool) or not isinstance(version, int)):
            raise ValidationError('version must be an integer', field='version')
        match = self.store.get_match(tournament_id, match_id)
        if match.completed:
            raise MatchAlreadyCompleted()
        if slot not in (1, 2):
            raise ValidationError('reporting_slot must be 1 or 2', field='reporting_slot')
        detail = fmt.validate(score1, score2, detail, stage=match.stage)

        report = ReportedScore(score1, score2, detail=detail, reported_by=actor,
                               reported_at=datetime.now().isoformat())
        updated = update_match(self.store, tournament_id, match_id, version,
                               lambda m: reports.apply_report(m, slot, report))
        outcome = reports.outcome(updated)

        self._audit(tournament_id, 'report_score', actor, match_id,
                    {'slot': slot, 'score1': score1, 'score2': score2, 'state': outcome['state']})
        if updated.completed:
            logger.info(f'Match {match_id} in {tournament_id} confirmed by both reports')
            self._audit(tournament_id, 'confirm_match', actor, match_id,
                        {'score1': updated.score1, 'score2': updated.score2})
            self._on_completed(tournament, updated, fmt)
        elif outcome['state'] == reports.MISMATCHED:
            logger.warning(f'Match {match_id} in {tournament_id} has mismatched reports')
        return updated, outcome

    def clear_reports(self, tournament_id: str, match_id: str, version, actor: str = None) -> Match:
        self.store.get_tournament(tournament_id)
        if isinstance(version, bool) or not isinstance(version, int):
            raise ValidationError('version is required', field='version')
        updated = update_match(self.store, tournament_id, match_id, version, reports.clear)
        self._audit(tournament_id, 'clear_reports', actor, match_id)
        return updated

    def readvance(self, tournament_id: str, match_id: str, actor: str = None) -> Match:
        """Apply a completed finals result to the bracket again.

        Slots already holding the right competitor and walkovers already
        played are left alone, so this repairs an advancement that failed
        halfway and is harmless otherwise.
        """
        tournament = self.store.get_tournament(tournament_id)
        match = self.store.get_match(tournament_id, match_id)
        if match.stage != FINALS:
            raise ValidationError('Only finals matches advance through the bracket', field='match_id')
        if not match.completed:
            raise ValidationError('Match is not completed', field='match_id')
        if match.walkover:
            raise ValidationError('Walkovers advance with the match that feeds them', field='match_id')

        self._advance(tournament, match, get_format(tournament.format))
        logger.info(f'Re-applied advancement of {tournament_id} seq {match.seq}')
        self._audit(tournament_id, 'readvance', actor, match_id, {'seq': match.seq})
        return self.store.get_match(tournament_id, match_id)

    def _on_completed(self, tournament: Tournament, match: Match, fmt):
        if match.stage == QUALIFICATION:
            for competitor_id in (match.competitor1_id, match.competitor2_id):
                recompute(self.store, tournament.id, competitor_id, fmt, cache=self.cache)
        else:
            self._advance(tournament, match, fmt)

    def _advance(self, tournament: Tournament, match: Match, fmt):
        winner_slot = fmt.finals_winner(match.score1, match.score2)
        winner_id = match.competitor(winner_slot)
        loser_id = match.competitor(2 if winner_slot == 1 else 1)
        advancement = resolve(generate(BRACKET_SIZE), match.seq, winner_id, loser_id,
                              winner_position=winner_slot)

        for fill in advancement.fills:
            self._fill_slot(tournament.id, fill)
        for walkover in advancement.walkovers:
            self._complete_walkover(tournament.id, walkover)

        if advancement.reset_required:
            logger.info(f'Grand final of {tournament.id} won from the losers side, reset match is on')
        if advancement.tournament_complete:
            tournament = self.store.get_tournament(tournament.id)
            tournament.status = STATUS_COMPLETE
            tournament.champion_id = advancement.champion_id
            self.store.save_tournament(tournament)
            logger.info(f'Tournament {tournament.id} complete, champion {advancement.champion_id}')

    def _fill_slot(self, tournament_id: str, fill):
        target = self.store.find_match_by_seq(tournament_id, FINALS, fill.target_seq)
        if target.competitor(fill.position) == fill.competitor_id:
            return

        def change(m):
            if m.completed and m.competitor(fill.position) != fill.competitor_id:
                raise MatchAlreadyCompleted(f'Cannot fill slot of completed match {m.seq}')
            m.set_competitor(fill.position, fill.competitor_id)

        update_match(self.store, tournament_id, target.id, None, change, retry_conflicts=True)
        logger.debug(f'Filled {tournament_id} seq {fill.target_seq} slot {fill.position} with {fill.competitor_id}')

    def _complete_walkover(self, tournament_id: str, walkover):
        target = self.store.find_match_by_seq(tournament_id, FINALS, walkover.seq)
        if target.completed and target.walkover:
            return

        def change(m):
            if m.completed and not m.walkover:
                raise MatchAlreadyCompleted(f'Match {m.seq} is already completed')
            m.completed = True
            m.walkover = True

        update_match(self.store, tournament_id, target.id, None, change, retry_conflicts=True)
        logger.info(f'{walkover.competitor_id} advances from {tournament_id} seq {walkover.seq} by walkover')

    # -- reads ------------------------------------------------------------

    def get_match(self, tournament_id: str, match_id: str) -> Match:
        self.store.get_tournament(tournament_id)
        return self.store.get_match(tournament_id, match_id)

    def list_matches(self, tournament_id: str, stage: str = None) -> List[Match]:
        self.store.get_tournament(tournament_id)
        if stage is not None and stage not in (QUALIFICATION, FINALS):
            raise ValidationError(f'Unknown stage: {stage}', field='stage')
        return self.store.query_matches(tournament_id, stage=stage)

    def standings(self, tournament_id: str):
        """Ranked qualification standings. Returns ``(payload, etag)``."""
        if self.cache is not None:
            cached = self.cache.get(tournament_id)
            if cached is not None:
                return cached

        self.store.get_tournament(tournament_id)
        competitors = {c.id: c for c in self.store.list_competitors(include_deleted=True)}
        rows = rank(self.store.list_qualifications(tournament_id))
        for row in rows:
            competitor = competitors.get(row['competitor_id'])
            row['name'] = competitor.name if competitor else None
            row['handle'] = competitor.handle if competitor else None
        payload = {'tournament_id': tournament_id, 'standings': rows}

        if self.cache is not None:
            return payload, self.cache.set(tournament_id, payload)
        return payload, StandingsCache.etag(payload)

    def bracket(self, tournament_id: str) -> dict:
        tournament = self.store.get_tournament(tournament_id)
        matches = self.store.query_matches(tournament_id, stage=FINALS)
        sections = bracket_sections(matches)
        return {
            'tournament_id': tournament_id,
            'status': tournament.status,
            'champion_id': tournament.champion_id,
            'sections': {name: [match_view(m) for m in section] for name, section in sections.items()},
            'topology': [entry.to_dict() for entry in generate(BRACKET_SIZE)] if matches else [],
        }

    def review_queue(self, tournament_id: str, now: datetime = None) -> List[dict]:
        self.store.get_tournament(tournament_id)
        matches = self.store.query_matches(tournament_id, completed=False)
        return reports.review_queue(matches, now=now, max_age=timedelta(hours=self.escalation_hours))
