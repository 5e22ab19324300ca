"""
Dual-report reconciliation.

Both competitors of a match report the result independently. When the two
reports agree the match is confirmed automatically; when they disagree the
match is left open for an administrator. The reconcile step runs inside the
same compare-and-swap that stores the report, so two competitors reporting at
the same moment can't both miss each other's report.
"""
from datetime import datetime, timedelta
from typing import List, Optional

from .errors import MatchAlreadyCompleted, ValidationError
from .models import Match, ReportedScore

NO_REPORTS = 'no_reports'
ONE_REPORTED = 'one_reported'
CONFIRMED = 'confirmed'
MISMATCHED = 'mismatched'

DEFAULT_ESCALATION_HOURS = 24


def _other(slot: int) -> int:
    return 2 if slot == 1 else 1


def report_state(match: Match) -> str:
    """Derive the reconcile state from the two report sub-records."""
    if match.completed:
        return CONFIRMED
    if match.report1 and match.report2:
        return CONFIRMED if match.report1.same_scores(match.report2) else MISMATCHED
    if match.report1 or match.report2:
        return ONE_REPORTED
    return NO_REPORTS


def waiting_for(match: Match) -> Optional[str]:
    if report_state(match) != ONE_REPORTED:
        return None
    return 'player2' if match.report1 else 'player1'


def apply_report(match: Match, slot: int, report: ReportedScore) -> Match:
    """Store ``report`` in ``slot`` and confirm the match if both sides agree.

    Runs inside the conditional update: ``match`` is the freshly read row.
    """
    if match.completed:
        raise MatchAlreadyCompleted()
    if slot not in (1, 2):
        raise ValidationError('reporting_slot must be 1 or 2', field='reporting_slot')
    if match.competitor(slot) is None or match.competitor(_other(slot)) is None:
        raise ValidationError('Both competitors must be known before reporting', field='reporting_slot')

    match.set_report(slot, report)
    other = match.report(_other(slot))
    if other is not None and other.same_scores(report):
        match.score1 = report.score1
        match.score2 = report.score2
        match.detail = report.detail if report.detail is not None else other.detail
        match.completed = True
    return match


def clear(match: Match) -> Match:
    """Discard both reports of an open match."""
    if match.completed:
        raise MatchAlreadyCompleted()
    match.report1 = None
    match.report2 = None
    return match


def outcome(match: Match) -> dict:
    """What the reporter is told after their report was stored."""
    state = report_state(match)
    result = {'state': state, 'completed': match.completed}
    if state == ONE_REPORTED:
        result['waiting_for'] = waiting_for(match)
    elif state == MISMATCHED:
        result['reports'] = {
            'player1': match.report1.to_dict(),
            'player2': match.report2.to_dict(),
        }
    return result


def _reported_at(report: ReportedScore) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(report.reported_at)
    except (TypeError, ValueError):
        return None


def review_queue(matches: List[Match], now: datetime = None,
                 max_age: timedelta = timedelta(hours=DEFAULT_ESCALATION_HOURS)) -> List[dict]:
    """Matches that need an administrator.

    Mismatched reports always qualify. A lone report qualifies once it is
    older than ``max_age`` (the other side never answered).
    """
    now = now or datetime.now()
    queue = []
    for match in matches:
        state = report_state(match)
        if match.completed or state in (NO_REPORTS, CONFIRMED):
            continue
        if state == ONE_REPORTED:
            reported_at = _reported_at(match.report1 or match.report2)
            if reported_at is None or now - reported_at <= max_age:
                continue
            reason = 'stale_report'
        else:
            reason = 'mismatch'
        queue.append({
            'match': match.to_dict(),
            'state': state,
            'reason': reason,
            'waiting_for': waiting_for(match),
        })
    return queue
