"""
YAML-backed storage for tournaments, competitors, matches and qualification records.

Layout under the data directory::

    audit_log.yaml          (competitor registry changes)
    competitors.yaml
    tournaments.yaml
    tournaments/<tournament_id>/matches.yaml
    tournaments/<tournament_id>/qualifications.yaml
    tournaments/<tournament_id>/audit_log.yaml

Each directory has a ``.lock`` file. Every read-modify-write happens while
holding it, and files are replaced atomically, so a write is either fully
applied or not applied at all. ``conditional_update`` is the compare-and-swap
the optimistic concurrency controller is built on.
"""
import logging
import os
import re
import tempfile
import uuid
from contextlib import contextmanager
from typing import Callable, List, Optional

import yaml
from filelock import FileLock, Timeout

from .errors import InternalStorageError, NotFound, StorageUnavailable, ValidationError
from .models import Competitor, Match, QualificationRecord, Tournament

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10


def new_id() -> str:
    return uuid.uuid4().hex


def slugify(name: str) -> str:
    """Convert a tournament name to a filesystem-safe id."""
    slug = name.lower().strip()
    slug = re.sub(r'[^a-z0-9\s-]', '', slug)
    slug = re.sub(r'[\s-]+', '-', slug)
    slug = slug.strip('-')
    return slug or 'tournament'


class TournamentStore:
    def __init__(self, data_dir: str, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.data_dir = data_dir
        self.lock_timeout = lock_timeout

    # -- plumbing ---------------------------------------------------------

    def _tournament_dir(self, tournament_id: str) -> str:
        return os.path.join(self.data_dir, 'tournaments', tournament_id)

    @contextmanager
    def _locked(self, directory: str):
        try:
            os.makedirs(directory, exist_ok=True)
            with FileLock(os.path.join(directory, '.lock'), timeout=self.lock_timeout):
                yield
        except Timeout as e:
            raise StorageUnavailable(f'Timed out waiting for lock on {directory}') from e

    def _load(self, path: str, key: str) -> list:
        if not os.path.exists(path):
            return []
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f'Failed to parse {path}: {e}')
            raise InternalStorageError() from e
        except OSError as e:
            raise StorageUnavailable(f'Failed to read {path}: {e}') from e
        if not data or not isinstance(data.get(key), list):
            return []
        return data[key]

    def _save(self, path: str, key: str, rows: list):
        directory = os.path.dirname(path)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.tmp-', suffix='.yaml')
        except OSError as e:
            raise StorageUnavailable(f'Failed to write {path}: {e}') from e
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                yaml.dump({key: rows}, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, path)
        except OSError as e:
            self._discard(tmp_path)
            raise StorageUnavailable(f'Failed to write {path}: {e}') from e
        except Exception:
            self._discard(tmp_path)
            raise

    def _discard(self, tmp_path: str):
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass

    # -- tournaments ------------------------------------------------------

    def _tournaments_file(self) -> str:
        return os.path.join(self.data_dir, 'tournaments.yaml')

    def list_tournaments(self) -> List[Tournament]:
        return [Tournament.from_dict(row) for row in self._load(self._tournaments_file(), 'tournaments')]

    def get_tournament(self, tournament_id: str) -> Tournament:
        for tournament in self.list_tournaments():
            if tournament.id == tournament_id:
                return tournament
        raise NotFound(f'Tournament not found: {tournament_id}')

    def create_tournament(self, tournament: Tournament) -> Tournament:
        """Persist a new tournament, suffixing its id if it is already taken."""
        with self._locked(self.data_dir):
            rows = self._load(self._tournaments_file(), 'tournaments')
            taken = {row['id'] for row in rows}
            base, n = tournament.id, 2
            while tournament.id in taken:
                tournament.id = f'{base}-{n}'
                n += 1
            rows.append(tournament.to_dict())
            self._save(self._tournaments_file(), 'tournaments', rows)
        os.makedirs(self._tournament_dir(tournament.id), exist_ok=True)
        return tournament

    def save_tournament(self, tournament: Tournament):
        with self._locked(self.data_dir):
            rows = self._load(self._tournaments_file(), 'tournaments')
            for i, row in enumerate(rows):
                if row['id'] == tournament.id:
                    rows[i] = tournament.to_dict()
                    break
            else:
                raise NotFound(f'Tournament not found: {tournament.id}')
            self._save(self._tournaments_file(), 'tournaments', rows)

    # -- competitors ------------------------------------------------------

    def _competitors_file(self) -> str:
        return os.path.join(self.data_dir, 'competitors.yaml')

    def list_competitors(self, include_deleted: bool = False) -> List[Competitor]:
        competitors = [Competitor.from_dict(row) for row in self._load(self._competitors_file(), 'competitors')]
        if include_deleted:
            return competitors
        return [c for c in competitors if not c.deleted]

    def get_competitor(self, competitor_id: str) -> Competitor:
        """Look up a competitor by id; soft-deleted competitors still resolve."""
        for competitor in self.list_competitors(include_deleted=True):
            if competitor.id == competitor_id:
                return competitor
        raise NotFound(f'Competitor not found: {competitor_id}')

    def find_competitor_by_handle(self, handle: str) -> Optional[Competitor]:
        handle = handle.lower().strip()
        for competitor in self.list_competitors():
            if competitor.handle == handle:
                return competitor
        return None

    def create_competitor(self, competitor: Competitor) -> Competitor:
        with self._locked(self.data_dir):
            rows = self._load(self._competitors_file(), 'competitors')
            if any(row['handle'] == competitor.handle and not row.get('deleted') for row in rows):
                raise ValidationError(f'Handle already taken: {competitor.handle}', field='handle')
            rows.append(competitor.to_dict())
            self._save(self._competitors_file(), 'competitors', rows)
        return competitor

    def save_competitor(self, competitor: Competitor):
        with self._locked(self.data_dir):
            rows = self._load(self._competitors_file(), 'competitors')
            for i, row in enumerate(rows):
                if row['id'] == competitor.id:
                    rows[i] = competitor.to_dict()
                    break
            else:
                raise NotFound(f'Competitor not found: {competitor.id}')
            self._save(self._competitors_file(), 'competitors', rows)

    # -- matches ----------------------------------------------------------

    def _matches_file(self, tournament_id: str) -> str:
        return os.path.join(self._tournament_dir(tournament_id), 'matches.yaml')

    def _load_matches(self, tournament_id: str) -> List[Match]:
        return [Match.from_dict(row) for row in self._load(self._matches_file(tournament_id), 'matches')]

    def get_match(self, tournament_id: str, match_id: str) -> Match:
        for match in self._load_matches(tournament_id):
            if match.id == match_id:
                return match
        raise NotFound(f'Match not found: {match_id}')

    def find_match_by_seq(self, tournament_id: str, stage: str, seq: int) -> Match:
        for match in self._load_matches(tournament_id):
            if match.stage == stage and match.seq == seq:
                return match
        raise NotFound(f'No {stage} match with seq {seq}')

    def query_matches(self, tournament_id: str, stage: str = None, completed: bool = None,
                      competitor_id: str = None) -> List[Match]:
        """Matches filtered by stage, completion and participant, ordered by stage then seq."""
        matches = self._load_matches(tournament_id)
        if stage is not None:
            matches = [m for m in matches if m.stage == stage]
        if completed is not None:
            matches = [m for m in matches if m.completed == completed]
        if competitor_id is not None:
            matches = [m for m in matches if m.involves(competitor_id)]
        return sorted(matches, key=lambda m: (m.stage != 'qualification', m.seq))

    def replace_stage_matches(self, tournament_id: str, stage: str, matches: List[Match]):
        """Bulk create: drop every match of ``stage`` and insert ``matches`` in one write."""
        with self._locked(self._tournament_dir(tournament_id)):
            rows = [row for row in self._load(self._matches_file(tournament_id), 'matches')
                    if row['stage'] != stage]
            rows.extend(m.to_dict() for m in matches)
            self._save(self._matches_file(tournament_id), 'matches', rows)

    def conditional_update(self, tournament_id: str, match_id: str, expected_version: int,
                           change: Callable[[Match], Match]) -> Optional[Match]:
        """Apply ``change`` to the match only if it is still at ``expected_version``.

        Returns the stored match (version incremented by one), or None when no
        row matched the id and version. Exceptions raised by ``change`` abort
        the write.
        """
        with self._locked(self._tournament_dir(tournament_id)):
            rows = self._load(self._matches_file(tournament_id), 'matches')
            for i, row in enumerate(rows):
                if row['id'] == match_id and row.get('version', 1) == expected_version:
                    break
            else:
                return None
            updated = change(Match.from_dict(row))
            updated.version = expected_version + 1
            rows[i] = updated.to_dict()
            self._save(self._matches_file(tournament_id), 'matches', rows)
        return updated

    # -- qualification records ------------------------------------------------

    def _qualifications_file(self, tournament_id: str) -> str:
        return os.path.join(self._tournament_dir(tournament_id), 'qualifications.yaml')

    def list_qualifications(self, tournament_id: str) -> List[QualificationRecord]:
        return [QualificationRecord.from_dict(row)
                for row in self._load(self._qualifications_file(tournament_id), 'qualifications')]

    def get_qualification(self, tournament_id: str, competitor_id: str) -> QualificationRecord:
        for record in self.list_qualifications(tournament_id):
            if record.competitor_id == competitor_id:
                return record
        raise NotFound(f'Competitor {competitor_id} is not in qualification')

    def replace_qualifications(self, tournament_id: str, records: List[QualificationRecord]):
        with self._locked(self._tournament_dir(tournament_id)):
            self._save(self._qualifications_file(tournament_id), 'qualifications',
                       [r.to_dict() for r in records])

    def save_qualification(self, record: QualificationRecord):
        """Replace one competitor's qualification record wholesale."""
        with self._locked(self._tournament_dir(record.tournament_id)):
            path = self._qualifications_file(record.tournament_id)
            rows = self._load(path, 'qualifications')
            for i, row in enumerate(rows):
                if row['competitor_id'] == record.competitor_id:
                    rows[i] = record.to_dict()
                    break
            else:
                rows.append(record.to_dict())
            self._save(path, 'qualifications', rows)

    def rebuild_qualification(self, tournament_id: str, competitor_id: str,
                              replay: Callable[[QualificationRecord, List[Match]], QualificationRecord]
                              ) -> QualificationRecord:
        """Replay a competitor's completed qualification matches into their record.

        The matches are read and the record written under one lock, so no
        result can commit between the two.
        """
        with self._locked(self._tournament_dir(tournament_id)):
            matches = [m for m in self._load_matches(tournament_id)
                       if m.stage == 'qualification' and m.completed and m.involves(competitor_id)]
            path = self._qualifications_file(tournament_id)
            rows = self._load(path, 'qualifications')
            for i, row in enumerate(rows):
                if row['competitor_id'] == competitor_id:
                    break
            else:
                raise NotFound(f'Competitor {competitor_id} is not in qualification')
            record = replay(QualificationRecord.from_dict(rows[i]), sorted(matches, key=lambda m: m.seq))
            rows[i] = record.to_dict()
            self._save(path, 'qualifications', rows)
        return record

    # -- audit log --------------------------------------------------------

    def _audit_dir(self, tournament_id: Optional[str]) -> str:
        return self._tournament_dir(tournament_id) if tournament_id else self.data_dir

    def append_audit(self, tournament_id: Optional[str], entry: dict):
        """Append to a tournament's audit log, or the global one when ``tournament_id`` is None."""
        directory = self._audit_dir(tournament_id)
        with self._locked(directory):
            path = os.path.join(directory, 'audit_log.yaml')
            rows = self._load(path, 'entries')
            rows.append(entry)
            self._save(path, 'entries', rows)

    def list_audit(self, tournament_id: Optional[str]) -> List[dict]:
        return self._load(os.path.join(self._audit_dir(tournament_id), 'audit_log.yaml'), 'entries')
