"""
Tests for the YAML/FileLock tournament store.
"""
import os

import pytest
from filelock import FileLock

from smkc.errors import InternalStorageError, NotFound, StorageUnavailable, ValidationError
from smkc.models import Competitor, Match, QualificationRecord, Tournament
from smkc.storage import TournamentStore, slugify


def make_match(match_id, seq, stage='qualification', **kwargs):
    return Match(match_id, 'cup', seq, stage, **kwargs)


class TestSlugify:
    def test_basic(self):
        assert slugify('Spring Cup 2026') == 'spring-cup-2026'

    def test_symbols_only(self):
        assert slugify('!!!') == 'tournament'


class TestTournaments:
    """Tests for tournament persistence."""

    def test_create_and_get(self, store):
        store.create_tournament(Tournament('cup', 'Cup', 'bm'))
        assert store.get_tournament('cup').format == 'bm'
        assert os.path.isdir(os.path.join(store.data_dir, 'tournaments', 'cup'))

    def test_duplicate_id_suffixed(self, store):
        store.create_tournament(Tournament('cup', 'Cup', 'bm'))
        second = store.create_tournament(Tournament('cup', 'Cup', 'mr'))
        assert second.id == 'cup-2'
        assert [t.id for t in store.list_tournaments()] == ['cup', 'cup-2']

    def test_missing(self, store):
        with pytest.raises(NotFound):
            store.get_tournament('nope')

    def test_save(self, store):
        tournament = store.create_tournament(Tournament('cup', 'Cup', 'bm'))
        tournament.status = 'finals'
        store.save_tournament(tournament)
        assert store.get_tournament('cup').status == 'finals'


class TestCompetitors:
    """Tests for the competitor registry."""

    def test_handle_unique(self, store):
        store.create_competitor(Competitor('c1', 'Mario', 'mario'))
        with pytest.raises(ValidationError) as exc:
            store.create_competitor(Competitor('c2', 'Mario Two', 'mario'))
        assert exc.value.field == 'handle'

    def test_soft_deleted_hidden_but_resolvable(self, store):
        competitor = store.create_competitor(Competitor('c1', 'Mario', 'mario'))
        competitor.deleted = True
        store.save_competitor(competitor)
        assert store.list_competitors() == []
        assert len(store.list_competitors(include_deleted=True)) == 1
        assert store.get_competitor('c1').deleted is True
        assert store.find_competitor_by_handle('mario') is None


class TestMatches:
    """Tests for match queries and the conditional update."""

    def test_query_filters_and_order(self, store):
        store.replace_stage_matches('cup', 'finals', [
            make_match('f2', 2, 'finals', competitor1_id='a'),
            make_match('f1', 1, 'finals'),
        ])
        store.replace_stage_matches('cup', 'qualification', [
            make_match('q2', 2, competitor1_id='a', completed=True),
            make_match('q1', 1, competitor2_id='a'),
        ])
        assert [m.id for m in store.query_matches('cup')] == ['q1', 'q2', 'f1', 'f2']
        assert [m.id for m in store.query_matches('cup', stage='finals')] == ['f1', 'f2']
        assert [m.id for m in store.query_matches('cup', completed=True)] == ['q2']
        assert [m.id for m in store.query_matches('cup', competitor_id='a')] == ['q1', 'q2', 'f2']

    def test_replace_stage_keeps_other_stage(self, store):
        store.replace_stage_matches('cup', 'qualification', [make_match('q1', 1)])
        store.replace_stage_matches('cup', 'finals', [make_match('f1', 1, 'finals')])
        store.replace_stage_matches('cup', 'finals', [make_match('f9', 1, 'finals')])
        assert [m.id for m in store.query_matches('cup')] == ['q1', 'f9']

    def test_find_by_seq(self, store):
        store.replace_stage_matches('cup', 'finals', [make_match('f7', 7, 'finals')])
        assert store.find_match_by_seq('cup', 'finals', 7).id == 'f7'
        with pytest.raises(NotFound):
            store.find_match_by_seq('cup', 'finals', 8)

    def test_conditional_update(self, store):
        store.replace_stage_matches('cup', 'qualification', [make_match('q1', 1)])

        def change(m):
            m.score1 = 3
            return m

        updated = store.conditional_update('cup', 'q1', 1, change)
        assert updated.version == 2
        assert store.conditional_update('cup', 'q1', 1, change) is None
        assert store.conditional_update('cup', 'missing', 1, change) is None
        assert store.get_match('cup', 'q1').score1 == 3

    def test_reports_round_trip(self, store):
        from smkc.models import ReportedScore
        match = make_match('q1', 1, report1=ReportedScore(3, 1, reported_by='mario', reported_at='2026-05-01T10:00:00'))
        store.replace_stage_matches('cup', 'qualification', [match])
        stored = store.get_match('cup', 'q1')
        assert stored.report1.score1 == 3
        assert stored.report1.reported_by == 'mario'
        assert stored.report2 is None


class TestQualifications:
    def test_save_replaces_one_record(self, store):
        store.replace_qualifications('cup', [QualificationRecord('cup', 'a'), QualificationRecord('cup', 'b')])
        store.save_qualification(QualificationRecord('cup', 'a', wins=2))
        records = {r.competitor_id: r for r in store.list_qualifications('cup')}
        assert records['a'].wins == 2
        assert records['b'].wins == 0

    def test_unknown_competitor(self, store):
        with pytest.raises(NotFound):
            store.get_qualification('cup', 'ghost')


class TestFailures:
    """Tests for how storage failures are reported."""

    def test_lock_timeout_is_transient(self, tmp_path):
        store = TournamentStore(str(tmp_path), lock_timeout=0.05)
        tournament_dir = tmp_path / 'tournaments' / 'cup'
        tournament_dir.mkdir(parents=True)
        with FileLock(str(tournament_dir / '.lock')):
            with pytest.raises(StorageUnavailable):
                store.replace_stage_matches('cup', 'qualification', [make_match('q1', 1)])

    def test_corrupt_file_is_internal_error(self, store):
        store.replace_stage_matches('cup', 'qualification', [make_match('q1', 1)])
        path = os.path.join(store.data_dir, 'tournaments', 'cup', 'matches.yaml')
        with open(path, 'w', encoding='utf-8') as f:
            f.write('matches: [unclosed')
        with pytest.raises(InternalStorageError):
            store.get_match('cup', 'q1')

    def test_global_audit_log(self, store):
        store.append_audit(None, {'action': 'create_competitor'})
        store.append_audit('cup', {'action': 'update_match'})
        assert store.list_audit(None) == [{'action': 'create_competitor'}]
        assert store.list_audit('cup') == [{'action': 'update_match'}]

    def test_failed_write_leaves_no_temp_file(self, store, monkeypatch):
        store.replace_stage_matches('cup', 'qualification', [make_match('q1', 1)])

        def broken(src, dst):
            raise OSError('disk full')

        monkeypatch.setattr(os, 'replace', broken)
        with pytest.raises(StorageUnavailable):
            store.replace_stage_matches('cup', 'qualification', [make_match('q2', 2)])
        monkeypatch.undo()

        tournament_dir = os.path.join(store.data_dir, 'tournaments', 'cup')
        assert [name for name in os.listdir(tournament_dir) if name.startswith('.tmp-')] == []
        assert [m.id for m in store.query_matches('cup')] == ['q1']

    def test_rebuild_unknown_competitor(self, store):
        with pytest.raises(NotFound):
            store.rebuild_qualification('cup', 'nobody', lambda record, matches: record)
