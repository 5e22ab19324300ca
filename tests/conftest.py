"""
Shared pytest fixtures for the tournament manager tests.

Running tests:
    pytest tests/                  - full suite
    pytest tests/ -m "not slow"   - fast subset (skips the thread contention tests)
"""
import pytest
import sys
import os

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from smkc.audit import AuditLog
from smkc.service import MatchService
from smkc.standings import StandingsCache
from smkc.storage import TournamentStore

HANDLES = ['mario', 'luigi', 'peach', 'yoshi', 'bowser', 'toad', 'koopa', 'dk']


@pytest.fixture
def store(tmp_path):
    """Store rooted in a temporary data directory."""
    return TournamentStore(str(tmp_path / 'data'), lock_timeout=2)


@pytest.fixture
def service(store):
    return MatchService(store, audit=AuditLog(store), cache=StandingsCache())


@pytest.fixture
def competitors(service):
    """Eight registered competitors, in HANDLES order."""
    return [service.create_competitor(handle.title(), handle, password='pass1234') for handle in HANDLES]


@pytest.fixture
def mr_tournament(service, competitors):
    """Match race tournament with all eight competitors in qualification group A."""
    tournament = service.create_tournament('Spring Cup', 'mr')
    service.setup_qualification(tournament.id, [{'competitor_id': c.id, 'group': 'A'} for c in competitors])
    return tournament


@pytest.fixture
def seeded_finals(service, store, competitors):
    """Battle mode tournament with finals generated.

    Qualification records are written directly so seed N is competitors[N - 1].
    Returns (tournament, seeds).
    """
    from smkc.models import QualificationRecord

    tournament = service.create_tournament('Finals Night', 'bm')
    records = [
        QualificationRecord(tournament.id, c.id, wins=len(competitors) - i)
        for i, c in enumerate(competitors)
    ]
    store.replace_qualifications(tournament.id, records)
    service.generate_finals(tournament.id)
    return store.get_tournament(tournament.id), [c.id for c in competitors]


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the web app at a temporary data directory."""
    import app as app_module

    path = tmp_path / 'data'
    path.mkdir()
    monkeypatch.setattr(app_module, 'DATA_DIR', str(path))
    app_module.app.extensions['standings_cache'].clear()
    app_module._rate_limit_store.clear()
    return str(path)


@pytest.fixture
def client(data_dir):
    """Create an authenticated administrator test client."""
    from app import app
    app.config['TESTING'] = True
    with app.test_client() as client:
        with client.session_transaction() as sess:
            sess['user'] = 'testuser'
        yield client


@pytest.fixture
def anon_client(data_dir):
    """Create an unauthenticated test client."""
    from app import app
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client
