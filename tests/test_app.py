"""
Tests for the Flask JSON API.
"""
import pytest


def create_competitors(client, count=8):
    ids = []
    for i in range(count):
        resp = client.post('/api/competitors', json={
            'name': f'Player {i + 1}', 'handle': f'player{i + 1}', 'password': 'pass1234'})
        assert resp.status_code == 201
        ids.append(resp.get_json()['competitor']['id'])
    return ids


@pytest.fixture
def tournament(client):
    """Match race tournament with eight competitors in qualification."""
    ids = create_competitors(client)
    resp = client.post('/api/tournaments', json={'name': 'Web Cup', 'format': 'mr'})
    assert resp.status_code == 201
    tournament_id = resp.get_json()['tournament']['id']
    resp = client.post(f'/api/tournaments/{tournament_id}/qualification',
                       json={'entries': [{'competitor_id': cid, 'group': 'A'} for cid in ids]})
    assert resp.status_code == 201
    return {'id': tournament_id, 'competitors': ids}


def first_match(client, tournament_id):
    resp = client.get(f'/api/tournaments/{tournament_id}/matches?stage=qualification')
    return resp.get_json()['matches'][0]


class TestPublicRoutes:
    """Tests for routes anyone may call."""

    def test_health(self, anon_client):
        resp = anon_client.get('/api/health')
        assert resp.status_code == 200
        assert resp.get_json() == {'status': 'ok'}

    def test_writes_need_login(self, anon_client):
        assert anon_client.post('/api/tournaments', json={'name': 'X', 'format': 'bm'}).status_code == 401
        assert anon_client.post('/api/competitors', json={'name': 'X', 'handle': 'xx'}).status_code == 401

    def test_unknown_tournament(self, anon_client):
        resp = anon_client.get('/api/tournaments/ghost')
        assert resp.status_code == 404
        assert resp.get_json()['code'] == 'not_found'

    def test_list_competitors_hides_password(self, client):
        create_competitors(client, 1)
        competitor = client.get('/api/competitors').get_json()['competitors'][0]
        assert 'password_hash' not in competitor


class TestMatchRoutes:
    """Tests for listing and editing matches."""

    def test_list_and_get(self, client, tournament):
        match = first_match(client, tournament['id'])
        assert match['report_state'] == 'no_reports'
        assert match['version'] == 1
        resp = client.get(f"/api/tournaments/{tournament['id']}/matches/{match['id']}")
        assert resp.get_json()['match']['id'] == match['id']

    def test_admin_edit(self, client, tournament):
        match = first_match(client, tournament['id'])
        resp = client.put(f"/api/tournaments/{tournament['id']}/matches/{match['id']}",
                          json={'score1': 3, 'score2': 1, 'version': 1})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['match']['version'] == 2
        assert body['match']['completed'] is True

    def test_stale_version_conflict(self, client, tournament):
        match = first_match(client, tournament['id'])
        url = f"/api/tournaments/{tournament['id']}/matches/{match['id']}"
        client.put(url, json={'score1': 3, 'score2': 1, 'version': 1})
        resp = client.put(url, json={'score1': 1, 'score2': 3, 'version': 1})
        assert resp.status_code == 409
        body = resp.get_json()
        assert body['code'] == 'version_conflict'
        assert body['current_version'] == 2
        assert 'error' in body

    def test_validation_error_names_field(self, client, tournament):
        match = first_match(client, tournament['id'])
        url = f"/api/tournaments/{tournament['id']}/matches/{match['id']}"
        resp = client.put(url, json={'score1': 3, 'score2': 1})
        assert resp.status_code == 400
        assert resp.get_json()['field'] == 'version'
        resp = client.put(url, json={'score1': 9, 'score2': 1, 'version': 1})
        assert resp.status_code == 400
        assert resp.get_json()['field'] == 'score1'

    def test_bad_stage_filter(self, client, tournament):
        resp = client.get(f"/api/tournaments/{tournament['id']}/matches?stage=nope")
        assert resp.status_code == 400


class TestReporting:
    """Tests for competitor self-reporting."""

    def _login(self, client, handle):
        with client.session_transaction() as sess:
            sess.clear()
        resp = client.post('/api/competitor-login', json={'handle': handle, 'password': 'pass1234'})
        assert resp.status_code == 200

    def test_both_players_report(self, client, tournament):
        match = first_match(client, tournament['id'])
        url = f"/api/tournaments/{tournament['id']}/matches/{match['id']}/report"

        self._login(client, 'player1')
        resp = client.post(url, json={'reporting_slot': 1, 'score1': 3, 'score2': 1})
        assert resp.status_code == 200
        assert resp.get_json()['outcome']['waiting_for'] == 'player2'

        self._login(client, 'player2')
        resp = client.post(url, json={'reporting_slot': 2, 'score1': 3, 'score2': 1})
        body = resp.get_json()
        assert body['outcome']['state'] == 'confirmed'
        assert body['match']['completed'] is True

    def test_cannot_report_for_opponent(self, client, tournament):
        match = first_match(client, tournament['id'])
        self._login(client, 'player1')
        resp = client.post(f"/api/tournaments/{tournament['id']}/matches/{match['id']}/report",
                           json={'reporting_slot': 2, 'score1': 3, 'score2': 1})
        assert resp.status_code == 403
        assert resp.get_json()['code'] == 'forbidden'

    def test_outsider_cannot_report(self, client, tournament):
        match = first_match(client, tournament['id'])
        self._login(client, 'player8')
        resp = client.post(f"/api/tournaments/{tournament['id']}/matches/{match['id']}/report",
                           json={'reporting_slot': 1, 'score1': 3, 'score2': 1})
        assert resp.status_code == 403

    def test_anonymous_report_rejected(self, anon_client):
        resp = anon_client.post('/api/tournaments/t/matches/m/report', json={'reporting_slot': 1})
        assert resp.status_code == 401

    def test_admin_can_report_either_slot(self, client, tournament):
        match = first_match(client, tournament['id'])
        resp = client.post(f"/api/tournaments/{tournament['id']}/matches/{match['id']}/report",
                           json={'reporting_slot': 2, 'score1': 3, 'score2': 1})
        assert resp.status_code == 200

    def test_mismatch_reaches_review_queue_and_clear(self, client, tournament):
        match = first_match(client, tournament['id'])
        base = f"/api/tournaments/{tournament['id']}/matches/{match['id']}"
        client.post(f'{base}/report', json={'reporting_slot': 1, 'score1': 3, 'score2': 1})
        resp = client.post(f'{base}/report', json={'reporting_slot': 2, 'score1': 2, 'score2': 3})
        assert resp.get_json()['outcome']['state'] == 'mismatched'

        queue = client.get(f"/api/tournaments/{tournament['id']}/review-queue").get_json()['queue']
        assert [entry['match']['id'] for entry in queue] == [match['id']]

        resp = client.post(f'{base}/clear-reports', json={'version': 3})
        assert resp.status_code == 200
        assert resp.get_json()['match']['report_state'] == 'no_reports'

    def test_rate_limit(self, client, tournament, monkeypatch):
        import app as app_module
        monkeypatch.setattr(app_module, 'REPORTS_PER_HOUR', 1)
        match = first_match(client, tournament['id'])
        url = f"/api/tournaments/{tournament['id']}/matches/{match['id']}/report"
        assert client.post(url, json={'reporting_slot': 1, 'score1': 3, 'score2': 1}).status_code == 200
        assert client.post(url, json={'reporting_slot': 1, 'score1': 3, 'score2': 1}).status_code == 429


class TestStandingsAndFinals:
    """Tests for standings and bracket routes."""

    def test_standings_etag(self, client, tournament):
        url = f"/api/tournaments/{tournament['id']}/standings"
        resp = client.get(url)
        assert resp.status_code == 200
        etag = resp.headers['ETag']
        assert len(resp.get_json()['standings']) == 8

        resp = client.get(url, headers={'If-None-Match': etag})
        assert resp.status_code == 304

        match = first_match(client, tournament['id'])
        client.put(f"/api/tournaments/{tournament['id']}/matches/{match['id']}",
                   json={'score1': 3, 'score2': 0, 'version': 1})
        resp = client.get(url, headers={'If-None-Match': etag})
        assert resp.status_code == 200

    def test_unsupported_bracket_size(self, client, tournament):
        resp = client.post(f"/api/tournaments/{tournament['id']}/finals", json={'top_n': 4})
        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'unsupported_bracket_size'

    def test_generate_and_view_finals(self, client, tournament):
        resp = client.post(f"/api/tournaments/{tournament['id']}/finals", json={})
        assert resp.status_code == 201
        resp = client.get(f"/api/tournaments/{tournament['id']}/finals")
        bracket = resp.get_json()['bracket']
        assert bracket['status'] == 'finals'
        assert len(bracket['sections']['winners']) == 7
        assert len(bracket['sections']['losers']) == 8
        assert len(bracket['topology']) == 17

    def test_review_queue_admin_only(self, anon_client):
        assert anon_client.get('/api/tournaments/t/review-queue').status_code == 401

    def test_readvance_admin_only(self, anon_client):
        assert anon_client.post('/api/tournaments/t/matches/m/readvance').status_code == 401

    def test_readvance_rejects_qualification_match(self, client, tournament):
        match = first_match(client, tournament['id'])
        resp = client.post(f"/api/tournaments/{tournament['id']}/matches/{match['id']}/readvance")
        assert resp.status_code == 400
        assert resp.get_json()['field'] == 'match_id'
