"""
Flask JSON API for the SMK tournament manager.
"""
import os
import re
import time
from datetime import datetime, timedelta
from functools import wraps

import yaml
from filelock import FileLock
from flask import Flask, Response, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from smkc.audit import AuditLog
from smkc.errors import AuthorizationError, TournamentError, ValidationError
from smkc.service import MatchService, match_view
from smkc.standings import StandingsCache
from smkc.storage import TournamentStore

app = Flask(__name__)


def _get_or_create_secret_key() -> bytes:
    """Get SECRET_KEY from env, or generate and persist to file."""
    env_key = os.environ.get('SECRET_KEY')
    if env_key:
        return env_key.encode() if isinstance(env_key, str) else env_key
    key_file = os.path.join(DATA_DIR, '.secret_key')
    if os.path.exists(key_file):
        with open(key_file, 'rb') as f:
            return f.read()
    key = os.urandom(24)
    os.makedirs(os.path.dirname(key_file), exist_ok=True)
    with open(key_file, 'wb') as f:
        f.write(key)
    return key


BASE_DIR = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.environ.get('TOURNAMENT_DATA_DIR', os.path.join(BASE_DIR, 'data'))
REPORT_ESCALATION_HOURS = float(os.environ.get('REPORT_ESCALATION_HOURS', '24'))
STORAGE_LOCK_TIMEOUT = float(os.environ.get('STORAGE_LOCK_TIMEOUT', '10'))
STANDINGS_CACHE_TTL = 300
REPORTS_PER_HOUR = 30

app.secret_key = _get_or_create_secret_key()
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(days=3650)
app.extensions['standings_cache'] = StandingsCache(ttl=STANDINGS_CACHE_TTL)

# Rate limiting for competitor score reports
# Structure: {(ip, tournament_id): [timestamp, timestamp, ...]}
_rate_limit_store = {}


def get_service() -> MatchService:
    """Build the service for this request from the configured data directory."""
    store = TournamentStore(DATA_DIR, lock_timeout=STORAGE_LOCK_TIMEOUT)
    return MatchService(
        store,
        audit=AuditLog(store),
        cache=app.extensions['standings_cache'],
        escalation_hours=REPORT_ESCALATION_HOURS,
    )


# -- administrators ---------------------------------------------------------

def _users_file() -> str:
    return os.path.join(DATA_DIR, 'users.yaml')


def load_users() -> list:
    """Load administrator registry from YAML."""
    path = _users_file()
    if not os.path.exists(path):
        return []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        return data.get('users', []) if data else []
    except Exception as e:
        app.logger.warning(f'Failed to parse {path}: {e}')
        return []


def save_users(users: list):
    """Save administrator registry to YAML."""
    os.makedirs(DATA_DIR, exist_ok=True)
    with open(_users_file(), 'w', encoding='utf-8') as f:
        yaml.dump({'users': users}, f, default_flow_style=False)


def create_user(username: str, password: str) -> tuple:
    """Create a new administrator. Returns (success, message)."""
    username = username.lower().strip()
    if not re.match(r'^[a-z0-9][a-z0-9-]*$', username) or len(username) < 2:
        return False, 'Username must be at least 2 characters: letters, numbers, hyphens.'
    if len(password) < 4:
        return False, 'Password must be at least 4 characters.'
    os.makedirs(DATA_DIR, exist_ok=True)
    with FileLock(os.path.join(DATA_DIR, '.users.lock'), timeout=STORAGE_LOCK_TIMEOUT):
        users = load_users()
        if any(u['username'] == username for u in users):
            return False, 'Username already taken.'
        users.append({
            'username': username,
            'password_hash': generate_password_hash(password),
            'created': datetime.now().isoformat()
        })
        save_users(users)
    return True, 'Account created successfully.'


def authenticate_user(username: str, password: str) -> bool:
    """Check username/password. Returns True if valid."""
    users = load_users()
    for u in users:
        if u['username'] == username.lower().strip():
            return check_password_hash(u['password_hash'], password)
    return False


def login_required(f):
    """Reject the request unless an administrator is logged in."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user' not in session:
            return jsonify({'success': False, 'error': 'Login required', 'code': 'unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated_function


def can_report(match, slot) -> bool:
    """Administrators may report any slot; a competitor only the slot they occupy."""
    if 'user' in session:
        return True
    competitor_id = session.get('competitor_id')
    return competitor_id is not None and match.competitor(slot) == competitor_id


def current_actor() -> str:
    if 'user' in session:
        return session['user']
    if 'competitor_id' in session:
        return f"competitor:{session['competitor_id']}"
    return 'anonymous'


def check_rate_limit(ip: str, tournament_id: str, max_per_hour: int = None) -> bool:
    """Check if IP has exceeded the report rate limit for a tournament.

    Returns:
        True if rate limit NOT exceeded, False if exceeded
    """
    max_per_hour = max_per_hour or REPORTS_PER_HOUR
    key = (ip, tournament_id)
    now = time.time()
    cutoff = now - 3600

    recent = [ts for ts in _rate_limit_store.get(key, []) if ts > cutoff]
    if len(recent) >= max_per_hour:
        return False

    recent.append(now)
    _rate_limit_store[key] = recent
    return True


def _request_data() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    if not isinstance(data, dict):
        raise ValidationError('Request body must be an object')
    return data


@app.errorhandler(TournamentError)
def handle_tournament_error(e):
    if e.status >= 500:
        app.logger.exception(f'{request.method} {request.path} failed: {e}')
    body = {'success': False}
    body.update(e.to_dict())
    return jsonify(body), e.status


# -- sessions ---------------------------------------------------------------

@app.route('/login', methods=['POST'])
def login():
    """Administrator login."""
    data = _request_data()
    username = data.get('username', '')
    password = data.get('password', '')
    if not authenticate_user(username, password):
        return jsonify({'success': False, 'error': 'Invalid username or password.'}), 401
    session['user'] = username.lower().strip()
    session.permanent = True
    return jsonify({'success': True, 'user': session['user']})


@app.route('/register', methods=['POST'])
def register():
    """Create an administrator. Open only while no administrator exists, afterwards admins only."""
    if load_users() and 'user' not in session:
        return jsonify({'success': False, 'error': 'Login required', 'code': 'unauthorized'}), 401
    data = _request_data()
    ok, msg = create_user(data.get('username', ''), data.get('password', ''))
    if not ok:
        return jsonify({'success': False, 'error': msg}), 400
    if 'user' not in session:
        session['user'] = data.get('username', '').lower().strip()
        session.permanent = True
    return jsonify({'success': True, 'message': msg})


@app.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'success': True})


@app.route('/api/competitor-login', methods=['POST'])
def api_competitor_login():
    """Competitor login by handle and password."""
    data = _request_data()
    competitor = get_service().authenticate_competitor(data.get('handle', ''), data.get('password', ''))
    if competitor is None:
        return jsonify({'success': False, 'error': 'Invalid handle or password.'}), 401
    session['competitor_id'] = competitor.id
    session.permanent = True
    return jsonify({'success': True, 'competitor': competitor.public_dict()})


@app.route('/api/competitor-logout', methods=['POST'])
def api_competitor_logout():
    session.pop('competitor_id', None)
    return jsonify({'success': True})


@app.route('/api/health')
def api_health():
    return jsonify({'status': 'ok'})


# -- competitors ------------------------------------------------------------

@app.route('/api/competitors', methods=['GET'])
def api_list_competitors():
    competitors = get_service().list_competitors()
    return jsonify({'success': True, 'competitors': [c.public_dict() for c in competitors]})


@app.route('/api/competitors', methods=['POST'])
@login_required
def api_create_competitor():
    data = _request_data()
    competitor = get_service().create_competitor(
        data.get('name'), data.get('handle'), password=data.get('password'), actor=current_actor())
    return jsonify({'success': True, 'competitor': competitor.public_dict()}), 201


@app.route('/api/competitors/<competitor_id>', methods=['DELETE'])
@login_required
def api_delete_competitor(competitor_id):
    competitor = get_service().delete_competitor(competitor_id, actor=current_actor())
    return jsonify({'success': True, 'competitor': competitor.public_dict()})


# -- tournaments ------------------------------------------------------------

@app.route('/api/tournaments', methods=['GET'])
def api_list_tournaments():
    tournaments = get_service().list_tournaments()
    return jsonify({'success': True, 'tournaments': [t.to_dict() for t in tournaments]})


@app.route('/api/tournaments', methods=['POST'])
@login_required
def api_create_tournament():
    data = _request_data()
    tournament = get_service().create_tournament(data.get('name'), data.get('format'), actor=current_actor())
    return jsonify({'success': True, 'tournament': tournament.to_dict()}), 201


@app.route('/api/tournaments/<tournament_id>', methods=['GET'])
def api_get_tournament(tournament_id):
    tournament = get_service().get_tournament(tournament_id)
    return jsonify({'success': True, 'tournament': tournament.to_dict()})


@app.route('/api/tournaments/<tournament_id>/qualification', methods=['POST'])
@login_required
def api_setup_qualification(tournament_id):
    """Set up qualification groups.

    Body: {"entries": [{"competitor_id": ..., "group": "A", "seeding": 1}, ...]}
    """
    data = _request_data()
    matches = get_service().setup_qualification(tournament_id, data.get('entries'), actor=current_actor())
    return jsonify({'success': True, 'matches': [match_view(m) for m in matches]}), 201


# -- matches ----------------------------------------------------------------

@app.route('/api/tournaments/<tournament_id>/matches', methods=['GET'])
def api_list_matches(tournament_id):
    matches = get_service().list_matches(tournament_id, stage=request.args.get('stage'))
    return jsonify({'success': True, 'matches': [match_view(m) for m in matches]})


@app.route('/api/tournaments/<tournament_id>/matches/<match_id>', methods=['GET'])
def api_get_match(tournament_id, match_id):
    match = get_service().get_match(tournament_id, match_id)
    return jsonify({'success': True, 'match': match_view(match)})


@app.route('/api/tournaments/<tournament_id>/matches/<match_id>', methods=['PUT'])
@login_required
def api_update_match(tournament_id, match_id):
    """Administrator score entry. Body: {score1, score2, detail?, version}."""
    data = _request_data()
    match = get_service().update_match(
        tournament_id, match_id, data.get('version'), data.get('score1'), data.get('score2'),
        detail=data.get('detail'), actor=current_actor())
    return jsonify({'success': True, 'match': match_view(match)})


@app.route('/api/tournaments/<tournament_id>/matches/<match_id>/report', methods=['POST'])
def api_report_score(tournament_id, match_id):
    """Self-report from one side. Body: {reporting_slot, score1, score2, detail?, version?}.

    Rate limited to 30 submissions per IP per hour per tournament.
    """
    if 'user' not in session and 'competitor_id' not in session:
        return jsonify({'success': False, 'error': 'Login required', 'code': 'unauthorized'}), 401

    client_ip = request.headers.get('X-Forwarded-For', request.remote_addr)
    if client_ip:
        client_ip = client_ip.split(',')[0].strip()
    if not check_rate_limit(client_ip, tournament_id):
        return jsonify({'success': False, 'error': 'Rate limit exceeded. Please try again later.'}), 429

    data = _request_data()
    slot = data.get('reporting_slot')
    service = get_service()
    match = service.get_match(tournament_id, match_id)
    if slot not in (1, 2):
        raise ValidationError('reporting_slot must be 1 or 2', field='reporting_slot')
    if not can_report(match, slot):
        raise AuthorizationError('You can only report for your own side of the match')

    match, outcome = service.report_score(
        tournament_id, match_id, slot, data.get('score1'), data.get('score2'),
        detail=data.get('detail'), actor=current_actor(), version=data.get('version'))
    return jsonify({'success': True, 'match': match_view(match), 'outcome': outcome})


@app.route('/api/tournaments/<tournament_id>/matches/<match_id>/clear-reports', methods=['POST'])
@login_required
def api_clear_reports(tournament_id, match_id):
    data = _request_data()
    match = get_service().clear_reports(tournament_id, match_id, data.get('version'), actor=current_actor())
    return jsonify({'success': True, 'match': match_view(match)})


@app.route('/api/tournaments/<tournament_id>/matches/<match_id>/readvance', methods=['POST'])
@login_required
def api_readvance(tournament_id, match_id):
    """Re-apply a completed finals result to the bracket after a failed advancement."""
    service = get_service()
    match = service.readvance(tournament_id, match_id, actor=current_actor())
    return jsonify({'success': True, 'match': match_view(match), 'bracket': service.bracket(tournament_id)})


@app.route('/api/tournaments/<tournament_id>/review-queue', methods=['GET'])
@login_required
def api_review_queue(tournament_id):
    queue = get_service().review_queue(tournament_id)
    return jsonify({'success': True, 'queue': queue})


# -- standings and finals ---------------------------------------------------

@app.route('/api/tournaments/<tournament_id>/standings', methods=['GET'])
def api_standings(tournament_id):
    payload, etag = get_service().standings(tournament_id)
    if etag in request.if_none_match:
        response = Response(status=304)
        response.set_etag(etag)
        return response
    response = jsonify(payload)
    response.set_etag(etag)
    return response


@app.route('/api/tournaments/<tournament_id>/finals', methods=['POST'])
@login_required
def api_generate_finals(tournament_id):
    data = request.get_json(silent=True) or {}
    bracket = get_service().generate_finals(tournament_id, top_n=data.get('top_n', 8), actor=current_actor())
    return jsonify({'success': True, 'bracket': bracket}), 201


@app.route('/api/tournaments/<tournament_id>/finals', methods=['GET'])
def api_get_finals(tournament_id):
    return jsonify({'success': True, 'bracket': get_service().bracket(tournament_id)})


if __name__ == '__main__':
    app.run(debug=True, port=5000)
