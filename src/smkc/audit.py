"""Append-only audit trail of tournament mutations."""
import logging
from datetime import datetime

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, store):
        self.store = store

    def record(self, tournament_id: str, action: str, actor: str = None, target: str = None,
               details: dict = None):
        """Append an entry. Failures are logged and never raised."""
        entry = {
            'action': action,
            'actor': actor,
            'target': target,
            'details': details or {},
            'timestamp': datetime.now().isoformat(),
        }
        try:
            self.store.append_audit(tournament_id, entry)
        except Exception as e:
            logger.warning(f'Failed to write audit entry {action} for {tournament_id}: {e}')

    def entries(self, tournament_id: str):
        return self.store.list_audit(tournament_id)
