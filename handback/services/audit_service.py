"""
Audit Service
Write-ahead audit trail for claim lifecycle transitions.

Every mutating operation opens an intent entry before its transaction runs.
The transaction itself flips the entry to COMMITTED together with the state
change, so a committed transition can never be missing its record. If the
operation fails the entry is closed as ABORTED with the error code.
"""
import logging
import uuid
from contextlib import contextmanager

from .. import clock
from ..database import get_store
from ..errors import ClaimError
from ..models import AUDIT_LOGS

_logger = logging.getLogger(__name__)

PHASE_INTENT = 'INTENT'
PHASE_COMMITTED = 'COMMITTED'
PHASE_ABORTED = 'ABORTED'


class AuditIntent:
    """Handle for one in-flight audited operation."""

    def __init__(self, entry_id, action, resource_type, resource_id, actor_id):
        self.entry_id = entry_id
        self.action = action
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.actor_id = actor_id

    def commit(self, txn, before=None, after=None, **extra):
        """
        Record the transition inside the caller's transaction (write phase only).

        Args:
            txn: the open transaction
            before (dict): relevant fields before the transition
            after (dict): the same fields after it
            extra: additional context stored with the entry
        """
        fields = {
            'phase': PHASE_COMMITTED,
            'before': before or {},
            'after': after or {},
            'committed_at': clock.utcnow(),
        }
        if extra:
            fields['context'] = extra
        txn.update(AUDIT_LOGS, self.entry_id, fields)


@contextmanager
def audited(action, resource_type, resource_id, actor_id, reason=None):
    """
    Open a write-ahead audit entry around a lifecycle operation.

    Usage:
        with audited('claim.cancel', 'claim', claim_id, actor.user_id) as intent:
            store.run_transaction(lambda txn: _cancel(txn, intent))
    """
    entry_id = f"AL{uuid.uuid4().hex[:12].upper()}"
    store = get_store()
    store.set(AUDIT_LOGS, entry_id, {
        'entry_id': entry_id,
        'phase': PHASE_INTENT,
        'action': action,
        'resource_type': resource_type,
        'resource_id': resource_id,
        'actor_id': actor_id,
        'reason': reason,
        'timestamp': clock.utcnow(),
    })
    _logger.info("%s %s/%s by %s", action, resource_type, resource_id, actor_id)
    intent = AuditIntent(entry_id, action, resource_type, resource_id, actor_id)
    try:
        yield intent
    except ClaimError as e:
        _abort(store, intent, e.code, e.message)
        raise
    except Exception as e:
        _abort(store, intent, 'INTERNAL', str(e))
        raise


def _abort(store, intent, code, message):
    try:
        entry = store.get(AUDIT_LOGS, intent.entry_id) or {}
        if entry.get('phase') == PHASE_COMMITTED:
            # The transition is durable; an error raised after commit does not undo it
            return
    except Exception as e:
        _logger.error("Could not read audit entry %s: %s", intent.entry_id, e)
    _logger.info("%s %s/%s aborted: %s", intent.action, intent.resource_type, intent.resource_id, code)
    try:
        store.update(AUDIT_LOGS, intent.entry_id, {
            'phase': PHASE_ABORTED,
            'error_code': code,
            'error_message': message,
            'aborted_at': clock.utcnow(),
        })
    except Exception as e:
        # The original failure is what the caller must see
        _logger.error("Could not close audit entry %s: %s", intent.entry_id, e)


def list_audit_entries(resource_type, resource_id):
    """Return audit entries for a resource, oldest first."""
    entries = get_store().query(AUDIT_LOGS, [
        ('resource_type', '==', resource_type),
        ('resource_id', '==', resource_id),
    ])
    entries.sort(key=lambda e: clock.as_utc(e.get('timestamp')))
    return entries
