"""
Report service for lost and found reports.
Stores secret answers only as one-way hashes in a separate collection that is
never returned to any caller.
"""
import logging
import uuid
from datetime import datetime, timedelta

from .. import clock, config
from ..database import get_store
from ..errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from ..models import (
    CLAIM_LOCKS,
    CLAIMS,
    FOUND_REPORTS,
    LOST_REPORTS,
    REPORT_SECRETS,
    Category,
    FoundReportStatus,
    LostReportStatus,
)
from .crypto_service import hash_answer
from .question_strength_service import analyze_question_strength, find_leaked_answers
from .status_service import ACTIVE_CLAIM_STATUSES

_logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 2000

_TIMESTAMP_FIELDS = ('lost_at', 'found_at', 'created_at', 'updated_at')


def generate_report_id(prefix):
    """Generate a unique report ID such as LR1A2B3C4D."""
    return f"{prefix}{uuid.uuid4().hex[:8].upper()}"


def _parse_timestamp(value, field_name):
    if not value:
        raise ValidationError(f"{field_name} is required", details={'field': field_name})
    if isinstance(value, datetime):
        return clock.as_utc(value)
    raw = str(value).strip()
    try:
        if 'T' in raw or ' ' in raw:
            return clock.as_utc(datetime.fromisoformat(raw.replace('Z', '+00:00')))
        # Date only; stored as midnight UTC
        return clock.as_utc(datetime.strptime(raw, '%Y-%m-%d'))
    except ValueError:
        raise ValidationError(f"Invalid {field_name} format", details={'field': field_name})


def _required_text(data, field_name, max_length):
    value = str(data.get(field_name) or '').strip()
    if not value:
        raise ValidationError(f"{field_name} is required", details={'field': field_name})
    if len(value) > max_length:
        raise ValidationError(f"{field_name} must be at most {max_length} characters", details={'field': field_name})
    return value


def _parse_category(value):
    try:
        return Category(str(value or '').strip().upper()).value
    except ValueError:
        raise ValidationError(
            'Invalid category',
            details={'field': 'category', 'allowed': [c.value for c in Category]},
        )


def _common_fields(data):
    return {
        'category': _parse_category(data.get('category')),
        'title': _required_text(data, 'title', MAX_TITLE_LENGTH),
        'description': str(data.get('description') or '').strip()[:MAX_DESCRIPTION_LENGTH],
        'location_area': _required_text(data, 'location_area', MAX_TITLE_LENGTH),
    }


def _parse_secret_questions(questions):
    if not isinstance(questions, list) or len(questions) != config.SECRET_QUESTION_COUNT:
        raise ValidationError(
            f"Exactly {config.SECRET_QUESTION_COUNT} secret questions are required",
            details={'field': 'secret_questions'},
        )
    texts, answers = [], []
    for i, item in enumerate(questions):
        if not isinstance(item, dict):
            raise ValidationError('Each secret question must have a question and an answer',
                                  details={'field': f'secret_questions[{i}]'})
        question = str(item.get('question') or '').strip()
        answer = item.get('answer')
        if not question or not isinstance(answer, str) or not answer.strip():
            raise ValidationError('Each secret question must have a question and an answer',
                                  details={'field': f'secret_questions[{i}]'})
        texts.append(question)
        answers.append(answer)
    return texts, answers


def _rate_secret_questions(texts, answers, category, title, description):
    """Refuse answers readable from the report itself, then rate the set."""
    leaked = find_leaked_answers(answers, title, description)
    if leaked:
        raise ValidationError(
            'A secret answer appears in the report title or description',
            details={'field': f'secret_questions[{leaked[0]}]'},
        )
    return analyze_question_strength(texts, answers, category)


def _serialize(doc, drop=()):
    out = {}
    for key, value in doc.items():
        if key in drop:
            continue
        if key in _TIMESTAMP_FIELDS:
            value = clock.isoformat_or_none(value)
        out[key] = value
    return out


def public_lost_report(doc, include_questions=False):
    """Lost report as returned by the API; secret answers are never part of it."""
    drop = ('rejected_found_report_ids', 'claim_count')
    if not include_questions:
        drop += ('question_texts', 'verification_strength')
    return _serialize(doc, drop=drop)


def public_found_report(doc):
    return _serialize(doc)


# ----------------------------------------------------------------------
# Lost reports
# ----------------------------------------------------------------------

def create_lost_report(actor, data):
    """
    Create a lost report with its three secret questions.

    Args:
        actor (Actor): reporting user, becomes the owner
        data (dict): category, title, description, location_area, lost_at,
            secret_questions [{question, answer}] x3

    Returns:
        dict: the public report
    """
    data = data or {}
    fields = _common_fields(data)
    lost_at = _parse_timestamp(data.get('lost_at'), 'lost_at')
    question_texts, answers = _parse_secret_questions(data.get('secret_questions'))
    strength = _rate_secret_questions(question_texts, answers, fields['category'],
                                      fields['title'], fields['description'])
    answer_hashes = [hash_answer(a) for a in answers]

    now = clock.utcnow()
    report_id = generate_report_id('LR')
    report = {
        'lost_report_id': report_id,
        'owner_id': actor.user_id,
        **fields,
        'lost_at': lost_at,
        'status': LostReportStatus.ACTIVE.value,
        'question_texts': question_texts,
        'verification_strength': strength,
        'rejected_found_report_ids': [],
        'claim_count': 0,
        'created_at': now,
        'updated_at': now,
    }

    def _create(txn):
        txn.create(LOST_REPORTS, report_id, report)
        txn.create(REPORT_SECRETS, report_id, {
            'lost_report_id': report_id,
            'answer_hashes': answer_hashes,
            'updated_at': now,
        })

    get_store().run_transaction(_create)
    _logger.info("Lost report %s created by %s (%s), questions %s",
                 report_id, actor.user_id, fields['category'], strength['overall_strength'])
    return public_lost_report(report, include_questions=True)


def get_lost_report(report_id, actor=None):
    report = get_store().get(LOST_REPORTS, report_id)
    if not report:
        raise NotFoundError('Lost report not found')
    is_owner = actor is not None and (actor.is_admin or actor.user_id == report.get('owner_id'))
    return public_lost_report(report, include_questions=is_owner)


def get_question_texts(report_id):
    report = get_store().get(LOST_REPORTS, report_id)
    if not report:
        raise NotFoundError('Lost report not found')
    return list(report.get('question_texts') or [])


def load_answer_hashes(report_id):
    """Stored answer hashes for verification. Internal use only."""
    secrets_doc = get_store().get(REPORT_SECRETS, report_id)
    hashes = (secrets_doc or {}).get('answer_hashes') or []
    if len(hashes) != config.SECRET_QUESTION_COUNT:
        raise InvalidStateError('Secret questions are not configured for this report')
    return hashes


def replace_secret_questions(report_id, actor, questions):
    """Replace the secret questions; only allowed before any claim references the report."""
    question_texts, answers = _parse_secret_questions(questions)
    answer_hashes = [hash_answer(a) for a in answers]

    def _replace(txn):
        report = txn.get(LOST_REPORTS, report_id)
        if not report:
            raise NotFoundError('Lost report not found')
        if report.get('owner_id') != actor.user_id:
            raise ForbiddenError('Only the owner can change secret questions')
        if report.get('claim_count', 0) > 0:
            raise InvalidStateError('Secret answers cannot change once a claim references the report')
        strength = _rate_secret_questions(question_texts, answers, report.get('category'),
                                          report.get('title'), report.get('description'))
        now = clock.utcnow()
        updates = {'question_texts': question_texts, 'verification_strength': strength, 'updated_at': now}
        txn.update(LOST_REPORTS, report_id, updates)
        txn.set(REPORT_SECRETS, report_id, {
            'lost_report_id': report_id,
            'answer_hashes': answer_hashes,
            'updated_at': now,
        })
        report.update(updates)
        return report

    report = get_store().run_transaction(_replace)
    _logger.info("Secret questions replaced on lost report %s", report_id)
    return public_lost_report(report, include_questions=True)


def delete_lost_report(report_id, actor):
    """Delete a lost report unless a non-terminal claim holds it."""

    def _delete(txn):
        report = txn.get(LOST_REPORTS, report_id)
        if not report:
            raise NotFoundError('Lost report not found')
        if report.get('owner_id') != actor.user_id and not actor.is_admin:
            raise ForbiddenError('Only the owner can delete this report')
        lock = txn.get(CLAIM_LOCKS, report_id)
        if lock:
            raise ConflictError('Report has an active claim and cannot be deleted',
                                details={'claim_id': lock.get('claim_id')})
        txn.delete(LOST_REPORTS, report_id)
        txn.delete(REPORT_SECRETS, report_id)

    get_store().run_transaction(_delete)
    _logger.info("Lost report %s deleted by %s", report_id, actor.user_id)
    return {'deleted': True, 'lost_report_id': report_id}


# ----------------------------------------------------------------------
# Found reports
# ----------------------------------------------------------------------

def create_found_report(actor, data):
    """Create a found report; cooperative staff file on behalf of their cooperative."""
    data = data or {}
    fields = _common_fields(data)
    found_at = _parse_timestamp(data.get('found_at'), 'found_at')
    cooperative_id = actor.cooperative_id if actor.is_coop_staff else None

    now = clock.utcnow()
    report_id = generate_report_id('FR')
    report = {
        'found_report_id': report_id,
        'finder_id': actor.user_id,
        'cooperative_id': cooperative_id,
        **fields,
        'found_at': found_at,
        'status': FoundReportStatus.UNCLAIMED.value,
        'created_at': now,
        'updated_at': now,
    }
    get_store().run_transaction(lambda txn: txn.create(FOUND_REPORTS, report_id, report))
    _logger.info("Found report %s created by %s (%s)", report_id, actor.user_id, fields['category'])
    return public_found_report(report)


def get_found_report(report_id):
    report = get_store().get(FOUND_REPORTS, report_id)
    if not report:
        raise NotFoundError('Found report not found')
    return public_found_report(report)


# ----------------------------------------------------------------------
# Expiry sweep
# ----------------------------------------------------------------------

def _expire_one(collection, report_id, stale_status, cutoff, guard):
    def _expire(txn):
        report = txn.get(collection, report_id)
        if not report or report.get('status') != stale_status:
            return False
        if clock.as_utc(report.get('updated_at')) >= cutoff:
            return False
        if guard(txn, report):
            return False
        txn.update(collection, report_id, {'status': 'EXPIRED', 'updated_at': clock.utcnow()})
        return True

    return get_store().run_transaction(_expire)


def _found_report_guard(found_report_id):
    """
    Build an in-transaction check for live claims on a found report.

    Claims created after the query bump the found report's updated_at in
    their own transaction, so the sweep's read of the report conflicts
    with them and the rerun sees a fresh report.
    """
    claim_ids = [c['claim_id'] for c in get_store().query(CLAIMS, [('found_report_id', '==', found_report_id)])]

    def _in_use(txn, report):
        for claim_id in claim_ids:
            claim = txn.get(CLAIMS, claim_id)
            if claim and claim.get('status') in ACTIVE_CLAIM_STATUSES:
                return True
        return False

    return _in_use


def expire_inactive_reports(now=None):
    """
    Expire ACTIVE lost reports and UNCLAIMED found reports untouched for
    REPORT_EXPIRY_DAYS. Reports tied to a live claim are left alone.

    Returns:
        dict: counts of expired lost and found reports
    """
    now = now or clock.utcnow()
    cutoff = now - timedelta(days=config.REPORT_EXPIRY_DAYS)
    store = get_store()
    expired_lost = expired_found = 0

    for report in store.query(LOST_REPORTS, [('status', '==', LostReportStatus.ACTIVE.value)]):
        if clock.as_utc(report.get('updated_at')) >= cutoff:
            continue
        if _expire_one(LOST_REPORTS, report['lost_report_id'],
                       LostReportStatus.ACTIVE.value, cutoff,
                       lambda txn, r: txn.get(CLAIM_LOCKS, r['lost_report_id']) is not None):
            expired_lost += 1

    for report in store.query(FOUND_REPORTS, [('status', '==', FoundReportStatus.UNCLAIMED.value)]):
        if clock.as_utc(report.get('updated_at')) >= cutoff:
            continue
        if _expire_one(FOUND_REPORTS, report['found_report_id'],
                       FoundReportStatus.UNCLAIMED.value, cutoff,
                       _found_report_guard(report['found_report_id'])):
            expired_found += 1

    _logger.info("Report expiry sweep: %d lost, %d found expired", expired_lost, expired_found)
    return {'expired_lost_reports': expired_lost, 'expired_found_reports': expired_found}
