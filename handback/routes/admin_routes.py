from flask import Blueprint, g, jsonify, request

from .. import clock
from ..auth import admin_required
from ..services import scheduler_service
from ..services.audit_service import list_audit_entries
from ..services.claim_service import expire_stale_claims, list_disputes, mark_under_review, resolve_dispute
from ..services.report_service import expire_inactive_reports
from ..services.trust_service import get_trust_score, recalculate_trust

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


# =============================
# Disputes
# =============================
@admin_bp.route('/api/disputes', methods=['GET'])
@admin_required
def list_disputes_api():
    result = list_disputes(g.actor, request.args.get('status'), request.args.get('limit', 20))
    return jsonify({'success': True, 'count': len(result['disputes']), **result}), 200


@admin_bp.route('/api/disputes/<dispute_id>/review', methods=['POST'])
@admin_required
def review_dispute_api(dispute_id):
    data = request.get_json(silent=True) or {}
    dispute = mark_under_review(dispute_id, g.actor, data.get('notes'))
    return jsonify({'success': True, 'dispute': dispute}), 200


@admin_bp.route('/api/disputes/<dispute_id>/resolve', methods=['POST'])
@admin_required
def resolve_dispute_api(dispute_id):
    data = request.get_json(silent=True) or {}
    result = resolve_dispute(dispute_id, g.actor, data.get('outcome'), data.get('notes'))
    return jsonify({'success': True, **result}), 200


# =============================
# Trust scores
# =============================
@admin_bp.route('/api/users/<user_id>/trust', methods=['GET'])
@admin_required
def get_trust_api(user_id):
    return jsonify({'success': True, **get_trust_score(user_id)}), 200


@admin_bp.route('/api/users/<user_id>/recalculate-trust', methods=['POST'])
@admin_required
def recalculate_trust_api(user_id):
    return jsonify({'success': True, **recalculate_trust(user_id)}), 200


# =============================
# Audit trail
# =============================
@admin_bp.route('/api/audit/<resource_type>/<resource_id>', methods=['GET'])
@admin_required
def audit_trail_api(resource_type, resource_id):
    entries = list_audit_entries(resource_type, resource_id)
    for entry in entries:
        for key in ('timestamp', 'committed_at', 'aborted_at'):
            if key in entry:
                entry[key] = clock.isoformat_or_none(entry[key])
    return jsonify({'success': True, 'entries': entries}), 200


# =============================
# Sweeps & scheduler
# =============================
@admin_bp.route('/api/sweeps/expire-claims', methods=['POST'])
@admin_required
def expire_claims_api():
    return jsonify({'success': True, **expire_stale_claims()}), 200


@admin_bp.route('/api/sweeps/expire-reports', methods=['POST'])
@admin_required
def expire_reports_api():
    return jsonify({'success': True, **expire_inactive_reports()}), 200


@admin_bp.route('/api/scheduler/status', methods=['GET'])
@admin_required
def scheduler_status_api():
    return jsonify({'success': True, **scheduler_service.get_scheduler_status()}), 200
