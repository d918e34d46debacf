from flask import Blueprint, g, jsonify, request

from ..auth import login_required
from ..services.trust_service import get_trust_score
from ..services.claim_service import (
    add_evidence,
    cancel_claim,
    create_claim,
    generate_code,
    get_claim,
    get_dispute,
    get_handover_status,
    get_questions,
    list_user_claims,
    open_dispute,
    redeem_code,
    submit_answers,
)

claim_bp = Blueprint('claims', __name__, url_prefix='/api')


def _json_body():
    return request.get_json(silent=True) or {}


@claim_bp.route('/claims', methods=['POST'])
@login_required
def create_claim_api():
    """Start a claim on a lost/found pair."""
    data = _json_body()
    claim = create_claim(g.actor, data.get('lost_report_id'), data.get('found_report_id'))
    return jsonify({'success': True, 'claim': claim}), 201


@claim_bp.route('/claims', methods=['GET'])
@login_required
def list_claims_api():
    claims = list_user_claims(g.actor, status=request.args.get('status'))
    return jsonify({'success': True, 'claims': claims, 'count': len(claims)}), 200


@claim_bp.route('/claims/<claim_id>', methods=['GET'])
@login_required
def get_claim_api(claim_id):
    return jsonify({'success': True, 'claim': get_claim(claim_id, g.actor)}), 200


@claim_bp.route('/claims/<claim_id>/cancel', methods=['POST'])
@login_required
def cancel_claim_api(claim_id):
    claim = cancel_claim(claim_id, g.actor)
    return jsonify({'success': True, 'message': 'Claim cancelled', 'claim': claim}), 200


# Verification challenge
@claim_bp.route('/claims/<claim_id>/questions', methods=['GET'])
@login_required
def get_questions_api(claim_id):
    return jsonify({'success': True, **get_questions(claim_id, g.actor)}), 200


@claim_bp.route('/claims/<claim_id>/verify', methods=['POST'])
@login_required
def verify_claim_api(claim_id):
    """Submit answers; a failed attempt is still a 200 with passed=false."""
    result = submit_answers(claim_id, g.actor, _json_body().get('answers'))
    return jsonify({'success': True, **result}), 200


# Handover
@claim_bp.route('/claims/<claim_id>/handover/otp', methods=['POST'])
@login_required
def generate_handover_code_api(claim_id):
    return jsonify({'success': True, **generate_code(claim_id, g.actor)}), 201


@claim_bp.route('/claims/<claim_id>/handover/verify', methods=['POST'])
@login_required
def redeem_handover_code_api(claim_id):
    result = redeem_code(claim_id, g.actor, _json_body().get('otp'))
    return jsonify({'success': True, **result}), 200


@claim_bp.route('/claims/<claim_id>/handover', methods=['GET'])
@login_required
def handover_status_api(claim_id):
    return jsonify({'success': True, **get_handover_status(claim_id, g.actor)}), 200


# Disputes
@claim_bp.route('/claims/<claim_id>/dispute', methods=['POST'])
@login_required
def open_dispute_api(claim_id):
    data = _json_body()
    dispute = open_dispute(claim_id, g.actor, data.get('reason'), data.get('evidence'))
    return jsonify({'success': True, 'dispute': dispute}), 201


@claim_bp.route('/disputes/<dispute_id>', methods=['GET'])
@login_required
def get_dispute_api(dispute_id):
    return jsonify({'success': True, 'dispute': get_dispute(dispute_id, g.actor)}), 200


@claim_bp.route('/disputes/<dispute_id>/evidence', methods=['POST'])
@login_required
def add_evidence_api(dispute_id):
    dispute = add_evidence(dispute_id, g.actor, _json_body().get('evidence'))
    return jsonify({'success': True, 'dispute': dispute}), 200


@claim_bp.route('/me/trust', methods=['GET'])
@login_required
def my_trust_api():
    return jsonify({'success': True, **get_trust_score(g.actor.user_id)}), 200
