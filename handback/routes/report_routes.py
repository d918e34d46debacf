from flask import Blueprint, g, jsonify, request

from ..auth import login_required
from ..services.matching_service import find_matches, find_matches_for_found_report
from ..services.report_service import (
    create_found_report,
    create_lost_report,
    delete_lost_report,
    get_found_report,
    get_lost_report,
    replace_secret_questions,
)

report_bp = Blueprint('reports', __name__, url_prefix='/api')


@report_bp.route('/lost-reports', methods=['POST'])
@login_required
def create_lost_report_api():
    """Submit a lost report with three secret questions."""
    report = create_lost_report(g.actor, request.get_json(silent=True) or {})
    return jsonify({'success': True, 'lost_report': report}), 201


@report_bp.route('/lost-reports/<report_id>', methods=['GET'])
@login_required
def get_lost_report_api(report_id):
    return jsonify({'success': True, 'lost_report': get_lost_report(report_id, g.actor)}), 200


@report_bp.route('/lost-reports/<report_id>', methods=['DELETE'])
@login_required
def delete_lost_report_api(report_id):
    return jsonify({'success': True, **delete_lost_report(report_id, g.actor)}), 200


@report_bp.route('/lost-reports/<report_id>/questions', methods=['PUT'])
@login_required
def replace_questions_api(report_id):
    data = request.get_json(silent=True) or {}
    report = replace_secret_questions(report_id, g.actor, data.get('secret_questions'))
    return jsonify({'success': True, 'lost_report': report}), 200


@report_bp.route('/lost-reports/<report_id>/matches', methods=['GET'])
@login_required
def lost_report_matches_api(report_id):
    """Top scored found-report candidates for a lost report."""
    matches = find_matches(report_id, g.actor)
    return jsonify({'success': True, 'lost_report_id': report_id, 'matches': matches}), 200


@report_bp.route('/found-reports', methods=['POST'])
@login_required
def create_found_report_api():
    report = create_found_report(g.actor, request.get_json(silent=True) or {})
    return jsonify({'success': True, 'found_report': report}), 201


@report_bp.route('/found-reports/<report_id>', methods=['GET'])
@login_required
def get_found_report_api(report_id):
    return jsonify({'success': True, 'found_report': get_found_report(report_id)}), 200


@report_bp.route('/found-reports/<report_id>/matches', methods=['GET'])
@login_required
def found_report_matches_api(report_id):
    matches = find_matches_for_found_report(report_id, g.actor)
    return jsonify({'success': True, 'found_report_id': report_id, 'matches': matches}), 200
