import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

load_dotenv()

from handback import config
from handback.auth import configure_session
from handback.errors import ClaimError, StorageError
from handback.routes.admin_routes import admin_bp
from handback.routes.claim_routes import claim_bp
from handback.routes.report_routes import report_bp
from handback.services.scheduler_service import start_scheduler, stop_scheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def register_error_handlers(app):
    @app.errorhandler(ClaimError)
    def handle_claim_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(StorageError)
    def handle_storage_error(e):
        logger.error("Storage failure: %s", e)
        return jsonify({'error': 'Storage unavailable, please retry', 'code': 'STORAGE_ERROR'}), 500

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({'error': e.description, 'code': e.name.upper().replace(' ', '_')}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        logger.exception("Unhandled error")
        return jsonify({'error': 'Internal server error'}), 500


def create_app(test_config=None):
    app = Flask(__name__)
    app.secret_key = os.environ.get('SECRET_KEY') or os.urandom(24)
    if test_config:
        app.config.update(test_config)

    # Enable CORS for all routes
    CORS(app)

    configure_session(app)

    app.register_blueprint(report_bp)
    app.register_blueprint(claim_bp)
    app.register_blueprint(admin_bp)
    register_error_handlers(app)

    @app.route('/api/health')
    def health():
        return jsonify({'status': 'ok', 'store': config.STORE_BACKEND}), 200

    return app


if __name__ == '__main__':
    app = create_app()
    if config.SCHEDULER_ENABLED:
        start_scheduler()
        logger.info("🚀 Handback scheduler started - claim and report expiry enabled")
    try:
        # Allow overriding host/port via environment for testing
        host = os.environ.get('HOST', '0.0.0.0')
        port = int(os.environ.get('PORT', '5000'))
        app.run(debug=os.environ.get('FLASK_DEBUG') == '1', host=host, port=port)
    finally:
        # Ensure scheduler is stopped when app shuts down
        stop_scheduler()
