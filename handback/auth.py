from datetime import timedelta
from functools import wraps

from flask import g, jsonify, session

from .models import Actor, Role


def configure_session(app):
    """Configure session settings"""
    app.permanent_session_lifetime = timedelta(minutes=30)  # Session expires after 30 minutes

    @app.before_request
    def before_request():
        session.permanent = True
        session.modified = True


def is_authenticated():
    """Check if user is authenticated"""
    return 'user_id' in session


def is_admin():
    """Check if authenticated user is an admin"""
    return is_authenticated() and session.get('role') == Role.ADMIN.value


def current_actor():
    """
    The caller as recorded in the session by the login service.
    Unknown roles are treated as citizens.
    """
    if not is_authenticated():
        return None
    try:
        role = Role(session.get('role') or Role.CITIZEN.value)
    except ValueError:
        role = Role.CITIZEN
    return Actor(
        user_id=str(session['user_id']),
        role=role,
        cooperative_id=session.get('cooperative_id'),
    )


def login_required(f):
    """Decorator to require an authenticated session; exposes the caller as g.actor"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = current_actor()
        if actor is None:
            return jsonify({'error': 'Authentication required', 'code': 'UNAUTHORIZED'}), 401
        g.actor = actor
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """Decorator to require admin authentication for a route"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = current_actor()
        if actor is None:
            return jsonify({'error': 'Authentication required', 'code': 'UNAUTHORIZED'}), 401
        if not actor.is_admin:
            return jsonify({'error': 'Admin access required', 'code': 'FORBIDDEN'}), 403
        g.actor = actor
        return f(*args, **kwargs)
    return decorated_function
