from functools import wraps

import structlog
from firebase_admin import auth as firebase_auth
from flask import current_app, g, jsonify, request

from quizsync.firebase_init import get_auth

logger = structlog.get_logger(__name__)


def verify_firebase_token(id_token):
    """Return the uid of a Firebase ID token, or None if it is not valid."""
    try:
        decoded = get_auth().verify_id_token(id_token, check_revoked=True)
    except (firebase_auth.InvalidIdTokenError, firebase_auth.RevokedIdTokenError,
            firebase_auth.UserDisabledError, firebase_auth.CertificateFetchError,
            ValueError) as e:
        logger.info('rejected id token', error=str(e))
        return None
    return decoded.get('uid')


def _bearer_token():
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def uid_for_token(token):
    if not token:
        return None
    verifier = current_app.config.get('QUIZSYNC_TOKEN_VERIFIER') or verify_firebase_token
    return verifier(token)


def load_current_uid():
    """Resolve the signed-in user into g.uid once per request."""
    if hasattr(g, 'uid'):
        return g.uid
    g.uid = uid_for_token(_bearer_token())
    return g.uid


def auth_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not load_current_uid():
            return jsonify({'error': 'Sign in required', 'code': 'not_signed_in'}), 401
        return f(*args, **kwargs)
    return decorated
