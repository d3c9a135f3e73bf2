"""
Permission Decorators and Access Helpers
Access-token verification and masjid-scoped authority checks for API routes
"""
from functools import wraps
from typing import Optional
from flask import current_app, request
from flask_login import current_user
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from models import db, MasjidAdmin, Subscription, User
from utils.errors import ForbiddenError, UnauthorizedError


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(
        current_app.config['SECRET_KEY'],
        salt=current_app.config.get('ACCESS_TOKEN_SALT', 'access-token')
    )


def issue_access_token(user_id: str) -> str:
    """Signed access token carrying the user id"""
    return _serializer().dumps({'sub': user_id})


def read_access_token() -> Optional[str]:
    """Bearer header first, then the access-token cookie"""
    header = request.headers.get('Authorization', '')
    if header.lower().startswith('bearer '):
        return header[7:].strip() or None
    return request.cookies.get(current_app.config.get('ACCESS_TOKEN_COOKIE', 'accessToken'))


def load_user_from_token(token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    try:
        data = _serializer().loads(token, max_age=current_app.config.get('ACCESS_TOKEN_MAX_AGE', 86400))
    except SignatureExpired:
        current_app.logger.info('Expired access token presented')
        return None
    except BadSignature:
        current_app.logger.warning(f'Invalid access token from {request.remote_addr}')
        return None

    user = db.session.get(User, data.get('sub'))
    if user is None or not user.is_active:
        return None
    return user


def login_required(f):
    """
    Decorator to require an authenticated user
    Usage: @login_required
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            raise UnauthorizedError('Missing or invalid access token')
        return f(*args, **kwargs)
    return decorated_function


def is_masjid_admin(user: User, masjid_id: str) -> bool:
    if user.is_super_admin:
        return True
    return MasjidAdmin.query.filter_by(user_id=user.id, masjid_id=masjid_id).first() is not None


def require_masjid_authority(user: User, masjid_id: str):
    """Only masjid admins (or super admins) may manage schedules and broadcasts"""
    if not is_masjid_admin(user, masjid_id):
        raise ForbiddenError('Insufficient privileges', details={'masjidId': masjid_id})


def is_subscribed(user_id: str, masjid_id: str) -> bool:
    return Subscription.query.filter_by(user_id=user_id, masjid_id=masjid_id).first() is not None


def assert_subscribed(user_id: str, masjid_id: str):
    if not is_subscribed(user_id, masjid_id):
        raise ForbiddenError('Subscription required', details={'masjidId': masjid_id})


def assert_masjid_access(user: User, masjid_id: str):
    """Admins and subscribers may read a masjid's broadcasts"""
    if is_masjid_admin(user, masjid_id) or is_subscribed(user.id, masjid_id):
        return
    raise ForbiddenError('Insufficient privileges', details={'masjidId': masjid_id})
