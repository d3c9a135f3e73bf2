"""
Rate Limiting
Shared Flask-Limiter instance so blueprints can declare per-route limits
"""
from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_login import current_user

limiter = Limiter(key_func=get_remote_address)


def user_or_ip():
    """Authenticated callers are limited per user, others per address"""
    if current_user.is_authenticated:
        return f"user:{current_user.id}"
    return get_remote_address()


def configured(name):
    """Limit string read from config at request time"""
    return lambda: current_app.config[name]
