"""
Authentication Routes for Lawnly Backend
Handles email login, JWT issuing and resolving the calling actor.
"""

from flask import Blueprint, request, jsonify, current_app
import jwt
import datetime
import logging
from functools import wraps

from models import db, User
from extensions import limiter
from errors import Unauthorized

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')


class Actor:
    """The authenticated caller of a booking command."""

    def __init__(self, user, contractor=None):
        self.user = user
        self.contractor = contractor

    @property
    def user_id(self):
        return self.user.id

    @property
    def role(self):
        return self.user.role

    @property
    def is_admin(self):
        return self.user.role == 'admin'

    @property
    def is_contractor(self):
        return self.contractor is not None

    @property
    def contractor_id(self):
        return self.contractor.id if self.contractor else None

    def __repr__(self):
        return '<Actor {} {}>'.format(self.role, self.user_id)


# MARK: - Helper Functions

def generate_token(user_id):
    """Generate JWT token for user"""
    payload = {
        'user_id': user_id,
        'exp': datetime.datetime.now(datetime.timezone.utc)
        + datetime.timedelta(days=current_app.config.get('JWT_EXPIRY_DAYS', 30)),
    }
    return jwt.encode(payload, current_app.config['JWT_SECRET'], algorithm='HS256')


def verify_token(token):
    """Verify JWT token and return user_id"""
    try:
        payload = jwt.decode(token, current_app.config['JWT_SECRET'], algorithms=['HS256'])
        return payload.get('user_id')
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def require_auth(f):
    """Decorator to require authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = request.headers.get('Authorization', '').replace('Bearer ', '')
        user_id = verify_token(token) if token else None
        if not user_id or not db.session.get(User, user_id):
            return jsonify({'error': 'Unauthorized'}), 401
        return f(user_id=user_id, *args, **kwargs)
    return decorated_function


def load_actor(user_id):
    """Resolve a user id into an Actor with its contractor profile, if any."""
    user = db.session.get(User, user_id)
    if user is None:
        raise Unauthorized('Unknown user')
    return Actor(user, user.contractor_profile)


def require_contractor(actor):
    if not actor.is_contractor:
        raise Unauthorized('Contractor profile required')


# MARK: - Routes

@auth_bp.route('/signup', methods=['POST'])
@limiter.limit("3 per minute")
def signup():
    """Create a customer account with email and password"""
    data = request.get_json(force=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    name = data.get('name')

    if not email or not password:
        return jsonify({'error': 'Email and password required'}), 400
    if len(password) < 8:
        return jsonify({'error': 'Password must be at least 8 characters'}), 400
    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'An account with this email already exists'}), 409

    user = User(email=email, name=name, role='customer')
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    logger.info("New customer signup %s", user.id)

    return jsonify({
        'success': True,
        'token': generate_token(user.id),
        'user': user.to_dict(),
    }), 201


@auth_bp.route('/login', methods=['POST'])
@limiter.limit("5 per minute")
def login():
    """Login with email and password"""
    data = request.get_json(force=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password')

    if not email or not password:
        return jsonify({'error': 'Email and password required'}), 400

    db_user = User.query.filter_by(email=email).first()
    if not db_user or not db_user.check_password(password):
        return jsonify({'error': 'Invalid email or password'}), 401

    return jsonify({
        'success': True,
        'token': generate_token(db_user.id),
        'user': db_user.to_dict(),
    })


@auth_bp.route('/me', methods=['GET'])
@require_auth
def get_current_user(user_id):
    """Get current authenticated user profile"""
    actor = load_actor(user_id)
    payload = actor.user.to_dict()
    if actor.contractor:
        payload['contractor'] = actor.contractor.to_dict()
    return jsonify({'success': True, 'user': payload})
