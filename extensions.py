"""
Shared Flask extension instances.

Created as a separate module to avoid circular imports when route
blueprints need access to extensions that are initialised in server.py.
"""

import os

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Redis in production, in-memory for a single process
_storage_uri = os.environ.get("REDIS_URL") or "memory://"

# init_app() is called from server.create_app
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_storage_uri,
    default_limits=["100 per minute"],
)
