"""
extensions.py — Flask extension singletons.

Initialises SQLAlchemy as a module-level object so models can import it
without creating circular dependencies.

Pattern:
    1. Create the extension object here (no app attached yet).
    2. Call init_app(app) inside the app factory in authority/__init__.py.
    3. Import `db` from here wherever needed.

    from backend.authority.extensions import db

Do not pass the app object directly to SQLAlchemy() at import time — that
would prevent running tests with a separate test app instance.

The grant store does not use db.session: it opens its own short transactions
from a sessionmaker bound to db.engine (see services/grant_store.py), because
each consume/rotate must commit before the cache is touched.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
