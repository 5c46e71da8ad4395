"""
Flask extensions initialization.
Extensions are initialized here and bound to the app in the factory.
"""
from flask_sqlalchemy import SQLAlchemy

# Database
db = SQLAlchemy()


def init_extensions(app):
    """Initialize all extensions with the Flask app."""
    db.init_app(app)
