"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi change-escalation-sweep
    gunicorn wsgi:app
"""

from change_engine import create_app

app = create_app()
