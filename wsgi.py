"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi sweep-staging
    gunicorn wsgi:app
"""

from studyport import create_app

app = create_app()
