"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi ptw init-db
    flask --app wsgi ptw run-timers
    flask --app wsgi db migrate -m "description"
    gunicorn wsgi:app
"""

from ptw import create_app

app = create_app()
