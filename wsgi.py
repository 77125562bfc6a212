"""
WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi expire-reviews   # cron: expire overdue reviews
    flask --app wsgi db init          # first time only (creates migrations/)
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
"""

from flowdesk import create_app

app = create_app()
