"""
WSGI entry point: gunicorn -c gunicorn.conf.py entitlement_sync.wsgi:app
"""
from entitlement_sync.app import create_app

app = create_app()
