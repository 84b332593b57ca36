# backend/wsgi.py
from remitcore import create_app

app = create_app()
