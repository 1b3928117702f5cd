# backend/wsgi.py
from possettle import create_app

app = create_app()
