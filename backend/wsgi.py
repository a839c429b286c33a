# backend/wsgi.py
from rxledger import create_app

app = create_app()
