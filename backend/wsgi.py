# backend/wsgi.py
from opsledger import create_app

app = create_app()
