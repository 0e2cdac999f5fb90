"""WSGI entry point: `gunicorn wsgi:app` or `python wsgi.py` for a local terminal."""
import os

from pos_checkout import create_app

app = create_app(os.getenv('POS_CONFIG', 'config.Config'))

if __name__ == "__main__":
    app.run(port=int(os.getenv('PORT', '5000')))
