"""WSGI entry point for the duty calculation service."""
from dutycalc.web import create_app

app = create_app()

if __name__ == "__main__":
    app.run()
