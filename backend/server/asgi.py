"""
ASGI entry point for the relay.

    uvicorn server.asgi:app --app-dir backend

Environment (including .env) is read once, before the app is built.
"""

from dotenv import load_dotenv

load_dotenv()

from server.app import create_app  # pylint: disable=wrong-import-position

app = create_app()
