"""ASGI entrypoint: `uvicorn chatrelay.api.app:app`."""

from .factory import create_app

app = create_app()
