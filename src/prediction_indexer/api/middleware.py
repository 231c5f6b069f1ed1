"""CORS setup for the front end."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware


def setup_middleware(app: FastAPI, origins: list[str] | None = None) -> None:
    """Browsers on any origin may read status and open the push socket unless origins are given."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=False,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
