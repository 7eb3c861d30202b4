"""Pytest fixtures for sync endpoint tests.

Provides a Flask test client over a temporary event store.
"""

from __future__ import annotations

from typing import Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient

from fieldsync.event_store import EventStore
from fieldsync.sync import create_sync_server


@pytest.fixture
def web_app(event_store: EventStore) -> Generator[Flask, None, None]:
    """Create Flask app for testing.

    Args:
        event_store: Event store fixture (fake clock)

    Yields:
        Flask application instance
    """
    app = create_sync_server(event_store)
    app.config["TESTING"] = True
    yield app


@pytest.fixture
def client(web_app: Flask) -> FlaskClient:
    """Create Flask test client.

    Args:
        web_app: Flask application

    Returns:
        Flask test client for making requests
    """
    return web_app.test_client()

