"""Pytest fixtures for web API tests.

Provides a Flask test client bound to a sync server on the test database.
"""

from __future__ import annotations

from typing import Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient

from casilisto.core.config import Config
from casilisto.core.database import Database
from casilisto.core.sync import create_sync_server


@pytest.fixture
def web_app(test_config: Config, test_db: Database) -> Generator[Flask, None, None]:
    """Create Flask app for testing.

    Args:
        test_config: Test configuration
        test_db: Server database fixture

    Yields:
        Flask application instance
    """
    app = create_sync_server(config=test_config, db=test_db)
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


@pytest.fixture
def code(client: FlaskClient) -> str:
    """Account created through the API."""
    response = client.post("/api/user/create", json={})
    assert response.status_code == 200
    return response.get_json()["code"]

