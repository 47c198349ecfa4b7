"""Shared pytest fixtures for the Payproof test suite."""

from __future__ import annotations

from typing import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from payproof.config import get_settings
from payproof.db.repository import reset_repository_state
from payproof.models.registration import RegistrationDraft
from payproof.server.app import create_app
from tests.utils import FakeRegistrationStore, make_draft, make_png


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Ensure each test uses an isolated SQLite database and blob root."""

    monkeypatch.setenv("PAYPROOF_DATABASE_PATH", str(tmp_path / "test_payproof.db"))
    monkeypatch.setenv("PAYPROOF_BLOB_ROOT", str(tmp_path / "blobs"))
    get_settings.cache_clear()
    reset_repository_state()
    yield
    reset_repository_state()
    get_settings.cache_clear()


@pytest.fixture()
def app() -> Generator[FastAPI, None, None]:
    """Create a new FastAPI app instance for each test and reset overrides."""

    application = create_app()
    yield application
    application.dependency_overrides.clear()


@pytest.fixture()
def client(app) -> TestClient:
    """Return a test client bound to the FastAPI app."""

    return TestClient(app)


@pytest.fixture()
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture()
def draft() -> RegistrationDraft:
    return make_draft()


@pytest.fixture()
def fake_store() -> FakeRegistrationStore:
    return FakeRegistrationStore()
