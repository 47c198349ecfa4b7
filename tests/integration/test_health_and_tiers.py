"""Integration tests for the health and pricing tier endpoints."""

from __future__ import annotations

import json
from decimal import Decimal

from fastapi.testclient import TestClient

from payproof import __version__
from payproof.config import get_settings
from payproof.server import deps
from payproof.server.app import create_app


def test_health_reports_version(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": __version__}


def test_pricing_tiers_lists_active_tiers_only(client):
    response = client.get("/pricing-tiers")
    assert response.status_code == 200
    tiers = {tier["id"]: tier for tier in response.json()}

    assert sorted(tiers) == ["regular", "student_senior", "volunteer"]
    assert Decimal(tiers["regular"]["price"]) == Decimal("500")
    assert Decimal(tiers["student_senior"]["price"]) == Decimal("300")
    assert tiers["volunteer"]["isActive"] is True


def test_pricing_tiers_read_from_file(tmp_path, monkeypatch):
    tiers_path = tmp_path / "tiers.json"
    tiers_path.write_text(
        json.dumps(
            [
                {"id": "regular", "name": "Regular", "price": "650", "isActive": True},
                {"id": "early_bird", "name": "Early Bird", "price": "450", "isActive": False},
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("PAYPROOF_PRICING_TIERS_PATH", str(tiers_path))
    get_settings.cache_clear()
    deps._cached_tiers.cache_clear()

    response = TestClient(create_app()).get("/pricing-tiers")

    assert [tier["id"] for tier in response.json()] == ["regular"]
    assert Decimal(response.json()[0]["price"]) == Decimal("650")
