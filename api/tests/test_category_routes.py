from __future__ import annotations

import asyncio
import os
import threading
import time
from datetime import date, datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

import adcat.core.security as security
from adcat.core.config import get_settings
from adcat.main import app
from adcat.services.normalization import (
    DeduplicationStats,
    NormalizationJob,
    NormalizationStats,
    get_normalization_job,
)
from adcat.services.repository import (
    RepositoryDuplicateRuleError,
    RepositoryNotFoundError,
    RepositoryTransactionError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

AUTH_HEADERS = {"Authorization": "Bearer token"}


class FakeCategoryRepository:
    def __init__(self) -> None:
        now = datetime.now(timezone.utc)
        self.url_mappings: dict[int, dict[str, Any]] = {
            1: {"id": 1, "cleaned_url": "https://sportsbet.com.au/promo", "category": "Gambling", "created_at": now},
        }
        self.title_mappings: dict[int, dict[str, Any]] = {
            5: {
                "id": 5,
                "title": "Acme Sale",
                "category": "Retail",
                "translated_title": None,
                "created_at": now,
                "updated_at": now,
            },
        }
        self.fail_with: Exception | None = None
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def _record(self, name: str, **kwargs: Any) -> None:
        self.calls.append((name, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    async def list_url_mappings(self, **kwargs: Any) -> tuple[list[dict[str, Any]], int]:
        self._record("list_url_mappings", **kwargs)
        rows = list(self.url_mappings.values())
        return rows[kwargs["offset"] : kwargs["offset"] + kwargs["limit"]], len(rows)

    async def get_url_mapping(self, mapping_id: int) -> dict[str, Any]:
        self._record("get_url_mapping", mapping_id=mapping_id)
        if mapping_id not in self.url_mappings:
            raise RepositoryNotFoundError("url mapping not found")
        return self.url_mappings[mapping_id]

    async def create_url_mapping(self, *, url: str, category: str) -> dict[str, Any]:
        self._record("create_url_mapping", url=url, category=category)
        if any(row["cleaned_url"] == url for row in self.url_mappings.values()):
            raise RepositoryDuplicateRuleError("url mapping already exists")
        row = {"id": 2, "cleaned_url": url, "category": category, "created_at": datetime.now(timezone.utc)}
        self.url_mappings[2] = row
        return {"mapping": row, "ads_updated": 4}

    async def update_url_mapping(self, *, mapping_id: int, category: str) -> dict[str, Any]:
        self._record("update_url_mapping", mapping_id=mapping_id, category=category)
        if mapping_id not in self.url_mappings:
            raise RepositoryNotFoundError("url mapping not found")
        self.url_mappings[mapping_id]["category"] = category
        return {"mapping": self.url_mappings[mapping_id], "ads_updated": 2}

    async def delete_url_mapping(self, *, mapping_id: int) -> dict[str, Any]:
        self._record("delete_url_mapping", mapping_id=mapping_id)
        if self.url_mappings.pop(mapping_id, None) is None:
            raise RepositoryNotFoundError("url mapping not found")
        return {"deleted": True, "ads_updated": 0}

    async def list_title_mappings(self, **kwargs: Any) -> tuple[list[dict[str, Any]], int]:
        self._record("list_title_mappings", **kwargs)
        rows = list(self.title_mappings.values())
        return rows, len(rows)

    async def create_title_mapping(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_title_mapping", **kwargs)
        now = datetime.now(timezone.utc)
        row = {"id": 6, "created_at": now, "updated_at": now, **kwargs}
        return {"mapping": row, "ads_updated": 1}

    async def update_title_mapping(self, *, mapping_id: int, category: str, translated_title: str | None = None) -> dict[str, Any]:
        self._record("update_title_mapping", mapping_id=mapping_id, category=category)
        if mapping_id not in self.title_mappings:
            raise RepositoryNotFoundError("title mapping not found")
        self.title_mappings[mapping_id]["category"] = category
        return {"mapping": self.title_mappings[mapping_id], "ads_updated": 3}

    async def list_title_mapping_conflicts(self, *, limit: int) -> list[dict[str, Any]]:
        self._record("list_title_mapping_conflicts", limit=limit)
        return [
            {
                "title_mapping_id": 5,
                "title": "Acme Sale",
                "title_category": "Retail",
                "url_category": "Gambling",
                "ad_count": 7,
            }
        ]

    async def resolve_title_mapping_conflict(self, *, title_mapping_id: int, category: str) -> dict[str, Any]:
        return await self.update_title_mapping(mapping_id=title_mapping_id, category=category)

    async def categorize_ad(self, **kwargs: Any) -> dict[str, Any]:
        self._record("categorize_ad", **kwargs)
        return {
            "url_mapping_count": 2,
            "title_mapping_count": 1,
            "url_mapping_created": True,
            "title_mapping_created": kwargs["title"] is not None,
        }

    async def mark_uninteresting(self, **kwargs: Any) -> dict[str, Any]:
        self._record("mark_uninteresting", **kwargs)
        return {"rows_deleted": 3}

    async def merge_categories(self, *, source_labels: list[str], target: str) -> dict[str, int]:
        self._record("merge_categories", source_labels=source_labels, target=target)
        if target in source_labels:
            raise RepositoryValidationError("target category cannot be one of the source categories")
        return {"mappings_updated": 1, "title_mappings_updated": 2, "ads_updated": 30}

    async def list_categories(self) -> list[str]:
        self._record("list_categories")
        return ["Gambling", "Retail"]

    async def list_category_counts(self, **kwargs: Any) -> list[dict[str, Any]]:
        self._record("list_category_counts", **kwargs)
        return [{"category": "Retail", "mapping_count": 1, "title_mapping_count": 1, "ad_count": 12}]


@pytest.fixture
def fake_repo() -> FakeCategoryRepository:
    return FakeCategoryRepository()


@pytest.fixture
def client(fake_repo: FakeCategoryRepository) -> TestClient:
    os.environ["ADCAT_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["ADCAT_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: fake_repo

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    os.environ.pop("ADCAT_SUPABASE_URL", None)
    os.environ.pop("ADCAT_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, role: str | None) -> None:
    user: dict[str, Any] = {"id": f"{role or 'viewer'}-1", "app_metadata": {"role": role} if role else {}}

    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def test_routes_require_bearer_token(client: TestClient) -> None:
    assert client.get("/mappings").status_code == 401
    assert client.get("/mappings", headers={"Authorization": "Basic abc"}).status_code == 401


def test_user_role_can_read_but_not_write(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, None)

    listed = client.get("/mappings", headers=AUTH_HEADERS)
    assert listed.status_code == 200
    body = listed.json()
    assert body["total"] == 1
    assert body["mappings"][0]["cleanedUrl"] == "https://sportsbet.com.au/promo"
    assert "createdAt" in body["mappings"][0]

    created = client.post("/mappings", json={"url": "https://acme.com", "category": "Retail"}, headers=AUTH_HEADERS)
    assert created.status_code == 403


def test_user_metadata_role_is_not_trusted(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return {"id": "sneaky-1", "app_metadata": {}, "user_metadata": {"role": "admin"}}

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)
    response = client.put("/ads/category", json={"landingPage": "https://a.com", "category": "X"}, headers=AUTH_HEADERS)
    assert response.status_code == 403


def test_list_query_parameters_use_camel_case(
    client: TestClient, fake_repo: FakeCategoryRepository, monkeypatch: pytest.MonkeyPatch
) -> None:
    _mock_supabase_user(monkeypatch, "operator")

    response = client.get(
        "/mappings",
        params={"search": "sports", "sortBy": "category", "sortDir": "asc", "limit": 10, "offset": 0},
        headers=AUTH_HEADERS,
    )
    assert response.status_code == 200
    assert fake_repo.calls[-1] == (
        "list_url_mappings",
        {"search": "sports", "sort_by": "category", "sort_dir": "asc", "limit": 10, "offset": 0},
    )

    invalid = client.get("/mappings", params={"sortBy": "drop table"}, headers=AUTH_HEADERS)
    assert invalid.status_code == 422


def test_create_url_mapping_returns_created_and_staging_count(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    _mock_supabase_user(monkeypatch, "operator")

    response = client.post("/mappings", json={"url": "https://acme.com/", "category": "Retail"}, headers=AUTH_HEADERS)
    assert response.status_code == 201
    body = response.json()
    assert body["stagingRowsUpdated"] == 4
    assert body["mapping"]["cleanedUrl"] == "https://acme.com/"

    duplicate = client.post("/mappings", json={"url": "https://acme.com/", "category": "Retail"}, headers=AUTH_HEADERS)
    assert duplicate.status_code == 409


def test_url_mapping_update_and_delete_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, "admin")

    updated = client.put("/mappings/1", json={"category": "Betting"}, headers=AUTH_HEADERS)
    assert updated.status_code == 200
    assert updated.json()["mapping"]["category"] == "Betting"
    assert updated.json()["stagingRowsUpdated"] == 2

    assert client.put("/mappings/99", json={"category": "X"}, headers=AUTH_HEADERS).status_code == 404
    assert client.get("/mappings/99", headers=AUTH_HEADERS).status_code == 404

    deleted = client.delete("/mappings/1", headers=AUTH_HEADERS)
    assert deleted.status_code == 200
    assert deleted.json() == {"deleted": True, "stagingRowsUpdated": 0}
    assert client.delete("/mappings/1", headers=AUTH_HEADERS).status_code == 404


@pytest.mark.parametrize(
    ("error", "expected_status"),
    [
        (RepositoryValidationError("url must be a non-empty string"), 422),
        (RepositoryTransactionError("database transaction failed and was rolled back"), 500),
        (RepositoryUnavailableError("database unavailable"), 503),
    ],
)
def test_repository_errors_map_to_status_codes(
    client: TestClient,
    fake_repo: FakeCategoryRepository,
    monkeypatch: pytest.MonkeyPatch,
    error: Exception,
    expected_status: int,
) -> None:
    _mock_supabase_user(monkeypatch, "operator")
    fake_repo.fail_with = error

    response = client.post("/mappings", json={"url": "https://acme.com", "category": "Retail"}, headers=AUTH_HEADERS)
    assert response.status_code == expected_status
    assert response.json()["detail"] == str(error)


def test_title_mapping_routes_use_title_mapping_envelope(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, "operator")

    listed = client.get("/title-mappings", headers=AUTH_HEADERS)
    assert listed.status_code == 200
    assert listed.json()["titleMappings"][0]["title"] == "Acme Sale"

    created = client.post(
        "/title-mappings",
        json={"title": "Bet Now", "category": "Gambling", "translatedTitle": "Wette jetzt"},
        headers=AUTH_HEADERS,
    )
    assert created.status_code == 201
    assert created.json()["adsUpdated"] == 1
    assert created.json()["titleMapping"]["translatedTitle"] == "Wette jetzt"


def test_conflicts_list_and_resolve(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, "operator")

    conflicts = client.get("/title-mappings/conflicts", headers=AUTH_HEADERS)
    assert conflicts.status_code == 200
    assert conflicts.json() == [
        {"titleMappingId": 5, "title": "Acme Sale", "titleCategory": "Retail", "urlCategory": "Gambling", "adCount": 7}
    ]

    resolved = client.post(
        "/title-mappings/conflicts/resolve",
        json={"titleMappingId": 5, "category": "Gambling"},
        headers=AUTH_HEADERS,
    )
    assert resolved.status_code == 200
    assert resolved.json()["titleMapping"]["category"] == "Gambling"
    assert resolved.json()["adsUpdated"] == 3

    missing = client.post(
        "/title-mappings/conflicts/resolve",
        json={"titleMappingId": 404, "category": "Gambling"},
        headers=AUTH_HEADERS,
    )
    assert missing.status_code == 404


def test_categorize_and_mark_uninteresting(
    client: TestClient, fake_repo: FakeCategoryRepository, monkeypatch: pytest.MonkeyPatch
) -> None:
    _mock_supabase_user(monkeypatch, "operator")

    categorized = client.put(
        "/ads/category",
        json={"landingPage": "https://www.sportsbet.com.au/promo?ref=1", "category": "Gambling", "title": "Bet Now"},
        headers=AUTH_HEADERS,
    )
    assert categorized.status_code == 200
    assert categorized.json() == {
        "urlMappingCount": 2,
        "titleMappingCount": 1,
        "urlMappingCreated": True,
        "titleMappingCreated": True,
    }
    assert fake_repo.calls[-1][1]["landing_page"] == "https://www.sportsbet.com.au/promo?ref=1"

    removed = client.post("/ads/uninterested", json={"landingPage": "https://spam.example.com"}, headers=AUTH_HEADERS)
    assert removed.status_code == 200
    assert removed.json() == {"rowsDeleted": 3}

    missing_field = client.put("/ads/category", json={"category": "Gambling"}, headers=AUTH_HEADERS)
    assert missing_field.status_code == 422


def test_merge_and_rename_alias(
    client: TestClient, fake_repo: FakeCategoryRepository, monkeypatch: pytest.MonkeyPatch
) -> None:
    _mock_supabase_user(monkeypatch, "admin")

    merged = client.post(
        "/categories/merge",
        json={"oldCategories": ["Bets", "Betting"], "newCategory": "Gambling"},
        headers=AUTH_HEADERS,
    )
    assert merged.status_code == 200
    assert merged.json() == {"mappingsUpdated": 1, "titleMappingsUpdated": 2, "adsUpdated": 30}

    renamed = client.post(
        "/categories/rename",
        json={"oldCategory": "Shoes", "newCategory": "Footwear"},
        headers=AUTH_HEADERS,
    )
    assert renamed.status_code == 200
    assert fake_repo.calls[-1] == ("merge_categories", {"source_labels": ["Shoes"], "target": "Footwear"})

    refused = client.post(
        "/categories/merge",
        json={"oldCategories": ["A", "B"], "newCategory": "A"},
        headers=AUTH_HEADERS,
    )
    assert refused.status_code == 422


def test_category_listing_and_counts(
    client: TestClient, fake_repo: FakeCategoryRepository, monkeypatch: pytest.MonkeyPatch
) -> None:
    _mock_supabase_user(monkeypatch, None)

    assert client.get("/categories", headers=AUTH_HEADERS).json() == ["Gambling", "Retail"]

    counts = client.get(
        "/categories/all",
        params={"country": "AU", "startDate": "2026-01-01", "endDate": "2026-01-31"},
        headers=AUTH_HEADERS,
    )
    assert counts.status_code == 200
    assert counts.json() == [{"category": "Retail", "mappingCount": 1, "titleMappingCount": 1, "adCount": 12}]
    assert fake_repo.calls[-1] == (
        "list_category_counts",
        {"country": "AU", "start_date": date(2026, 1, 1), "end_date": date(2026, 1, 31)},
    )

    backwards = client.get(
        "/categories/all",
        params={"startDate": "2026-02-01", "endDate": "2026-01-01"},
        headers=AUTH_HEADERS,
    )
    assert backwards.status_code == 422


def test_normalise_is_single_flight(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, "operator")
    gate = threading.Event()

    async def runner() -> NormalizationStats:
        while not gate.is_set():
            await asyncio.sleep(0.01)
        return NormalizationStats(deduplicated=DeduplicationStats(url_mappings=1, ads=260, title_mappings=0))

    job = NormalizationJob(runner)
    app.dependency_overrides[get_normalization_job] = lambda: job

    idle = client.get("/categories/normalise/status", headers=AUTH_HEADERS)
    assert idle.json()["status"] == "idle"

    started = client.post("/categories/normalise", headers=AUTH_HEADERS)
    assert started.status_code == 202
    assert started.json()["status"] == "running"
    assert started.json()["startedAt"] is not None

    again = client.post("/categories/normalise", headers=AUTH_HEADERS)
    assert again.status_code == 200
    assert again.json()["status"] == "running"
    assert again.json()["startedAt"] == started.json()["startedAt"]

    gate.set()
    body: dict[str, Any] = {}
    for _ in range(500):
        body = client.get("/categories/normalise/status", headers=AUTH_HEADERS).json()
        if body["status"] != "running":
            break
        time.sleep(0.01)

    assert body["status"] == "completed"
    assert body["error"] is None
    assert body["stats"] == {
        "deduplicated": {"urlMappings": 1, "ads": 260, "titleMappings": 0},
        "backcategorised": {
            "urlMappingsFixed": 0,
            "titleMappingsFixed": 0,
            "adsFromUrlMappings": 0,
            "adsFromTitleMappings": 0,
        },
    }


def test_normalise_requires_write_scope(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, "user")
    assert client.post("/categories/normalise", headers=AUTH_HEADERS).status_code == 403
    assert client.get("/categories/normalise/status", headers=AUTH_HEADERS).status_code == 200
