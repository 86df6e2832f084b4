"""Shared fixtures for grailsync tests."""

from __future__ import annotations

import math
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from grailsync.config import DiscogsConfig
from grailsync.storage.database import Database
from grailsync.sync.discogs import DiscogsClient


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all grailsync runtime files to a temporary directory.

    Patches ``grailsync.config.get_base_dir`` so that nothing touches the
    real ``~/.grailsync/``.
    """
    fake_base = tmp_path / ".grailsync"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("grailsync.config.get_base_dir", lambda: fake_base)

    return fake_base


@pytest_asyncio.fixture()
async def db(tmp_path: Path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


# ---------------------------------------------------------------------------
# Fake Discogs API
# ---------------------------------------------------------------------------


def raw_release(
    release_id: int,
    *,
    title: str | None = None,
    artist: str = "Artist",
    folder_id: int = 1,
    notes: list[dict] | None = None,
    year: int | None = 1977,
) -> dict:
    """A ``releases[]`` entry as returned by the collection endpoint."""
    return {
        "id": release_id,
        "instance_id": release_id * 10,
        "folder_id": folder_id,
        "date_added": "2024-03-01T10:00:00-08:00",
        "notes": notes or [],
        "basic_information": {
            "id": release_id,
            "title": title or f"Record {release_id}",
            "year": year,
            "thumb": f"https://img.example/{release_id}-thumb.jpg",
            "cover_image": f"https://img.example/{release_id}.jpg",
            "artists": [{"name": artist, "anv": ""}],
            "labels": [{"name": "Label", "catno": f"CAT-{release_id}"}],
            "formats": [{"name": "Vinyl", "descriptions": ["LP", "Album"]}],
        },
    }


def raw_want(release_id: int, *, title: str | None = None) -> dict:
    return {
        "id": release_id,
        "basic_information": {
            "id": release_id,
            "title": title or f"Want {release_id}",
            "year": 1999,
            "thumb": "",
            "cover_image": "",
            "artists": [{"name": "Wanted Artist (2)"}],
            "labels": [{"name": "Label", "catno": "W-1"}],
        },
    }


class FakeDiscogs:
    """In-memory Discogs API served through ``httpx.MockTransport``."""

    def __init__(self, username: str = "digger") -> None:
        self.username = username
        self.avatar_url = "https://img.example/avatar.png"
        self.folders = [{"id": 0, "name": "All"}, {"id": 1, "name": "Uncategorized"}, {"id": 2, "name": "Jazz"}]
        self.fields = [
            {"id": 1, "name": "Media Condition"},
            {"id": 2, "name": "Sleeve Condition"},
            {"id": 3, "name": "Notes"},
        ]
        self.releases: list[dict] = []
        self.wants: list[dict] = []
        self.value = {"minimum": "$100.00", "median": "$250.50", "maximum": "$400.00"}
        self.prices = {
            "Mint (M)": {"currency": "USD", "value": 40.0},
            "Near Mint (NM or M-)": {"currency": "USD", "value": 32.5},
            "Very Good Plus (VG+)": {"currency": "USD", "value": 25.0},
            "Very Good (VG)": {"currency": "USD", "value": 15.0},
        }
        # path suffix -> status code to return instead of a normal response
        self.fail: dict[str, int] = {}
        self.calls: list[str] = []
        self.page_size = 2

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        for fragment, status in self.fail.items():
            if path.endswith(fragment):
                return httpx.Response(status, text="nope")

        user = f"/users/{self.username}"
        if path == "/oauth/identity":
            return httpx.Response(200, json={"id": 1, "username": self.username})
        if path == user:
            return httpx.Response(200, json={"username": self.username, "avatar_url": self.avatar_url})
        if path == f"{user}/collection/folders":
            return httpx.Response(200, json={"folders": self.folders})
        if path == f"{user}/collection/fields":
            return httpx.Response(200, json={"fields": self.fields})
        if path == f"{user}/collection/folders/0/releases":
            return self._page(request, self.releases, "releases")
        if path == f"{user}/wants":
            return self._page(request, self.wants, "wants")
        if path == f"{user}/collection/value":
            return httpx.Response(200, json=self.value)
        if path.startswith("/marketplace/price_suggestions/"):
            return httpx.Response(200, json=self.prices)
        if path.startswith("/marketplace/stats/"):
            return httpx.Response(
                200,
                json={"lowest_price": {"currency": "USD", "value": 12.0}, "num_for_sale": 7, "blocked_from_sale": False},
            )
        return httpx.Response(404, json={"message": "The requested resource was not found."})

    def _page(self, request: httpx.Request, entries: list[dict], key: str) -> httpx.Response:
        per_page = int(request.url.params["per_page"])
        page = int(request.url.params["page"])
        pages = max(1, math.ceil(len(entries) / per_page))
        chunk = entries[(page - 1) * per_page : page * per_page]
        return httpx.Response(
            200,
            json={
                "pagination": {"page": page, "pages": pages, "per_page": per_page, "items": len(entries)},
                key: chunk,
            },
        )

    def count(self, fragment: str) -> int:
        return sum(1 for p in self.calls if fragment in p)

    def factory(self, credential) -> DiscogsClient:
        return DiscogsClient(
            credential,
            DiscogsConfig(consumer_key="ck", consumer_secret="cs"),
            page_size=self.page_size,
            page_delay=0,
            _transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture()
def fake_discogs() -> FakeDiscogs:
    fake = FakeDiscogs()
    fake.releases = [raw_release(101, artist="Miles Davis"), raw_release(102), raw_release(103, folder_id=2)]
    fake.wants = [raw_want(901)]
    return fake


@pytest.fixture()
def make_release():
    return raw_release


@pytest.fixture()
def make_want():
    return raw_want
