from __future__ import annotations

import hashlib

import pytest
from fastapi.testclient import TestClient

from matrixci.store.main import create_app
from matrixci.store.settings import StoreSettings


@pytest.fixture
def client(tmp_path):
    settings = StoreSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'db' / 'store.db'}",
        storage_dir=str(tmp_path / "blobs"),
    )
    with TestClient(create_app(settings)) as c:
        yield c


def _put(client, identity, body, filename):
    return client.put(
        f"/runs/run1/artifacts/{identity}",
        content=body,
        headers={"X-Filename": filename, "Content-Type": "application/octet-stream"},
    )


def test_put_then_download(client):
    r = _put(client, "app-Linux", b"archive-bytes", "app-Linux.tar.gz")
    assert r.status_code == 200
    data = r.json()
    assert data["identity"] == "app-Linux"
    assert data["filename"] == "app-Linux.tar.gz"
    assert data["size"] == len(b"archive-bytes")
    assert data["sha256"] == hashlib.sha256(b"archive-bytes").hexdigest()
    assert data["location"] == "/runs/run1/artifacts/app-Linux"

    r = client.get(data["location"])
    assert r.status_code == 200
    assert r.content == b"archive-bytes"


def test_same_identity_overwrites(client):
    _put(client, "app-Windows", b"v1", "app-Windows.zip")
    _put(client, "app-Windows", b"v2", "app-Windows.zip")

    listed = client.get("/runs/run1/artifacts").json()
    assert [a["identity"] for a in listed] == ["app-Windows"]
    assert client.get("/runs/run1/artifacts/app-Windows").content == b"v2"


def test_list_is_per_run(client):
    _put(client, "b", b"1", "b.tar.gz")
    _put(client, "a", b"2", "a.zip")
    assert [a["identity"] for a in client.get("/runs/run1/artifacts").json()] == ["a", "b"]
    assert client.get("/runs/other/artifacts").json() == []


def test_unknown_artifact(client):
    assert client.get("/runs/run1/artifacts/nothing").status_code == 404


def test_invalid_names_rejected(client):
    r = _put(client, "app", b"x", ".hidden")
    assert r.status_code == 400
