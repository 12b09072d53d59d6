from conftest import ADMIN_HEADERS, USER_HEADERS


def _media(client, path="/srv/media/a.mp4"):
    return client.post("/media", json={"title": "A", "storage_path": path}, headers=ADMIN_HEADERS).json()["id"]


def test_progress_last_write_wins(client):
    media_id = _media(client)
    assert client.put(f"/history/{media_id}", json={"progress_seconds": 120}, headers=USER_HEADERS).status_code == 200
    client.put(f"/history/{media_id}", json={"progress_seconds": 30}, headers=USER_HEADERS)

    assert client.get(f"/history/{media_id}", headers=USER_HEADERS).json()["progress_seconds"] == 30
    listed = client.get("/history/", headers=USER_HEADERS).json()
    assert [(h["id"], h["progress_seconds"]) for h in listed] == [(media_id, 30)]


def test_progress_is_per_user(client):
    media_id = _media(client)
    client.put(f"/history/{media_id}", json={"progress_seconds": 5}, headers=USER_HEADERS)
    assert client.get(f"/history/{media_id}", headers=ADMIN_HEADERS).json() == {}


def test_progress_validation_and_unknown_media(client):
    media_id = _media(client)
    assert client.put(f"/history/{media_id}", json={"progress_seconds": -1}, headers=USER_HEADERS).status_code == 422
    assert client.put("/history/missing", json={"progress_seconds": 1}, headers=USER_HEADERS).status_code == 404


def test_clear_progress(client):
    media_id = _media(client)
    client.put(f"/history/{media_id}", json={"progress_seconds": 5}, headers=USER_HEADERS)
    client.delete(f"/history/{media_id}", headers=USER_HEADERS)
    assert client.get(f"/history/{media_id}", headers=USER_HEADERS).json() == {}


def test_favorites_are_a_set(client):
    media_id = _media(client)
    client.put(f"/favorites/{media_id}", headers=USER_HEADERS)
    client.put(f"/favorites/{media_id}", headers=USER_HEADERS)
    assert [f["id"] for f in client.get("/favorites", headers=USER_HEADERS).json()] == [media_id]

    client.delete(f"/favorites/{media_id}", headers=USER_HEADERS)
    assert client.get("/favorites", headers=USER_HEADERS).json() == []
    assert client.put("/favorites/missing", headers=USER_HEADERS).status_code == 404
