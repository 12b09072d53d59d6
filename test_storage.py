from botocore.exceptions import ClientError
import pytest

from config import StorageConfig
from storage import (
    PLAYBACK_URL_TTL,
    ObjectStoreGateway,
    StorageUnavailable,
    format_store_locator,
    parse_store_locator,
)


def test_locator_splits_on_first_two_colons_only():
    locator = parse_store_locator("store:media:shows/a:b:c.mkv")
    assert locator.bucket == "media"
    assert locator.key == "shows/a:b:c.mkv"
    assert format_store_locator(locator.bucket, locator.key) == "store:media:shows/a:b:c.mkv"


@pytest.mark.parametrize("path", ["store:onlybucket", "store:", "store::key", "store:bucket:", "/local/file.mp4"])
def test_malformed_locators(path):
    assert parse_store_locator(path) is None


def test_list_all_pages_through_bucket(fake_s3):
    fake_s3.page_size = 2
    fake_s3.objects = {"videos": {"a.mp4": 1, "b/c.mkv": 2, "d.txt": 3}}
    gw = ObjectStoreGateway(StorageConfig(bucket="videos"), client=fake_s3)
    keys = [o.key for o in gw.list_all("videos")]
    assert keys == ["a.mp4", "b/c.mkv", "d.txt"]


def test_list_all_wraps_backend_errors(fake_s3):
    fake_s3.fail_listing = True
    gw = ObjectStoreGateway(StorageConfig(bucket="videos"), client=fake_s3)
    with pytest.raises(StorageUnavailable):
        list(gw.list_all("videos"))


def test_presign_records_ttl_exactly(gateway, fake_s3):
    url = gateway.presign("videos", "movie.mp4", 10800)
    assert url.startswith("https://s3.test/videos/movie.mp4")
    assert fake_s3.presign_calls == [
        {"method": "get_object", "params": {"Bucket": "videos", "Key": "movie.mp4"}, "expires": 10800}
    ]
    assert PLAYBACK_URL_TTL == 10800


def test_presign_locator_malformed_returns_none(gateway, fake_s3):
    assert gateway.presign_locator("store:onlybucket") is None
    assert fake_s3.presign_calls == []


def test_presign_backend_error_returns_none(gateway, fake_s3, monkeypatch):
    def boom(**kwargs):
        raise ClientError({"Error": {"Code": "AccessDenied", "Message": "no"}}, "GetObject")

    monkeypatch.setattr(fake_s3, "generate_presigned_url", boom)
    assert gateway.presign("videos", "movie.mp4") is None
