import itertools
import os
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from config import QueueConfig, Settings, StorageConfig, TmdbConfig
from database import initialize_db
from jobs import JobQueue
from storage import ObjectStoreGateway

ADMIN_HEADERS = {"X-Cinetron-User": "alice", "X-Cinetron-Is-Admin": "true"}
USER_HEADERS = {"X-Cinetron-User": "bob"}


# ─────────────────────────── fakes ───────────────────────────────────────────
class FakePaginator:
    def __init__(self, s3):
        self.s3 = s3

    def paginate(self, Bucket):
        if self.s3.fail_listing:
            raise ClientError({"Error": {"Code": "NoSuchBucket", "Message": "gone"}}, "ListObjectsV2")
        keys = sorted(self.s3.objects.get(Bucket, {}))
        for start in range(0, max(len(keys), 1), self.s3.page_size):
            chunk = keys[start:start + self.s3.page_size]
            yield {"Contents": [
                {"Key": k, "Size": self.s3.objects[Bucket][k], "LastModified": datetime.now(timezone.utc), "ETag": '"x"'}
                for k in chunk
            ]} if chunk else {}


class FakeS3:
    """Just enough of a boto3 S3 client for listing and presigning."""

    def __init__(self, objects=None, page_size=1000):
        self.objects = objects or {}
        self.page_size = page_size
        self.fail_listing = False
        self.presign_calls = []

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return FakePaginator(self)

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn, HttpMethod=None):
        self.presign_calls.append({"method": ClientMethod, "params": Params, "expires": ExpiresIn})
        return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?X-Amz-Expires={ExpiresIn}&X-Amz-Signature=sig"


class FakeRedis:
    """In-memory stand-in for the handful of stream commands JobQueue uses."""

    def __init__(self):
        self.streams = {}
        self.groups = set()
        self.delivered = set()
        self.acked = []
        self._ids = itertools.count(1)

    def xgroup_create(self, stream, group, id="0", mkstream=False):
        self.streams.setdefault(stream, [])
        self.groups.add((stream, group))

    def xadd(self, stream, fields):
        message_id = f"{next(self._ids)}-0".encode()
        self.streams.setdefault(stream, []).append(
            (message_id, {k.encode(): str(v).encode() for k, v in fields.items()})
        )
        return message_id

    def xreadgroup(self, group, consumer, streams, count=None, block=None):
        out = []
        for stream in streams:
            fresh = [m for m in self.streams.get(stream, []) if m[0] not in self.delivered]
            fresh = fresh[:count] if count else fresh
            for message_id, _ in fresh:
                self.delivered.add(message_id)
            if fresh:
                out.append((stream.encode(), fresh))
        return out

    def xack(self, stream, group, *ids):
        self.acked.extend(ids)
        return len(ids)

    def payloads(self, stream="media_jobs"):
        return [fields[b"payload"].decode() for _, fields in self.streams.get(stream, [])]


class FakeTranscoder:
    """TranscodeEngine stand-in; ``fail`` names the qualities that error out."""

    ladder = ("1080p", "720p", "480p")

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []

    def transcode(self, source, filename_base, on_rendition=None):
        self.calls.append((source, filename_base))
        produced = {}
        for q in self.ladder:
            if q in self.fail:
                continue
            url = f"/files/uploads/videos/{filename_base}_{q}.mp4"
            produced[q] = url
            if on_rendition:
                on_rendition(q, url)
        return produced


# ─────────────────────────── fixtures ────────────────────────────────────────
@pytest.fixture
def settings(tmp_path):
    media_root = tmp_path / "media"
    public_dir = tmp_path / "public"
    media_root.mkdir()
    public_dir.mkdir()
    s = Settings(
        database_path=str(tmp_path / "test.db"),
        media_root=str(media_root),
        public_dir=str(public_dir),
        storage=StorageConfig(bucket="videos"),
        tmdb=TmdbConfig(),
        queue=QueueConfig(consumer="test-worker"),
    )
    initialize_db(s.database_path)
    return s


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def gateway(settings, fake_s3):
    return ObjectStoreGateway(settings.storage, client=fake_s3)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def queue(settings, fake_redis):
    return JobQueue(fake_redis, settings.queue)


@pytest.fixture
def make_client(settings, gateway, queue):
    from fastapi.testclient import TestClient

    from main import create_app

    clients = []

    def _make(**overrides):
        overrides.setdefault("gateway", gateway)
        overrides.setdefault("queue", queue)
        client = TestClient(create_app(settings, **overrides))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def touch(path, data=b"\x00" * 16):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    return path
