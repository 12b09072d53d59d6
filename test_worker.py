import pytest

from config import TmdbConfig
from conftest import FakeTranscoder, touch
from context import build_context
from database import get_db_connection, get_media, insert_media, list_media
from jobs import Delivery, EnrichJob, ScanJob, TranscodeJob, enqueue_transcode
from tmdb import MetadataBundle, MetadataResolver
from transcode import TranscodeFailed
from worker import handle_enrich, handle_scan, handle_transcode, process_delivery


class StubResolver(MetadataResolver):
    def __init__(self, bundle):
        super().__init__(TmdbConfig(api_key="k"))
        self.bundle = bundle
        self.calls = []

    def resolve(self, title, year=None, media_type="movie", external_id=None, file_name=None):
        self.calls.append((title, year, media_type, external_id, file_name))
        return self.bundle


@pytest.fixture
def ctx(settings, gateway, queue):
    return build_context(settings, gateway=gateway, queue=queue, transcoder=FakeTranscoder())


def _insert(ctx, **fields):
    conn = ctx.connect()
    try:
        return insert_media(conn, **fields)
    finally:
        conn.close()


def _get(ctx, media_id):
    conn = get_db_connection(ctx.settings.database_path)
    try:
        return get_media(conn, media_id)
    finally:
        conn.close()


def test_transcode_local_complete(ctx, tmp_path):
    src = touch(str(tmp_path / "Big Buck Bunny.mp4"))
    media = _insert(ctx, title="Bunny", storage_path=src, needs_transcode=True)

    produced = handle_transcode(ctx, TranscodeJob(media_id=media["id"]))

    assert set(produced) == {"1080p", "720p", "480p"}
    assert ctx.transcoder.calls == [(src, "Big Buck Bunny")]
    record = _get(ctx, media["id"])
    assert record["transcode_state"] == "complete"
    assert record["renditions"]["720p"] == "/files/uploads/videos/Big Buck Bunny_720p.mp4"
    assert record["processed"] is True


def test_transcode_partial(ctx, tmp_path):
    ctx.transcoder = FakeTranscoder(fail={"720p"})
    src = touch(str(tmp_path / "clip.mkv"))
    media = _insert(ctx, title="Clip", storage_path=src, needs_transcode=True)

    handle_transcode(ctx, TranscodeJob(media_id=media["id"]))

    record = _get(ctx, media["id"])
    assert set(record["renditions"]) == {"1080p", "480p"}
    assert record["transcode_state"] == "partially_complete"
    assert record["processed"] is True


def test_transcode_remote_source_is_presigned(ctx, fake_s3):
    media = _insert(ctx, title="Remote", storage_path="store:videos:in/remote.mov")
    handle_transcode(ctx, TranscodeJob(media_id=media["id"]))
    source, base = ctx.transcoder.calls[0]
    assert source.startswith("https://s3.test/videos/in/remote.mov")
    assert base == "remote"


def test_transcode_nothing_produced_raises(ctx, tmp_path):
    ctx.transcoder = FakeTranscoder(fail={"1080p", "720p", "480p"})
    src = touch(str(tmp_path / "bad.mp4"))
    media = _insert(ctx, title="Bad", storage_path=src, needs_transcode=True)

    with pytest.raises(TranscodeFailed):
        handle_transcode(ctx, TranscodeJob(media_id=media["id"]))
    record = _get(ctx, media["id"])
    assert record["transcode_state"] == "not_started"
    assert record["processed"] is False


def test_transcode_deleted_media_is_noop(ctx):
    assert handle_transcode(ctx, TranscodeJob(media_id="gone")) == {}
    assert ctx.transcoder.calls == []


def test_enrich_patches_record(ctx):
    media = _insert(ctx, title="The Matrix", year=1999, storage_path="/m/The Matrix (1999).mkv",
                    original_file_name="The Matrix (1999).mkv", poster_url="https://placehold.co/x")
    bundle = MetadataBundle(title="The Matrix", year=1999, overview="Neo.", poster_url="https://img/p.jpg",
                            backdrop_url="https://img/b.jpg", cast=["Keanu Reeves"], genres=["Action"],
                            tmdb_id=603, found=True)
    ctx.resolver = StubResolver(bundle)

    handle_enrich(ctx, EnrichJob(media_id=media["id"], external_id="tt0133093"))

    assert ctx.resolver.calls == [("The Matrix", 1999, "movie", "tt0133093", "The Matrix (1999).mkv")]
    record = _get(ctx, media["id"])
    assert record["overview"] == "Neo."
    assert record["poster_url"] == "https://img/p.jpg"
    assert record["cast_members"] == ["Keanu Reeves"]
    assert record["genres"] == ["Action"]
    assert record["tmdb_id"] == 603


def test_enrich_miss_keeps_existing_metadata(ctx):
    media = _insert(ctx, title="Home Video", storage_path="/m/home.mp4", overview="Auto-detected from file: home.mp4",
                    poster_url="https://placehold.co/existing")
    ctx.resolver = StubResolver(MetadataBundle(title="Home Video", poster_url="https://placehold.co/new"))

    handle_enrich(ctx, EnrichJob(media_id=media["id"]))

    record = _get(ctx, media["id"])
    assert record["poster_url"] == "https://placehold.co/existing"
    assert record["overview"] == "Auto-detected from file: home.mp4"


def test_scan_job(ctx):
    touch(ctx.settings.media_root + "/Up (2009).mp4")
    result = handle_scan(ctx, ScanJob())
    assert result.added == 1


def test_process_delivery_acks_success(ctx, fake_redis, tmp_path):
    src = touch(str(tmp_path / "ok.mp4"))
    media = _insert(ctx, title="Ok", storage_path=src, needs_transcode=True)
    enqueue_transcode(ctx.queue, media["id"])
    [delivery] = ctx.queue.read(block_ms=0)

    assert process_delivery(ctx, delivery) is True
    assert fake_redis.acked == [delivery.message_id]


def test_process_delivery_retries_failures(ctx, fake_redis, tmp_path):
    ctx.transcoder = FakeTranscoder(fail={"1080p", "720p", "480p"})
    src = touch(str(tmp_path / "bad.mp4"))
    media = _insert(ctx, title="Bad", storage_path=src, needs_transcode=True)
    enqueue_transcode(ctx.queue, media["id"])

    for expected_attempts in (0, 1, 2):
        [delivery] = ctx.queue.read(block_ms=0)
        assert delivery.attempts == expected_attempts
        assert process_delivery(ctx, delivery) is False
    assert ctx.queue.read(block_ms=0) == []
    assert len(fake_redis.acked) == 3


def test_process_delivery_drops_invalid(ctx, fake_redis):
    delivery = Delivery("9-0", "garbage", 0, None, "Invalid job payload")
    assert process_delivery(ctx, delivery) is False
    assert fake_redis.acked == ["9-0"]


def test_failed_ladder_keeps_scanned_item_ready(ctx):
    touch(ctx.settings.media_root + "/Heat (1995).mp4")
    handle_scan(ctx, ScanJob())
    [record] = [r for r in _all(ctx) if r["title"] == "Heat"]
    assert record["processed"] is True

    ctx.transcoder = FakeTranscoder(fail={"1080p", "720p", "480p"})
    with pytest.raises(TranscodeFailed):
        handle_transcode(ctx, TranscodeJob(media_id=record["id"]))

    after = _get(ctx, record["id"])
    assert after["needs_transcode"] is False
    assert after["transcode_state"] == "not_started"
    assert after["processed"] is True


def test_failed_retranscode_keeps_previous_state(ctx, tmp_path):
    src = touch(str(tmp_path / "done.mp4"))
    media = _insert(ctx, title="Done", storage_path=src, needs_transcode=True)
    handle_transcode(ctx, TranscodeJob(media_id=media["id"]))
    assert _get(ctx, media["id"])["transcode_state"] == "complete"

    ctx.transcoder = FakeTranscoder(fail={"1080p", "720p", "480p"})
    with pytest.raises(TranscodeFailed):
        handle_transcode(ctx, TranscodeJob(media_id=media["id"]))

    after = _get(ctx, media["id"])
    assert after["transcode_state"] == "complete"
    assert after["processed"] is True


def _all(ctx):
    conn = ctx.connect()
    try:
        return list_media(conn)
    finally:
        conn.close()
