import subprocess

import pytest

from transcode import QUALITY_LADDER, TranscodeEngine


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "input.mp4"
    path.write_bytes(b"\x00" * 32)
    return str(path)


@pytest.fixture
def engine(tmp_path):
    return TranscodeEngine(str(tmp_path / "out"), "/files/uploads/videos")


def _fake_encoder(fail=(), calls=None):
    def fake_run(command, **kwargs):
        output = command[-1]
        height = command[command.index("-vf") + 1].split(":")[-1]
        if calls is not None:
            calls.append(height)
        if f"{height}p" in fail:
            raise subprocess.CalledProcessError(1, command, stderr="frame=0\nError while opening encoder")
        with open(output, "wb") as f:
            f.write(b"ok")
        return subprocess.CompletedProcess(command, 0, "", "")
    return fake_run


def test_ladder_is_fixed():
    assert [(q.name, q.video_bitrate) for q in QUALITY_LADDER] == [
        ("1080p", "4500k"), ("720p", "2500k"), ("480p", "1000k"),
    ]


def test_all_renditions_in_order(engine, source, monkeypatch):
    calls = []
    monkeypatch.setattr(subprocess, "run", _fake_encoder(calls=calls))
    result = engine.transcode(source, "movie")
    assert calls == ["1080", "720", "480"]
    assert result == {
        "1080p": "/files/uploads/videos/movie_1080p.mp4",
        "720p": "/files/uploads/videos/movie_720p.mp4",
        "480p": "/files/uploads/videos/movie_480p.mp4",
    }


def test_failed_720p_is_skipped(engine, source, monkeypatch, tmp_path):
    monkeypatch.setattr(subprocess, "run", _fake_encoder(fail={"720p"}))
    seen = []
    result = engine.transcode(source, "movie", on_rendition=lambda q, url: seen.append(q))
    assert set(result) == {"1080p", "480p"}
    assert seen == ["1080p", "480p"]
    assert not (tmp_path / "out" / "movie_720p.mp4").exists()


def test_missing_source_yields_no_renditions(engine, tmp_path, monkeypatch):
    monkeypatch.setattr(subprocess, "run", _fake_encoder())
    assert engine.transcode(str(tmp_path / "gone.mp4"), "gone") == {}


def test_encoder_missing_is_tolerated(engine, source, monkeypatch):
    def no_ffmpeg(command, **kwargs):
        raise FileNotFoundError("ffmpeg")
    monkeypatch.setattr(subprocess, "run", no_ffmpeg)
    assert engine.transcode(source, "movie") == {}


def test_command_shape(engine, tmp_path):
    cmd = engine.build_command("in.mp4", tmp_path / "o.mp4", QUALITY_LADDER[1])
    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-vf") + 1] == "scale=-2:720"
    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert cmd[cmd.index("-b:v") + 1] == "2500k"
    assert cmd[cmd.index("-c:a") + 1] == "aac"
