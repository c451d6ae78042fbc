"""Tests for the local directory blob sink."""

import pytest

from chatrelay.infra.blob_sink import LocalDirectorySink, file_extension


class TestFileExtension:
    @pytest.mark.parametrize(
        "mime,ext",
        [
            ("image/jpeg", "jpg"),
            ("audio/ogg; codecs=opus", "ogg"),
            ("application/pdf", "pdf"),
            ("video/mp4", "mp4"),
            ("IMAGE/PNG", "png"),
            ("application/x-unknown", "bin"),
            (None, "bin"),
        ],
    )
    def test_mapping(self, mime, ext):
        assert file_extension(mime) == ext


class TestLocalDirectorySink:
    def test_writes_chunks(self, tmp_path):
        sink = LocalDirectorySink(tmp_path, "/media/")
        url, written = sink.store([b"abc", b"", b"def"], kind="image", mime_type="image/png")

        assert written == 6
        assert url.startswith("/media/images/")
        assert url.endswith(".png")
        name = url.rsplit("/", 1)[1]
        assert (tmp_path / "images" / name).read_bytes() == b"abcdef"

    def test_failed_stream_leaves_nothing(self, tmp_path):
        def chunks():
            yield b"partial"
            raise ConnectionError("stream cut")

        sink = LocalDirectorySink(tmp_path)
        with pytest.raises(ConnectionError):
            sink.store(chunks(), kind="video", mime_type="video/mp4")

        assert list((tmp_path / "videos").iterdir()) == []
