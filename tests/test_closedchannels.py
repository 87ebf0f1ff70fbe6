import struct
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from breezcore.closedchannels import (
    DELETED_SUFFIX,
    FIRST_FILE_NUMBER,
    download_closed_channels,
    download_file,
    file_to_import,
    first_file_number_to_download,
    read_channel_ids,
)


@pytest.fixture
def server():
    files = {}

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            body = files.get(self.path)
            if body is None:
                self.send_response(404)
                self.send_header("Content-Length", "0")
                self.end_headers()
                return
            self.send_response(200)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield files, f"http://127.0.0.1:{httpd.server_port}"
    httpd.shutdown()
    httpd.server_close()


def test_file_to_import_picks_smallest_above(tmp_path):
    for name in ["5660", "5658", "5655" + DELETED_SUFFIX, "notanumber", "-3"]:
        (tmp_path / name).write_bytes(b"")
    (tmp_path / "5656").mkdir()
    assert file_to_import(0, tmp_path) == 5658
    assert file_to_import(5658, tmp_path) == 5660
    assert file_to_import(5660, tmp_path) == 0


def test_file_to_import_missing_dir(tmp_path):
    with pytest.raises(FileNotFoundError):
        file_to_import(0, tmp_path / "missing")


def test_first_file_number_default(tmp_path):
    assert first_file_number_to_download(tmp_path) == FIRST_FILE_NUMBER


def test_first_file_number_counts_deleted(tmp_path):
    (tmp_path / "6000").write_bytes(b"")
    (tmp_path / ("6010" + DELETED_SUFFIX)).write_bytes(b"")
    assert first_file_number_to_download(tmp_path) == 6010


def test_read_channel_ids_round_trip(tmp_path):
    ids = [1, 2**40 + 5, 2**64 - 1]
    path = tmp_path / "ids"
    path.write_bytes(b"".join(struct.pack(">Q", i) for i in ids))
    assert read_channel_ids(path) == ids


def test_read_channel_ids_bad_length(tmp_path):
    path = tmp_path / "ids"
    path.write_bytes(b"\x00" * 9)
    with pytest.raises(ValueError):
        read_channel_ids(path)


def test_download_not_found(tmp_path, server):
    _, base = server
    target = tmp_path / "100"
    assert download_file(target, f"{base}/100") == 404
    assert not target.exists()


def test_download_writes_file(tmp_path, server):
    files, base = server
    files["/100"] = b"payload-bytes"
    target = tmp_path / "100"
    assert download_file(target, f"{base}/100") == 200
    assert target.read_bytes() == b"payload-bytes"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["100"]


def test_download_same_size_as_imported_is_dropped(tmp_path, server):
    files, base = server
    files["/100"] = b"12345678"
    deleted = tmp_path / ("100" + DELETED_SUFFIX)
    deleted.write_bytes(b"abcdefgh")
    assert download_file(tmp_path / "100", f"{base}/100") == 200
    assert not (tmp_path / "100").exists()
    assert deleted.read_bytes() == b"abcdefgh"


def test_download_other_size_replaces_imported(tmp_path, server):
    files, base = server
    files["/100"] = b"1234567812345678"
    deleted = tmp_path / ("100" + DELETED_SUFFIX)
    deleted.write_bytes(b"abcdefgh")
    assert download_file(tmp_path / "100", f"{base}/100") == 200
    assert (tmp_path / "100").read_bytes() == b"1234567812345678"
    assert not deleted.exists()


def test_download_closed_channels_until_missing(tmp_path, server):
    files, base = server
    first = FIRST_FILE_NUMBER
    files[f"/{first}"] = b"a" * 8
    files[f"/{first + 1}"] = b"b" * 16
    directory = tmp_path / "pruned"
    fetched = download_closed_channels(directory, base)
    assert fetched == [first, first + 1]
    assert (directory / str(first + 1)).read_bytes() == b"b" * 16
    assert file_to_import(0, directory) == first


def test_download_closed_channels_stops(tmp_path, server):
    files, base = server
    files[f"/{FIRST_FILE_NUMBER}"] = b"a" * 8
    directory = tmp_path / "pruned"
    assert download_closed_channels(directory, base, lambda: True) == []
    assert list(directory.iterdir()) == []