import threading
import zipfile

import pytest

from s3unzip.errors import ArchiveMalformed, InvalidContentType, UnzipFailed, UploadCancelled
from s3unzip.unzip.manager import ZIP_CONTENT_TYPES, S3UnzipManager, normalize_prefix
from s3unzip.unzip.strategy import NoSplitUnzipStrategy, SplitTextUnzipStrategy

from conftest import MB, build_zip, generate_csv

BUCKET = "b"
ZIP = "application/zip"


@pytest.fixture
def manager(store, small_config):
    return S3UnzipManager(store=store, strategy=NoSplitUnzipStrategy(small_config))


def test_normalize_prefix():
    assert normalize_prefix("") == ""
    assert normalize_prefix("out") == "out/"
    assert normalize_prefix("out/") == "out/"


# -------------------------
# single object
# -------------------------
def test_unzip_object_writes_every_entry(store, manager):
    entries = [("a.txt", b"alpha"), ("nested/b.csv", b"1,2\n"), ("c.bin", bytes(range(256)))]
    store.put_object(BUCKET, "in/archive.zip", build_zip(entries), ZIP)

    outputs = manager.unzip_object(BUCKET, "in/archive.zip", "out")

    assert outputs == ["out/a.txt", "out/nested/b.csv", "out/c.bin"]
    for name, data in entries:
        assert store.get_bytes(BUCKET, "out/" + name) == data


def test_unzip_object_rejects_wrong_content_type(store, manager):
    store.put_object(BUCKET, "in/notes.txt", build_zip([("a", b"a")]), "text/plain")

    with pytest.raises(InvalidContentType) as ei:
        manager.with_content_types(ZIP_CONTENT_TYPES).unzip_object(BUCKET, "in/notes.txt", "out/")

    assert ei.value.content_type == "text/plain"
    assert store.calls_of("initiate") == []
    assert all(s.body.closed for s in store.opened_streams)


def test_malformed_archive_propagates(store, manager):
    store.put_object(BUCKET, "in/bad.zip", b"garbage" * 100, ZIP)
    with pytest.raises(ArchiveMalformed):
        manager.unzip_object(BUCKET, "in/bad.zip", "out/")
    assert all(s.body.closed for s in store.opened_streams)


# -------------------------
# batch
# -------------------------
def _seed(store):
    store.put_object(BUCKET, "in/1.zip", build_zip([("one.txt", b"1")]), ZIP)
    store.put_object(BUCKET, "in/2.zip", build_zip([("two.txt", b"2")]), ZIP)
    store.put_object(BUCKET, "in/2.zip.bak", build_zip([("bak.txt", b"b")]), ZIP)
    store.put_object(BUCKET, "in/readme.md", b"# readme", "text/markdown")
    store.put_object(BUCKET, "other/3.zip", build_zip([("three.txt", b"3")]), ZIP)


def test_unzip_objects_under_prefix(store, manager):
    _seed(store)
    result = manager.with_content_types(ZIP_CONTENT_TYPES).unzip_objects(BUCKET, "in/", "out/")

    assert result.ok
    assert result.processed == ["in/1.zip", "in/2.zip", "in/2.zip.bak"]
    assert result.skipped == ["in/readme.md"]
    assert result.outputs == ["out/one.txt", "out/two.txt", "out/bak.txt"]
    assert store.keys(BUCKET, "out/") == ["out/bak.txt", "out/one.txt", "out/two.txt"]


def test_skipped_object_is_never_uploaded(store, manager):
    store.put_object(BUCKET, "in/data.gz", build_zip([("x.txt", b"x")]), "application/gzip")
    result = manager.with_content_types(ZIP_CONTENT_TYPES).unzip_objects(BUCKET, "in/", "out/")

    assert result.skipped == ["in/data.gz"]
    assert store.calls_of("initiate") == []


def test_no_content_type_filter_accepts_everything(store, manager):
    store.put_object(BUCKET, "in/a.zip", build_zip([("x.txt", b"x")]), "binary/octet-stream")
    result = manager.unzip_objects(BUCKET, "in/", "out/")
    assert result.processed == ["in/a.zip"]


def test_key_containing(store, manager):
    _seed(store)
    result = manager.unzip_objects_key_containing(BUCKET, "in/", "out/", "2.zip")
    assert result.processed == ["in/2.zip", "in/2.zip.bak"]
    assert ("get_object", BUCKET, "in/1.zip", None) not in store.calls


def test_key_matching_is_full_match(store, manager):
    _seed(store)
    result = manager.unzip_objects_key_matching(BUCKET, "in/", "out/", r"in/\d+\.zip")
    assert result.processed == ["in/1.zip", "in/2.zip"]


def test_directory_keys_are_skipped(store, manager):
    store.put_object(BUCKET, "in/folder/", b"")
    store.put_object(BUCKET, "in/folder/a.zip", build_zip([("a.txt", b"a")]), ZIP)

    result = manager.unzip_objects(BUCKET, "in/", "out/")

    assert result.processed == ["in/folder/a.zip"]
    assert ("get_object", BUCKET, "in/folder/", None) not in store.calls


def test_fail_fast_stops_the_batch(store, manager):
    store.put_object(BUCKET, "in/a-bad.zip", b"garbage" * 100, ZIP)
    store.put_object(BUCKET, "in/b-good.zip", build_zip([("ok.txt", b"ok")]), ZIP)

    with pytest.raises(ArchiveMalformed):
        manager.unzip_objects(BUCKET, "in/", "out/")
    assert store.keys(BUCKET, "out/") == []


def test_continue_on_error_collects_failures(store, manager):
    store.put_object(BUCKET, "in/a-bad.zip", b"garbage" * 100, ZIP)
    store.put_object(BUCKET, "in/b-good.zip", build_zip([("ok.txt", b"ok")]), ZIP)

    result = manager.with_fail_fast(False).unzip_objects(BUCKET, "in/", "out/")

    assert not result.ok
    assert [key for key, _ in result.failed] == ["in/a-bad.zip"]
    assert isinstance(result.failed[0][1], ArchiveMalformed)
    assert result.processed == ["in/b-good.zip"]
    assert store.get_bytes(BUCKET, "out/ok.txt") == b"ok"
    assert all(s.body.closed for s in store.opened_streams)


def test_cancelled_batch_starts_nothing(store, manager):
    _seed(store)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(UploadCancelled):
        manager.with_cancel_event(cancel).unzip_objects(BUCKET, "in/", "out/")
    assert store.calls_of("get_object") == []
    assert store.calls_of("initiate") == []


def test_split_strategy_through_manager(store, small_config):
    data = b"h\n" + b"row\n" * 30
    store.put_object(BUCKET, "in/t.zip", build_zip([("t.csv", data)]), ZIP)
    manager = S3UnzipManager(store, SplitTextUnzipStrategy(small_config, file_bytes_limit=40, header=True))

    outputs = manager.unzip_object(BUCKET, "in/t.zip", "out/")

    assert outputs[0] == "out/1-t.csv"
    assert all(store.get_bytes(BUCKET, k).startswith(b"h\n") for k in outputs)


# -------------------------
# large archives
# -------------------------
@pytest.fixture(scope="module")
def big_csv():
    return generate_csv(2_000_000)


@pytest.fixture(scope="module")
def big_zip(big_csv):
    return build_zip([("test.csv", big_csv)], compression=zipfile.ZIP_DEFLATED)


@pytest.mark.slow
def test_large_entry_nosplit(store, big_csv, big_zip):
    store.put_object(BUCKET, "in/big.zip", big_zip, ZIP)
    manager = S3UnzipManager(store, NoSplitUnzipStrategy())  # 20 MiB parts

    outputs = manager.unzip_object(BUCKET, "in/big.zip", "out/")

    assert outputs == ["out/test.csv"]
    assert len(big_csv) == 59_555_607
    uploads = store.calls_of("upload_part")
    assert sorted(c[3]["part_number"] for c in uploads) == [1, 2, 3]
    sizes = [c[3]["size"] for c in sorted(uploads, key=lambda c: c[3]["part_number"])]
    assert sizes == [20 * MB, 20 * MB, len(big_csv) - 40 * MB]
    assert store.get_bytes(BUCKET, "out/test.csv") == big_csv


@pytest.mark.slow
def test_large_entry_split_with_header(store, small_config, big_csv, big_zip):
    store.put_object(BUCKET, "in/big.zip", big_zip, ZIP)
    strategy = SplitTextUnzipStrategy(small_config, file_bytes_limit=10 * MB, header=True)

    outputs = S3UnzipManager(store, strategy).unzip_object(BUCKET, "in/big.zip", "out/")

    assert outputs == [f"out/{n}-test.csv" for n in range(1, 7)]
    header = b"COL1, COL2, COL3, COL4\n"
    shards = [store.get_bytes(BUCKET, k) for k in outputs]
    assert all(s.startswith(header) for s in shards)
    assert all(s.endswith(b"\n") for s in shards)
    assert shards[0] + b"".join(s[len(header):] for s in shards[1:]) == big_csv


# -------------------------
# end-to-end scenarios
# -------------------------
def test_roundtrip_json_and_csv(store, manager):
    entries = [("file.json", b'{"name":"x"}'), ("file.csv", b"a,b\n1,2\n")]
    store.put_object(BUCKET, "input/archive.zip", build_zip(entries), ZIP)

    manager.unzip_objects(BUCKET, "input", "output")

    assert store.keys(BUCKET, "output/") == ["output/file.csv", "output/file.json"]
    for name, data in entries:
        assert store.get_bytes(BUCKET, "output/" + name) == data


def test_octet_stream_is_not_unzipped(store, manager):
    store.put_object(BUCKET, "input/archive.zip", build_zip([("file.csv", b"a\n")]), "application/octet-stream")

    result = manager.with_content_types(["application/zip"]).unzip_objects(BUCKET, "input", "output")

    assert result.processed == []
    assert store.keys(BUCKET, "output") == []
    assert store.calls_of("initiate") == []


def test_regex_selects_zip_objects(store, manager):
    store.put_object(BUCKET, "input/a.zip", build_zip([("a.txt", b"a")]), ZIP)
    store.put_object(BUCKET, "input/b.zip", build_zip([("b.txt", b"b")]), ZIP)
    store.put_object(BUCKET, "input/c.txt", b"c", "text/plain")

    result = manager.unzip_objects_key_matching(BUCKET, "input", "output", r".*\.zip")

    assert result.processed == ["input/a.zip", "input/b.zip"]
    assert store.keys(BUCKET, "output/") == ["output/a.txt", "output/b.txt"]


def test_fault_on_third_part_aborts_entry(store, manager):
    boom = RuntimeError("InternalError")
    store.part_fault = lambda call_no, part_number: boom if call_no == 3 else None
    store.put_object(BUCKET, "input/big.zip", build_zip([("big.bin", b"\x01" * (16 * MB))]), ZIP)

    with pytest.raises(UnzipFailed) as ei:
        manager.unzip_objects(BUCKET, "input", "output")

    assert ei.value.cause is boom
    upload_id = store.calls_of("initiate")[0][3]["upload_id"]
    assert [c[3]["upload_id"] for c in store.calls_of("abort")] == [upload_id]
    assert store.calls_of("complete") == []
    assert store.keys(BUCKET, "output") == []
