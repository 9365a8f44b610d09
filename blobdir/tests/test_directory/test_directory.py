import logging
import os
from unittest import mock

import httpx
import pytest

from blobdir.directory import BlobDirectory
from blobdir.storage import StorageError


def write_file(directory, name, data):
    with directory.create_output(name) as f:
        f.write_bytes(data)


def test_creates_container(blob_service, directory):
    assert "index" in blob_service.containers
    assert blob_service.count("PUT") == 1


def test_existing_container(blob_service, create_directory):
    blob_service.containers["index"] = {}

    create_directory()

    assert blob_service.count("PUT") == 0


def test_container_created_concurrently(blob_service, create_directory):
    blob_service.containers["index"] = {}
    blob_service.failures[("GET", "")] = 404

    create_directory()


def test_container_creation_failure(blob_service, create_directory):
    blob_service.failures[("PUT", "")] = 500

    with pytest.raises(StorageError) as e:
        create_directory()

    assert e.value.status_code == 500


def test_container_name_lowercased(blob_service, create_directory):
    directory = create_directory(container="Index")

    assert directory.container == "index"
    assert "index" in blob_service.containers


def test_blob_address(create_directory):
    assert create_directory().blob_address("_0.cfs") == "index/_0.cfs"
    assert create_directory(root_folder="/sub/").blob_address("a b") == (
        "index/sub/a%20b"
    )


def test_root_folder_normalized(create_directory):
    assert create_directory(root_folder="sub").root_folder == "sub/"
    assert create_directory(root_folder="/a/b/").root_folder == "a/b/"
    assert create_directory(root_folder="").root_folder == ""
    assert create_directory(root_folder="/").root_folder == ""


def test_exclusive_holds_blob_mutex(directory):
    mutex = directory.mutexes.mutex(directory.blob_address("a"))

    with directory.exclusive("a"):
        assert mutex.locked()

    assert not mutex.locked()


def test_file_metadata(directory):
    write_file(directory, "segments.gen", b"abcdef")

    assert directory.file_exists("segments.gen")
    assert directory.file_length("segments.gen") == 6
    assert directory.file_modified("segments.gen") == pytest.approx(
        directory.cache.file_modified("segments.gen"), abs=0.001
    )


def test_missing_file_metadata(directory):
    assert not directory.file_exists("missing")
    assert directory.file_length("missing") == 0
    assert directory.file_modified("missing") == 0.0


def test_logical_length_of_compressed_file(blob_service, create_directory):
    directory = create_directory(compress=True)

    write_file(directory, "_0.cfs", bytes(100000))

    assert directory.file_length("_0.cfs") == 100000
    assert len(blob_service.containers["index"]["_0.cfs"].data) < 100000


def test_metadata_fallback(blob_service, directory):
    blob_service.add_blob("raw", b"abc", last_modified=1e9)

    assert directory.file_length("raw") == 3
    assert directory.file_modified("raw") == 1e9


def test_metadata_published(blob_service, directory):
    write_file(directory, "a", b"12345")

    metadata = blob_service.containers["index"]["a"].metadata

    assert metadata["x-ms-meta-cachedlength"] == "5"
    assert int(metadata["x-ms-meta-cachedlastmodified"]) == int(
        directory.cache.file_modified("a") * 1000
    )


def test_list_all(directory):
    for name in ["b", "a", "segments.gen"]:
        write_file(directory, name, b"x")

    assert sorted(directory.list_all()) == ["a", "b", "segments.gen"]


def test_list_all_empty(directory):
    assert directory.list_all() == []


def test_list_all_root_folder(blob_service, create_directory):
    root = create_directory(cache_name="root")
    sub = create_directory(cache_name="sub", root_folder="sub")

    write_file(root, "other", b"x")
    write_file(sub, "a", b"x")
    write_file(sub, "b", b"x")

    assert sorted(sub.list_all()) == ["a", "b"]
    assert sorted(root.list_all()) == ["other", "sub/a", "sub/b"]

    assert sub.file_exists("a")
    assert not sub.file_exists("other")
    assert "sub/a" in blob_service.containers["index"]


def test_list_all_multiple_pages(blob_service, directory):
    blob_service.page_size = 2

    names = [f"_{i}.cfs" for i in range(5)]

    for name in names:
        write_file(directory, name, b"x")

    assert sorted(directory.list_all()) == names
    assert blob_service.count("GET", "list") == 3


def test_list_all_failure(blob_service, directory):
    blob_service.failures[("GET", "list")] = 500

    assert directory.list_all() == []


def test_list_all_unparsable(directory):
    response = httpx.Response(200, content=b"<EnumerationResults><Blobs>")

    with mock.patch.object(directory.client, "get", return_value=response):
        assert directory.list_all() == []


def test_list_all_unparsable_logged(directory, caplog):
    caplog.set_level(logging.DEBUG, logger="blobdir")

    body = "<EnumerationResults><Blobs>" + "<Blob><Name>a</Name>" * 20
    response = httpx.Response(200, content=body.encode("utf-8"))

    with mock.patch.object(directory.client, "get", return_value=response):
        assert directory.list_all() == []

    assert f"({body[:77]}...)" in caplog.text
    assert body not in caplog.text


def test_delete_file(blob_service, directory):
    write_file(directory, "a", b"abc")

    assert directory.cache.file_exists("a")

    directory.delete_file("a")

    assert "a" not in blob_service.containers["index"]
    assert not directory.cache.file_exists("a")
    assert not directory.file_exists("a")


def test_delete_file_not_cached(create_directory):
    writer = create_directory(cache_name="writer")
    deleter = create_directory(cache_name="deleter")

    write_file(writer, "a", b"abc")

    deleter.delete_file("a")

    assert not writer.file_exists("a")


def test_delete_missing_file(directory):
    with pytest.raises(StorageError) as e:
        directory.delete_file("missing")

    assert e.value.status_code == 404
    assert e.value.error_code == "BlobNotFound"


def test_delete_file_cache_failure(directory, caplog):
    write_file(directory, "a", b"abc")

    with mock.patch.object(
        directory.cache, "delete_file", side_effect=PermissionError("in use")
    ):
        directory.delete_file("a")

    assert not directory.file_exists("a")
    assert "failed to delete cached copy of a: in use" in caplog.text


def test_open_missing_file(directory):
    with pytest.raises(FileNotFoundError) as e:
        directory.open_input("missing")

    assert e.value.filename == "missing"
    assert isinstance(e.value.__cause__, StorageError)


def test_touch_file(directory):
    write_file(directory, "a", b"abc")

    directory.cache.touch_file("a", 1000.0)
    directory.touch_file("a")

    assert directory.cache.file_modified("a") > 1000.0


def test_should_compress_file(create_directory):
    plain = create_directory(cache_name="plain")
    compressed = create_directory(cache_name="compressed", compress=True)

    assert not plain.should_compress_file("_0.cfs")

    assert compressed.should_compress_file("_0.cfs")
    assert compressed.should_compress_file("_1.tis")
    assert compressed.should_compress_file("sub/_1.prx")
    assert not compressed.should_compress_file("segments.gen")
    assert not compressed.should_compress_file("segments_2")
    assert not compressed.should_compress_file("write.lock")


def test_clear_cache(blob_service, directory):
    write_file(directory, "a", b"abc")
    write_file(directory, "b", b"abc")

    directory.make_lock("write.lock").obtain()
    directory.clear_cache()

    assert directory.cache.list_all() == []
    assert sorted(blob_service.containers["index"]) == ["a", "b", "write.lock"]


def test_make_lock_same_instance(directory):
    assert directory.make_lock("write.lock") is directory.make_lock("write.lock")
    assert directory.make_lock("write.lock") is not directory.make_lock("other.lock")


def test_clear_lock(create_directory):
    holder = create_directory(cache_name="holder")
    other = create_directory(cache_name="other")

    assert holder.make_lock("write.lock").obtain()
    assert not other.make_lock("write.lock").obtain()

    with other.cache.make_lock("write.lock"):
        pass

    other.clear_lock("write.lock")

    assert other.make_lock("write.lock").obtain()
    assert not os.listdir(os.path.join(other.cache.base_path, ".locks"))


def test_from_config(blob_service, config):
    directory = BlobDirectory.from_config(
        config, transport=httpx.MockTransport(blob_service)
    )

    with directory:
        assert directory.container == "index"
        assert directory.cache.base_path == os.path.join(config.cache.path, "index")
        assert directory.lock_config is config.lock

        write_file(directory, "a", b"abc")

        assert directory.list_all() == ["a"]

    with pytest.raises(RuntimeError):
        directory.client.get("index?restype=container")


def test_from_config_failure_closes_client(config):
    with mock.patch("blobdir.directory.directory.StorageClient") as mock_client:
        mock_client.return_value.get.return_value = httpx.Response(404)
        mock_client.return_value.put.return_value = httpx.Response(
            500, request=httpx.Request("PUT", "https://host/index")
        )

        with pytest.raises(StorageError):
            BlobDirectory.from_config(config)

        assert mock_client.return_value.close.called


def test_close_releases_local_locks(directory):
    lock = directory.make_lock("write.lock")

    assert lock.obtain()

    with directory.cache.make_lock("write.lock"):
        pass

    directory.close()

    assert lock._renewer is None
    assert not os.listdir(os.path.join(directory.cache.base_path, ".locks"))
