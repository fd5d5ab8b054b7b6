from __future__ import annotations

from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest

from wbs_ingest.config.loader import StorageConfig
from wbs_ingest.storage.blob_store import (
    BlobNotFoundError,
    BlobStoreError,
    InMemoryBlobStore,
    LocalBlobStore,
    create_blob_store,
)


@pytest.fixture(params=["local", "memory"])
def store(request, tmp_path: Path):
    if request.param == "local":
        return LocalBlobStore(tmp_path / "blobs", "secret-123", "http://testserver/blobs/")
    return InMemoryBlobStore("secret-123", "http://testserver/blobs")


def test_put_get_overwrite(store):
    assert store.put("processed/e1/main-data.json", b"{}", "application/json") == 2
    assert store.exists("processed/e1/main-data.json")
    assert store.get("processed/e1/main-data.json") == b"{}"
    store.put("processed/e1/main-data.json", b'{"a":1}', "application/json")
    assert store.get("processed/e1/main-data.json") == b'{"a":1}'
    assert store.content_type("processed/e1/main-data.json") == "application/json"


def test_missing_key(store):
    assert not store.exists("processed/nope.json")
    with pytest.raises(BlobNotFoundError) as e:
        store.get("processed/nope.json")
    assert e.value.key == "processed/nope.json"


@pytest.mark.parametrize("key", ["", "/abs/key", "a/../b", "a//b", "a/./b", "dir/", "a\\b"])
def test_invalid_keys_rejected(store, key):
    with pytest.raises(BlobStoreError):
        store.put(key, b"x")


def test_put_file_and_download(store, tmp_path: Path):
    src = tmp_path / "source.xlsx"
    src.write_bytes(b"PK\x03\x04 workbook")
    store.put_file("uploads/e1/source.xlsx", src)
    out = store.download_to("uploads/e1/source.xlsx", tmp_path / "work" / "copy.xlsx")
    assert out.read_bytes() == b"PK\x03\x04 workbook"
    with pytest.raises(BlobNotFoundError):
        store.download_to("uploads/e1/other.xlsx", tmp_path / "work" / "other.xlsx")


def test_local_store_layout_and_content_types(tmp_path: Path):
    store = LocalBlobStore(tmp_path / "root", "secret-123", "http://x/blobs")
    store.put("processed/e1/assets/5.2/abc.webp", b"RIFF")
    assert (tmp_path / "root" / "processed" / "e1" / "assets" / "5.2" / "abc.webp").is_file()
    assert store.content_type("processed/e1/assets/5.2/abc.webp") == "image/webp"
    assert store.content_type("processed/e1/chunks/s/chunk_0.json.gz") == "application/gzip"
    assert store.content_type("processed/e1/other.bin") == "application/octet-stream"
    # 一時ファイルが残らない
    assert not list((tmp_path / "root").rglob(".tmp-*"))


def test_signed_url_roundtrip(store):
    url = store.get_signed_url("processed/e1/assets/5.2/abc.webp", ttl=600, now=1_000_000)
    parts = urlsplit(url)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "http://testserver/blobs/processed/e1/assets/5.2/abc.webp"
    query = parse_qs(parts.query)
    expires = int(query["expires"][0])
    signature = query["signature"][0]
    assert expires == 1_000_600
    assert store.verify_signature("processed/e1/assets/5.2/abc.webp", expires, signature, now=1_000_100)
    # 期限切れ
    assert not store.verify_signature("processed/e1/assets/5.2/abc.webp", expires, signature, now=1_000_601)
    # 別キー
    assert not store.verify_signature("processed/e1/assets/5.2/xyz.webp", expires, signature, now=1_000_100)
    # 改ざんされた期限
    assert not store.verify_signature("processed/e1/assets/5.2/abc.webp", expires + 60, signature, now=1_000_100)


def test_signatures_depend_on_secret():
    a = InMemoryBlobStore("secret-aaa")
    b = InMemoryBlobStore("secret-bbb")
    assert a.signature("k", 100) != b.signature("k", 100)


def test_create_blob_store(tmp_path: Path):
    assert isinstance(create_blob_store(StorageConfig(backend="memory")), InMemoryBlobStore)
    local = create_blob_store(StorageConfig(backend="local", root=str(tmp_path / "b")))
    assert isinstance(local, LocalBlobStore)
    assert (tmp_path / "b").is_dir()
