import pytest

from app.ygops.storage import LocalStorage, S3Storage, StorageError, storage_from_config


def test_local_put_stat_copy_delete(tmp_path):
    st = LocalStorage(root=tmp_path)
    st.put_bytes("assets/1/original.png", b"abc", content_type="image/png")

    info = st.stat("assets/1/original.png")
    assert info.size == 3
    assert info.content_type == "image/png"
    assert st.read_bytes("assets/1/original.png") == b"abc"
    # no temp files left behind
    assert sorted(p.name for p in (tmp_path / "assets" / "1").iterdir()) == ["original.png"]

    st.copy("assets/1/original.png", "assets/1/v2_original.png")
    assert st.read_bytes("assets/1/v2_original.png") == b"abc"

    st.delete("assets/1/original.png")
    assert st.stat("assets/1/original.png") is None
    assert not st.exists("assets/1/original.png")
    # deleting twice is fine
    st.delete("assets/1/original.png")


def test_local_rejects_escaping_keys(tmp_path):
    st = LocalStorage(root=tmp_path / "root")
    with pytest.raises(StorageError):
        st.put_bytes("../outside.txt", b"x")
    with pytest.raises(StorageError):
        st.open("missing.txt")
    assert st.signed_url("anything") is None


def test_storage_from_config(tmp_path):
    local = storage_from_config({"STORAGE_BACKEND": "local", "STORAGE_ROOT": str(tmp_path)})
    assert isinstance(local, LocalStorage)
    assert local.root == tmp_path

    s3 = storage_from_config({"STORAGE_BACKEND": "S3", "S3_BUCKET": "media", "S3_ENDPOINT": "acct.r2.example.com"})
    assert isinstance(s3, S3Storage)
    assert s3.region == "auto"


def test_s3_signed_url_is_offline():
    st = S3Storage(
        endpoint="acct.r2.example.com",
        region="auto",
        bucket="media",
        access_key_id="AKIDEXAMPLE",
        secret_access_key="secret",
    )
    url = st.signed_url("assets/7/original.png", download_name="original.png", expires_in=60)
    assert url.startswith("https://")
    assert "media" in url
    assert "assets/7/original.png" in url
    assert "X-Amz-Expires=60" in url or "Expires=" in url
