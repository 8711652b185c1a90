import json
import os

from core.utils import mask_secret, safe_json_read, safe_json_write


class TestSafeJson:
    def test_roundtrip(self, tmp_path):
        path = str(tmp_path / "data.json")
        assert safe_json_write(path, {"b": 1, "a": 2})
        assert safe_json_read(path) == {"a": 2, "b": 1}
        assert not os.path.exists(path + ".tmp")

    def test_missing_returns_none(self, tmp_path):
        assert safe_json_read(str(tmp_path / "missing.json")) is None

    def test_backup_created_on_overwrite(self, tmp_path):
        path = str(tmp_path / "data.json")
        safe_json_write(path, {"v": 1})
        safe_json_write(path, {"v": 2})
        with open(path + ".backup.1", encoding="utf-8") as fh:
            assert json.load(fh) == {"v": 1}

    def test_falls_back_to_backup_when_corrupt(self, tmp_path):
        path = str(tmp_path / "data.json")
        safe_json_write(path, {"v": 1})
        safe_json_write(path, {"v": 2})
        with open(path, "w", encoding="utf-8") as fh:
            fh.write("{broken")
        assert safe_json_read(path) == {"v": 1}

    def test_non_object_ignored(self, tmp_path):
        path = tmp_path / "data.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        assert safe_json_read(str(path)) is None

    def test_unserialisable_data_reported(self, tmp_path):
        path = str(tmp_path / "data.json")
        assert safe_json_write(path, {"v": object()}) is False
        assert not os.path.exists(path)


def test_mask_secret():
    assert mask_secret("abcdef123456") == "********3456"
    assert mask_secret("abc") == "***"
    assert mask_secret("") == ""
