import io
import tempfile
import unittest
from pathlib import Path
from unittest import mock
from urllib.parse import urlparse

from uploadpath.config import normalize_config
from uploadpath.errors import InvalidDirectoryHint, PayloadTooLarge
from uploadpath.intercept import PathMappingUploadService, wrap_upload_service
from uploadpath.library import MediaLibrary, generate_hash
from uploadpath.metadata import MetadataStore
from uploadpath.storage import LocalUploadProvider


class RecordingService:
    def __init__(self):
        self.calls = []

    def upload(self, payload, opts=None):
        self.calls.append(("upload", payload, opts))
        return []

    def replace(self, file_id, payload, opts=None):
        self.calls.append(("replace", file_id, payload, opts))
        return {}

    def search(self, term):
        return f"searched {term}"


class InterceptTestCase(unittest.TestCase):
    config = {}

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        base = Path(self.tmp.name)
        self.normalized = normalize_config(self.config)
        self.store = MetadataStore(base / "data" / "metadata.db")
        self.store.init_db()
        self.provider = LocalUploadProvider(base / "uploads", self.normalized, folder_store=self.store)
        self.service = RecordingService()
        self.wrapped = wrap_upload_service(self.service, self.store, self.provider, self.normalized)

    def tearDown(self):
        self.tmp.cleanup()

    def mapped_data(self, data, user=None):
        self.wrapped.upload({"data": data, "files": []}, {"user": user})
        return self.service.calls[-1][1]["data"]


class PathMappingTests(InterceptTestCase):
    def test_nothing_requested_passes_payload_through(self):
        payload = {"data": {"fileInfo": {"name": "x"}}, "files": []}
        self.wrapped.upload(payload)
        self.assertIs(self.service.calls[-1][1], payload)

    def test_path_creates_folder_and_physical_path(self):
        data = self.mapped_data({"path": "Clientes/Ação"})
        folder = self.store.find_folder(data["fileInfo"]["folder"])
        self.assertEqual(folder["name"], "Acao")
        self.assertEqual(data["path"], "Clientes/Acao")

    def test_path_dir_overrides_physical_directory(self):
        data = self.mapped_data({"path": "Library", "pathDir": "  Árvore/../Café  "})
        self.assertEqual(data["path"], "Arvore/Cafe")
        self.assertNotIn("pathDir", data)
        self.assertIn("folder", data["fileInfo"])

    def test_file_info_list_gets_folder_on_every_entry(self):
        data = self.mapped_data({"path": "batch", "fileInfo": [{"name": "a"}, {"name": "b"}, None]})
        folders = {entry["folder"] for entry in data["fileInfo"]}
        self.assertEqual(len(folders), 1)
        self.assertEqual([entry.get("name") for entry in data["fileInfo"]], ["a", "b", None])

    def test_caller_data_is_not_mutated(self):
        original = {"path": "x", "pathDir": "y", "fileInfo": {"name": "n"}}
        self.mapped_data(original)
        self.assertEqual(original, {"path": "x", "pathDir": "y", "fileInfo": {"name": "n"}})

    def test_path_dir_only_skips_folders(self):
        data = self.mapped_data({"pathDir": "only/disk"})
        self.assertEqual(data["path"], "only/disk")
        self.assertNotIn("fileInfo", data)
        self.assertIsNone(self.store.find_folder_by_name("only", None))

    def test_unsafe_path_dir_dropped_when_not_strict(self):
        data = self.mapped_data({"pathDir": "../.."})
        self.assertNotIn("path", data)

    def test_replace_is_mapped_too(self):
        self.wrapped.replace(9, {"data": {"pathDir": "r"}, "files": []})
        name, file_id, payload, _ = self.service.calls[-1]
        self.assertEqual((name, file_id, payload["data"]["path"]), ("replace", 9, "r"))

    def test_wrap_is_idempotent_and_delegates(self):
        again = wrap_upload_service(self.wrapped, self.store, self.provider, self.normalized)
        self.assertIs(again, self.wrapped)
        self.assertIsInstance(again, PathMappingUploadService)
        self.assertEqual(self.wrapped.search("x"), "searched x")


class StrictPathMappingTests(InterceptTestCase):
    config = {"strict_path_dir": True, "use_path_as_path_dir": False}

    def test_unsafe_path_dir_rejected(self):
        with self.assertRaises(InvalidDirectoryHint):
            self.mapped_data({"pathDir": "../.."})
        self.assertEqual(self.service.calls, [])

    def test_path_not_used_as_directory(self):
        data = self.mapped_data({"path": "Virtual Only"})
        self.assertNotIn("path", data)
        self.assertIn("folder", data["fileInfo"])


class PrivateMappingTests(InterceptTestCase):
    config = {"private_enable": True, "private_secret": "k"}

    def test_private_upload_maps_under_owner(self):
        data = self.mapped_data({"private": True, "pathDir": "Doc 7", "path": "ignored"})
        self.assertEqual(data["path"], "private/Doc-7")
        folder = self.store.find_folder(data["fileInfo"]["folder"])
        self.assertEqual(folder["name"], "Doc-7")

    def test_private_requires_owner(self):
        with self.assertRaises(InvalidDirectoryHint):
            self.mapped_data({"private": True})
        with self.assertRaises(InvalidDirectoryHint):
            self.mapped_data({"private": True, "pathDir": "../"})

    def test_private_flag_must_be_true(self):
        data = self.mapped_data({"private": "true", "pathDir": "doc"})
        self.assertEqual(data["path"], "doc")


class PrivateDisabledTests(InterceptTestCase):
    def test_private_flag_ignored_when_disabled(self):
        data = self.mapped_data({"private": True, "pathDir": "doc"})
        self.assertEqual(data["path"], "doc")


class LibraryIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        base = Path(self.tmp.name)
        config = normalize_config(
            {"private_enable": True, "private_secret": "k", "cleanup_empty_folders": True}
        )
        self.store = MetadataStore(base / "data" / "metadata.db")
        self.store.init_db()
        self.uploads = base / "uploads"
        self.provider = LocalUploadProvider(self.uploads, config, folder_store=self.store)
        self.library = MediaLibrary(self.store, self.provider)
        self.service = wrap_upload_service(self.library, self.store, self.provider, config)

    def tearDown(self):
        self.tmp.cleanup()

    def upload(self, data, content=b"data", filename="photo.png"):
        payload = {
            "data": data,
            "files": [{"filename": filename, "mime": "image/png", "size": len(content), "stream": io.BytesIO(content)}],
        }
        return self.service.upload(payload)[0]

    def test_generate_hash_slug(self):
        self.assertRegex(generate_hash("My Photo!.PNG"), r"^my_photo_[0-9a-f]{10}$")
        self.assertRegex(generate_hash(""), r"^file_[0-9a-f]{10}$")

    def test_private_record_urls_are_signed_on_read(self):
        record = self.upload({"private": True, "pathDir": "doc-7"})
        self.assertTrue(record["url"].startswith("/uploads/private/doc-7/photo_"))
        self.assertNotIn("token=", record["url"])

        fetched = self.service.find_one(record["id"])
        self.assertIn("token=", fetched["url"])
        listed = self.service.find({"limit": 10})
        self.assertIn("token=", listed["results"][0]["url"])
        self.assertEqual(listed["pagination"]["total"], 1)

    def test_formats_are_signed(self):
        record = self.upload({"private": True, "pathDir": "doc-7"})
        self.store.update_file(
            record["id"],
            dict(record, formats={"thumb": {"url": record["url"].replace("photo_", "thumb_photo_")}}),
        )
        fetched = self.service.find_one(record["id"])
        self.assertIn("token=", fetched["formats"]["thumb"]["url"])

    def test_public_record_is_not_signed(self):
        record = self.upload({"pathDir": "public"})
        self.assertNotIn("token=", self.service.find_one(record["id"])["url"])

    def test_replace_removes_old_object_and_keeps_folder(self):
        record = self.upload({"path": "Albums"}, content=b"old")
        old_path = urlparse(record["url"]).path[len("/uploads/"):]
        replaced = self.service.replace(
            record["id"],
            {
                "data": {"path": "Albums"},
                "files": [{"filename": "new.png", "mime": "image/png", "size": 3, "buffer": b"new"}],
            },
        )
        self.assertEqual(replaced["id"], record["id"])
        self.assertFalse((self.uploads / old_path).exists())
        new_path = urlparse(replaced["url"]).path[len("/uploads/"):]
        self.assertEqual((self.uploads / new_path).read_bytes(), b"new")
        self.assertIsNotNone(self.store.find_folder(replaced["folder_id"]))

    def test_replace_without_hints_keeps_location(self):
        record = self.upload({"path": "Albums"}, content=b"old")
        replaced = self.service.replace(
            record["id"],
            {"data": {}, "files": [{"filename": "new.png", "mime": "image/png", "size": 3, "buffer": b"new"}]},
        )
        self.assertTrue(replaced["url"].startswith("/uploads/Albums/new_"))
        self.assertEqual(replaced["folder_id"], record["folder_id"])
        self.assertEqual(replaced["folder_path"], record["folder_path"])
        self.assertIsNotNone(self.store.find_folder(record["folder_id"]))

    def test_replace_of_private_file_stays_private(self):
        record = self.upload({"private": True, "pathDir": "doc-7"})
        replaced = self.service.replace(
            record["id"],
            {"data": {}, "files": [{"filename": "v2.png", "mime": "image/png", "size": 2, "buffer": b"v2"}]},
        )
        self.assertTrue(replaced["url"].startswith("/uploads/private/doc-7/v2_"))

    def test_oversized_file_stores_nothing(self):
        library = MediaLibrary(self.store, self.provider, size_limit=5)
        payload = {
            "data": {},
            "files": [
                {"filename": "a.txt", "size": 1, "buffer": b"a"},
                {"filename": "b.txt", "size": 10, "buffer": b"b" * 10},
            ],
        }
        with self.assertRaises(PayloadTooLarge):
            library.upload(payload)
        self.assertEqual(self.store.count_files(), 0)
        self.assertFalse(any(path.is_file() for path in self.uploads.rglob("*")))

    def test_failed_write_rolls_back_earlier_files(self):
        original_upload = self.provider.upload
        calls = []

        def failing_second_upload(stored):
            calls.append(stored.hash)
            if len(calls) == 2:
                raise OSError("disk full")
            return original_upload(stored)

        payload = {
            "data": {"path": "Batch"},
            "files": [
                {"filename": "a.txt", "size": 1, "buffer": b"a"},
                {"filename": "b.txt", "size": 1, "buffer": b"b"},
            ],
        }
        with mock.patch.object(self.provider, "upload", side_effect=failing_second_upload):
            with self.assertRaises(OSError):
                self.service.upload(payload)

        self.assertEqual(len(calls), 2)
        self.assertEqual(self.store.count_files(), 0)
        self.assertFalse(any(path.is_file() for path in self.uploads.rglob("*")))

    def test_delete_removes_object_record_and_empty_folder(self):
        record = self.upload({"path": "Trip"})
        result = self.service.delete(record["id"])
        self.assertTrue(result.deleted)
        self.assertIsNone(self.store.get_file(record["id"]))
        self.assertIsNone(self.store.find_folder(record["folder_id"]))

    def test_delete_unknown_record(self):
        self.assertIsNone(self.service.delete(999))


if __name__ == "__main__":
    unittest.main()
