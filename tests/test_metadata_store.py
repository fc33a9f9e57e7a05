import hashlib
import json
import os
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

from sorta.metadata import (
    MetadataStore,
    build_record,
    calculate_file_hash,
    file_timestamp,
    format_timestamp,
    parse_timestamp,
)
from sorta.models import FileRecord
from .base_test import BaseOrganizerTest


class TestMetadataStore(BaseOrganizerTest):
    """
    Tests for loading, persisting and updating the metadata index.
    """

    # --- Loading ---
    def test_load_missing_file_yields_empty_store(self):
        store = MetadataStore(self.metadata_path)

        with self.assertLogs('sorta.metadata', level='INFO') as log_context:
            records = store.load()

        self.assertEqual(records, {})
        self.assertEqual(len(store), 0)
        self.assertIn("No metadata file found", "\n".join(log_context.output))


    def test_load_corrupt_file_warns_and_yields_empty_store(self):
        self.metadata_path.write_text("{ this is not json", encoding="utf-8")
        store = MetadataStore(self.metadata_path)

        with self.assertLogs('sorta.metadata', level='WARNING'):
            records = store.load()

        self.assertEqual(records, {})


    def test_load_skips_malformed_entries(self):
        document = {"files": [
            {"filename": "a.jpg", "path": "/src/a.jpg", "timestamp": self.DEFAULT_TIMESTAMP, "copied": True, "hash": "abc"},
            {"filename": "b.jpg", "timestamp": self.DEFAULT_TIMESTAMP},
            "garbage",
        ]}
        self.metadata_path.write_text(json.dumps(document), encoding="utf-8")
        store = MetadataStore(self.metadata_path)

        with self.assertLogs('sorta.metadata', level='WARNING'):
            records = store.load()

        self.assertEqual(list(records), ["/src/a.jpg"])
        self.assertTrue(records["/src/a.jpg"].copied)
        self.assertEqual(records["/src/a.jpg"].hash, "abc")


    def test_load_only_accepts_boolean_copied_flag(self):
        """A hand-edited string flag must not mark a file as organized."""
        document = {"files": [
            {"filename": "a.jpg", "path": "/src/a.jpg", "timestamp": self.DEFAULT_TIMESTAMP, "copied": "false"},
            {"filename": "b.jpg", "path": "/src/b.jpg", "timestamp": self.DEFAULT_TIMESTAMP, "copied": 1},
            {"filename": "c.jpg", "path": "/src/c.jpg", "timestamp": self.DEFAULT_TIMESTAMP, "copied": True},
        ]}
        self.metadata_path.write_text(json.dumps(document), encoding="utf-8")
        store = MetadataStore(self.metadata_path)

        with self.assertLogs('sorta.models', level='WARNING') as log_context:
            records = store.load()

        self.assertFalse(records["/src/a.jpg"].copied)
        self.assertFalse(records["/src/b.jpg"].copied)
        self.assertTrue(records["/src/c.jpg"].copied)
        self.assertEqual(len(log_context.output), 2)


    def test_load_converts_legacy_flat_mapping(self):
        self.metadata_path.write_text(json.dumps({"/src/clip.mp4": self.DEFAULT_TIMESTAMP}), encoding="utf-8")
        store = MetadataStore(self.metadata_path)

        records = store.load()

        record = records["/src/clip.mp4"]
        self.assertEqual(record.filename, "clip.mp4")
        self.assertEqual(record.timestamp, self.DEFAULT_TIMESTAMP)
        self.assertFalse(record.copied)
        self.assertIsNone(record.hash)


    # --- Persisting ---
    def test_persist_writes_stable_field_names_and_round_trips(self):
        with_hash = FileRecord("/src/a.jpg", "a.jpg", self.DEFAULT_TIMESTAMP, copied=True, hash="abc")
        without_hash = FileRecord("/src/b.jpg", "b.jpg", self.DEFAULT_TIMESTAMP)
        store = self._make_store(with_hash, without_hash)

        store.persist()

        document = json.loads(self.metadata_path.read_text(encoding="utf-8"))
        self.assertEqual(
            document["files"][0],
            {"filename": "a.jpg", "path": "/src/a.jpg", "timestamp": self.DEFAULT_TIMESTAMP, "copied": True, "hash": "abc"},
        )
        self.assertNotIn("hash", document["files"][1])

        reloaded = MetadataStore(self.metadata_path)
        self.assertEqual(list(reloaded.load().values()), [with_hash, without_hash])


    def test_persist_is_idempotent_and_leaves_no_temporary_files(self):
        store = self._make_store(FileRecord("/src/a.jpg", "a.jpg", self.DEFAULT_TIMESTAMP))

        store.persist()
        first = self.metadata_path.read_bytes()
        store.persist()

        self.assertEqual(self.metadata_path.read_bytes(), first)
        self.assertEqual(sorted(p.name for p in self.tmp_dir.iterdir()), ["file_metadata.json", "source"])


    def test_failed_replace_keeps_previous_document(self):
        store = self._make_store(FileRecord("/src/a.jpg", "a.jpg", self.DEFAULT_TIMESTAMP))
        store.persist()
        before = self.metadata_path.read_bytes()
        store.upsert(FileRecord("/src/b.jpg", "b.jpg", self.DEFAULT_TIMESTAMP))

        with patch('sorta.metadata.Path.replace', side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                store.persist()

        self.assertEqual(self.metadata_path.read_bytes(), before)
        self.assertFalse([p for p in self.tmp_dir.iterdir() if p.suffix == ".tmp"])


    # --- Updating ---
    def test_upsert_replaces_in_place_and_keeps_hash_and_copied_flag(self):
        store = self._make_store(
            FileRecord("/src/a.jpg", "a.jpg", self.DEFAULT_TIMESTAMP, copied=True, hash="original"),
            FileRecord("/src/b.jpg", "b.jpg", self.DEFAULT_TIMESTAMP),
        )

        store.upsert(FileRecord("/src/a.jpg", "a.jpg", "2023-01-01T00:00:00.000Z", hash="recomputed"))

        records = store.records()
        self.assertEqual(len(records), 2)
        self.assertEqual(records[0].path, "/src/a.jpg")
        self.assertEqual(records[0].timestamp, "2023-01-01T00:00:00.000Z")
        self.assertEqual(records[0].hash, "original")
        self.assertTrue(records[0].copied)


    def test_mark_copied_and_duplicate_index(self):
        store = self._make_store(
            FileRecord("/src/a.jpg", "a.jpg", self.DEFAULT_TIMESTAMP, hash="h1"),
            FileRecord("/src/b.jpg", "b.jpg", self.DEFAULT_TIMESTAMP, hash="h2"),
            FileRecord("/src/c.jpg", "c.jpg", self.DEFAULT_TIMESTAMP, copied=True),
        )
        self.assertEqual(store.duplicate_index(), set())

        store.mark_copied("/src/a.jpg", "2022-03-01_a.jpg")

        self.assertEqual(store.get("/src/a.jpg").filename, "2022-03-01_a.jpg")
        self.assertEqual(store.duplicate_index(), {"h1"})


    # --- Metadata generation ---
    def test_generate_records_visible_files_with_hashes(self):
        photo = self._create_file("a/photo1.jpg", b"pixels")
        self._create_file("a/.trash/photo2.jpg", b"old pixels")
        store = MetadataStore(self.metadata_path)

        written = store.generate(self.source_dir)

        self.assertEqual(written, 1)
        record = store.get(photo)
        self.assertEqual(record.filename, "photo1.jpg")
        self.assertEqual(record.hash, hashlib.sha256(b"pixels").hexdigest())
        self.assertFalse(record.copied)
        parse_timestamp(record.timestamp)
        document = json.loads(self.metadata_path.read_text(encoding="utf-8"))
        self.assertEqual([entry["path"] for entry in document["files"]], [str(photo)])


    def test_generate_without_hashing(self):
        photo = self._create_file("photo.jpg")
        store = MetadataStore(self.metadata_path)

        store.generate(self.source_dir, hash_files=False)

        self.assertIsNone(store.get(photo).hash)


    def test_rescan_never_duplicates_records(self):
        photo = self._create_file("photo.jpg")
        store = MetadataStore(self.metadata_path)
        store.generate(self.source_dir)
        store.mark_copied(photo, "2022-03-01_photo.jpg")

        store.generate(self.source_dir)

        self.assertEqual(len(store), 1)
        self.assertTrue(store.get(photo).copied)


    def test_build_record_returns_none_for_unreadable_file(self):
        with self.assertLogs('sorta.metadata', level='WARNING'):
            record = build_record(self.source_dir / "missing.jpg")
        self.assertIsNone(record)


class TestTimestampsAndHashing(BaseOrganizerTest):

    def test_format_timestamp_uses_utc_with_milliseconds(self):
        moment = datetime(2022, 3, 1, 10, 15, 0, 123456, tzinfo=timezone.utc)
        self.assertEqual(format_timestamp(moment), "2022-03-01T10:15:00.123Z")


    def test_parse_timestamp_accepts_z_suffix(self):
        self.assertEqual(
            parse_timestamp("2022-03-01T10:15:00.000Z"),
            datetime(2022, 3, 1, 10, 15, tzinfo=timezone.utc),
        )


    def test_file_timestamp_prefers_birth_time(self):
        birth = datetime(2022, 3, 1, tzinfo=timezone.utc).timestamp()
        modified = datetime(2023, 6, 1, tzinfo=timezone.utc).timestamp()

        with_birth = SimpleNamespace(st_birthtime=birth, st_mtime=modified)
        without_birth = SimpleNamespace(st_mtime=modified)

        self.assertEqual(file_timestamp(with_birth), "2022-03-01T00:00:00.000Z")
        self.assertEqual(file_timestamp(without_birth), "2023-06-01T00:00:00.000Z")


    def test_calculate_file_hash_reads_whole_file(self):
        content = os.urandom(200_000)
        file_path = self._create_file("big.raw", content)

        self.assertEqual(calculate_file_hash(file_path, buffer_size=4096), hashlib.sha256(content).hexdigest())


    def test_calculate_file_hash_returns_none_on_error(self):
        with self.assertLogs('sorta.metadata', level='ERROR'):
            self.assertIsNone(calculate_file_hash(self.source_dir / "missing.raw"))
