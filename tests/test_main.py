"""Tests for the composition root and command line."""
from unittest.mock import patch

import pytest

from flowstate.exceptions import StoreUnavailableError
from flowstate.main import build_services, main, parse_args

LEGACY_NAME = "[6F9619FF-8B86-D011-B42D-00C04FC964FF]-[2024-01-31-09-15-00].md"


@pytest.fixture
def no_file_logging():
    with patch("flowstate.main.configure_logging") as configure:
        yield configure


class TestBuildServices:
    """Tests for wiring the core services together."""

    def test_services_share_one_store(self, test_config, legacy_dir):
        services = build_services(legacy_dir=legacy_dir)
        try:
            assert services.database.is_ready
            assert services.repository.database is services.database
            assert services.search.database is services.database
            assert services.importer.repository is services.repository
        finally:
            services.close()

    def test_legacy_import_runs_when_needed(self, test_config, legacy_dir):
        (legacy_dir / LEGACY_NAME).write_text("# Imported\nbody", encoding="utf-8")

        services = build_services(legacy_dir=legacy_dir)
        try:
            assert [n.title for n in services.repository.notes] == ["Imported"]
            assert [n.title for n in services.search.search("import")] == ["Imported"]
            assert (legacy_dir / "archived" / LEGACY_NAME).exists()
        finally:
            services.close()

    def test_import_can_be_skipped(self, test_config, legacy_dir):
        (legacy_dir / LEGACY_NAME).write_text("body", encoding="utf-8")

        services = build_services(legacy_dir=legacy_dir, run_import=False)
        try:
            assert services.repository.notes == []
            assert (legacy_dir / LEGACY_NAME).exists()
        finally:
            services.close()

    def test_import_skipped_for_non_empty_store(self, test_config, legacy_dir):
        services = build_services(legacy_dir=legacy_dir)
        services.repository.create_note("existing")
        services.close()

        (legacy_dir / LEGACY_NAME).write_text("late file", encoding="utf-8")
        services = build_services(legacy_dir=legacy_dir)
        try:
            assert [n.content for n in services.repository.notes] == ["existing"]
        finally:
            services.close()

    def test_close_flushes_pending_autosave(self, test_config, legacy_dir):
        services = build_services(legacy_dir=legacy_dir)
        note = services.repository.create_note("draft")
        services.repository.schedule_auto_save(
            note.model_copy(update={"content": "flushed on close"})
        )
        services.close()

        reopened = build_services(legacy_dir=legacy_dir)
        try:
            assert reopened.repository.get_note(note.id).content == "flushed on close"
        finally:
            reopened.close()

    def test_migration_failure_is_fatal(self, test_config, legacy_dir):
        failure = StoreUnavailableError("broken", migration="v1_initial")
        with patch(
            "flowstate.main.Database.migrate_schema", side_effect=failure
        ), pytest.raises(StoreUnavailableError):
            build_services(legacy_dir=legacy_dir)

    def test_unusable_database_location_is_store_unavailable(
        self, test_config, legacy_dir, tmp_path
    ):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("", encoding="utf-8")

        with pytest.raises(StoreUnavailableError) as exc_info:
            build_services(
                database_path=blocker / "nested" / "notes.sqlite",
                legacy_dir=legacy_dir,
            )

        assert isinstance(exc_info.value.original_error, OSError)

    def test_close_logs_operation_metrics(self, test_config, legacy_dir, caplog):
        services = build_services(legacy_dir=legacy_dir)
        services.search.search("anything")

        with caplog.at_level("DEBUG", logger="flowstate"):
            services.close()

        assert "search: 1 calls" in caplog.text


class TestCommandLine:
    """Tests for the flowstate console script."""

    def test_parse_args_defaults(self):
        args = parse_args([])
        assert args.database_path is None
        assert args.no_import is False
        assert args.search is None

    def test_exits_on_store_unavailable(self, test_config, legacy_dir, no_file_logging):
        failure = StoreUnavailableError("broken")
        with patch("flowstate.main.Database.migrate_schema", side_effect=failure):
            with pytest.raises(SystemExit) as exc_info:
                main(["--legacy-dir", str(legacy_dir)])
        assert exc_info.value.code == 1

    def test_exits_on_unusable_database_location(
        self, test_config, legacy_dir, no_file_logging, tmp_path
    ):
        with patch(
            "flowstate.main.config.get_db_url",
            side_effect=PermissionError("read-only volume"),
        ):
            with pytest.raises(SystemExit) as exc_info:
                main(["--legacy-dir", str(legacy_dir)])
        assert exc_info.value.code == 1

    def test_search(self, test_config, legacy_dir, no_file_logging, capsys):
        (legacy_dir / LEGACY_NAME).write_text("# Found it\nneedle", encoding="utf-8")

        assert main(["--legacy-dir", str(legacy_dir), "--search", "needle"]) == 0

        out = capsys.readouterr().out
        assert "6F9619FF-8B86-D011-B42D-00C04FC964FF" in out
        assert "Found it" in out

    def test_recent(self, test_config, legacy_dir, no_file_logging, capsys):
        (legacy_dir / LEGACY_NAME).write_text("recent one", encoding="utf-8")
        assert main(["--legacy-dir", str(legacy_dir), "--recent", "5"]) == 0
        assert "recent one" in capsys.readouterr().out

    def test_no_import(self, test_config, legacy_dir, no_file_logging, capsys):
        (legacy_dir / LEGACY_NAME).write_text("ignored", encoding="utf-8")
        assert main(["--legacy-dir", str(legacy_dir), "--no-import"]) == 0
        assert "0 notes" in capsys.readouterr().out
        assert (legacy_dir / LEGACY_NAME).exists()

    def test_restore_legacy(self, test_config, legacy_dir, no_file_logging, capsys):
        (legacy_dir / LEGACY_NAME).write_text("round trip", encoding="utf-8")
        main(["--legacy-dir", str(legacy_dir)])
        assert not (legacy_dir / LEGACY_NAME).exists()

        assert main(["--legacy-dir", str(legacy_dir), "--restore-legacy"]) == 0

        assert "Restored 1 legacy files" in capsys.readouterr().out
        assert (legacy_dir / LEGACY_NAME).exists()

    def test_custom_database_path(self, test_config, legacy_dir, no_file_logging, tmp_path):
        db_path = tmp_path / "custom" / "notes.sqlite"
        assert main(["--database-path", str(db_path), "--legacy-dir", str(legacy_dir)]) == 0
        assert db_path.exists()
