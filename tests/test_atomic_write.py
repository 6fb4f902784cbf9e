"""
Tests for atomic writes and timestamped backups.
"""

import os
import pytest
from datetime import datetime
from unittest.mock import patch

from utils.atomic_write import atomic_write_text, timestamped_backup


@pytest.mark.unit
class TestAtomicWrite:

    def test_writes_content(self, tmp_path):
        target = tmp_path / "101.conf"
        atomic_write_text(target, "arch: amd64\n")
        assert target.read_text() == "arch: amd64\n"

    def test_replaces_existing(self, tmp_path):
        target = tmp_path / "101.conf"
        target.write_text("old\n")
        atomic_write_text(target, "new\n")
        assert target.read_text() == "new\n"

    def test_no_temp_files_left(self, tmp_path):
        target = tmp_path / "101.conf"
        atomic_write_text(target, "x\n")
        assert [p.name for p in tmp_path.iterdir()] == ["101.conf"]

    def test_failed_write_keeps_original(self, tmp_path):
        """Test a failure before rename leaves the original untouched."""
        target = tmp_path / "101.conf"
        target.write_text("original\n")

        with patch("os.replace", side_effect=OSError("rename failed")):
            with pytest.raises(OSError):
                atomic_write_text(target, "new\n")

        assert target.read_text() == "original\n"
        assert [p.name for p in tmp_path.iterdir()] == ["101.conf"]

    def test_mode(self, tmp_path):
        target = tmp_path / "101.conf"
        atomic_write_text(target, "x\n", mode=0o600)
        assert os.stat(target).st_mode & 0o777 == 0o600

    def test_new_file_default_mode(self, tmp_path):
        target = tmp_path / "101.conf"
        atomic_write_text(target, "x\n")
        assert os.stat(target).st_mode & 0o777 == 0o640

    def test_keeps_existing_mode(self, tmp_path):
        target = tmp_path / "101.conf"
        target.write_text("old\n")
        os.chmod(target, 0o604)

        atomic_write_text(target, "new\n")

        assert os.stat(target).st_mode & 0o777 == 0o604


@pytest.mark.unit
class TestTimestampedBackup:

    def test_name_and_content(self, tmp_path):
        source = tmp_path / "101.conf"
        source.write_text("cores: 2\n")
        now = datetime(2024, 3, 5, 14, 7, 9)

        backup = timestamped_backup(source, tmp_path / "backups", now=now)

        assert backup.name == "101.conf.20240305-140709.bak"
        assert backup.read_text() == "cores: 2\n"

    def test_collision_gets_counter(self, tmp_path):
        source = tmp_path / "101.conf"
        source.write_text("cores: 2\n")
        now = datetime(2024, 3, 5, 14, 7, 9)

        first = timestamped_backup(source, tmp_path / "backups", now=now)
        second = timestamped_backup(source, tmp_path / "backups", now=now)
        third = timestamped_backup(source, tmp_path / "backups", now=now)

        assert first.name == "101.conf.20240305-140709.bak"
        assert second.name == "101.conf.20240305-140709.1.bak"
        assert third.name == "101.conf.20240305-140709.2.bak"

    def test_custom_stem(self, tmp_path):
        source = tmp_path / "whatever"
        source.write_text("")
        backup = timestamped_backup(source, tmp_path, stem="202.conf", now=datetime(2024, 1, 1))
        assert backup.name == "202.conf.20240101-000000.bak"

    def test_missing_source(self, tmp_path):
        with pytest.raises(OSError):
            timestamped_backup(tmp_path / "absent.conf", tmp_path / "backups")
