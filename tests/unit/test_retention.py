"""
Unit tests for retention policy management (bfrg/backup/retention.py).

Tests RetentionManager for cleaning up old archive directories.
"""

import os
import logging
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from bfrg.backup.retention import RetentionManager


def make_archive_dir(target, name, mtime):
    path = target / name
    path.mkdir()
    (path / 'keys.tar.xz.gpg').write_bytes(b'data')
    os.utime(path, (mtime, mtime))
    return path


class TestRetentionManager:
    """Test RetentionManager age filtering."""

    @freeze_time("2024-01-15")
    def test_removes_only_expired_epoch_directory(self, tmp_path):
        """Test that an old archive is removed and a future-dated one is kept."""
        old = make_archive_dir(tmp_path, '1000000000', 1000000000)
        new = make_archive_dir(tmp_path, '9999999999', 9999999999)

        manager = RetentionManager(keep_days=365)
        deleted = manager.cleanup(str(tmp_path))

        assert deleted == 1
        assert not old.exists()
        assert new.exists()

    @freeze_time("2024-01-15")
    def test_ignores_directories_not_named_by_epoch(self, tmp_path):
        """Test that unrelated content at a destination is never touched."""
        short = make_archive_dir(tmp_path, '123456789', 1000000000)
        named = make_archive_dir(tmp_path, 'photos', 1000000000)
        longer = make_archive_dir(tmp_path, '10000000000', 1000000000)
        plain_file = tmp_path / '1000000001'
        plain_file.write_text('not a directory')
        os.utime(plain_file, (1000000001, 1000000001))

        manager = RetentionManager(keep_days=1)
        deleted = manager.cleanup(str(tmp_path))

        assert deleted == 0
        assert short.exists()
        assert named.exists()
        assert longer.exists()
        assert plain_file.exists()

    @freeze_time("2024-01-15")
    def test_window_boundary(self, tmp_path):
        """Test that a directory younger than the window survives."""
        # 2024-01-05 is 10 days before the frozen clock
        ten_days_ago = 1704412800
        recent = make_archive_dir(tmp_path, '1704412800', ten_days_ago)

        assert RetentionManager(keep_days=30).cleanup(str(tmp_path)) == 0
        assert recent.exists()

        assert RetentionManager(keep_days=5).cleanup(str(tmp_path)) == 1
        assert not recent.exists()

    @freeze_time("2024-01-15")
    def test_removes_every_archive_when_all_expired(self, tmp_path, caplog):
        """Test the blunt filter: no archive is kept back, but a warning is logged."""
        make_archive_dir(tmp_path, '1000000000', 1000000000)
        make_archive_dir(tmp_path, '1100000000', 1100000000)

        with caplog.at_level(logging.WARNING):
            deleted = RetentionManager(keep_days=30).cleanup(str(tmp_path))

        assert deleted == 2
        assert os.listdir(tmp_path) == []
        assert 'all will be removed' in caplog.text

    def test_missing_target_is_skipped(self, tmp_path):
        """Test that a missing destination is logged and skipped."""
        manager = RetentionManager(keep_days=1)

        assert manager.cleanup(str(tmp_path / 'missing')) == 0

    @freeze_time("2024-01-15")
    def test_deletion_failure_is_logged(self, tmp_path, caplog):
        """Test that a failing removal does not stop retention."""
        make_archive_dir(tmp_path, '1000000000', 1000000000)
        make_archive_dir(tmp_path, '1100000000', 1100000000)

        with patch('bfrg.backup.retention.shutil.rmtree', side_effect=[OSError('busy'), None]):
            deleted = RetentionManager(keep_days=30).cleanup(str(tmp_path))

        assert deleted == 1
        assert 'Failed to remove' in caplog.text

    @freeze_time("2024-01-15")
    def test_enforce_all_targets(self, tmp_path):
        """Test summary over several local targets."""
        first = tmp_path / 'a'
        second = tmp_path / 'b'
        first.mkdir()
        second.mkdir()
        make_archive_dir(first, '1000000000', 1000000000)
        make_archive_dir(second, '9999999999', 9999999999)

        summary = RetentionManager(keep_days=365).enforce([str(first), str(second)])

        assert summary == {str(first): 1, str(second): 0}


class TestRetentionCandidates:
    """Test candidate selection without deleting."""

    @freeze_time("2024-01-15")
    def test_candidates_sorted_by_name(self, tmp_path):
        make_archive_dir(tmp_path, '1100000000', 1100000000)
        make_archive_dir(tmp_path, '1000000000', 1000000000)

        candidates = RetentionManager(keep_days=1).candidates(str(tmp_path))

        assert candidates == [
            str(tmp_path / '1000000000'),
            str(tmp_path / '1100000000'),
        ]

    @pytest.mark.parametrize('keep_days', [0, 1, 3650])
    @freeze_time("2024-01-15")
    def test_future_directory_never_expires(self, tmp_path, keep_days):
        make_archive_dir(tmp_path, '9999999999', 9999999999)

        assert RetentionManager(keep_days=keep_days).candidates(str(tmp_path)) == []
