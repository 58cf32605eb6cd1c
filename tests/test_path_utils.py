"""Tests for path handling helpers."""

import os
from datetime import datetime, timezone

import pytest

from odsync.path_utils import (
    SecurityError,
    cleanup_empty_parent_dirs,
    conflict_copy_name,
    is_ignored,
    join_remote_path,
    normalize_relative_path,
    relative_key,
    validate_sync_path,
)

WHEN = datetime(2024, 5, 1, 10, 15, 0, tzinfo=timezone.utc).timestamp()


class TestNormalize:

    @pytest.mark.parametrize('raw, expected', [
        ('/drive/root:/Documents/a.txt', 'Documents/a.txt'),
        ('Documents\\sub\\a.txt', 'Documents/sub/a.txt'),
        ('./a//b/', 'a/b'),
        ('/', ''),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_relative_path(raw) == expected

    def test_traversal_is_rejected(self):
        with pytest.raises(SecurityError):
            normalize_relative_path('Documents/../../etc/passwd')

    def test_join_remote_path(self):
        assert join_remote_path('', 'a.txt') == 'a.txt'
        assert join_remote_path('/Work/', 'sub/a.txt') == 'Work/sub/a.txt'
        assert join_remote_path('Work', '') == 'Work'


class TestIgnored:

    @pytest.mark.parametrize('path', ['.hidden', 'dir/.git/config', 'a.txt.123.odsync-part'])
    def test_ignored(self, path):
        assert is_ignored(path)

    @pytest.mark.parametrize('path', ['a.txt', 'dir/b.tar.gz', 'x.hidden'])
    def test_not_ignored(self, path):
        assert not is_ignored(path)


class TestValidateSyncPath:

    def test_regular_path(self, tmp_path):
        assert validate_sync_path('a/b.txt', tmp_path) == (tmp_path / 'a' / 'b.txt').resolve()

    def test_escape_is_rejected(self, tmp_path):
        with pytest.raises(SecurityError):
            validate_sync_path('../outside.txt', tmp_path)

    def test_symlink_is_rejected(self, tmp_path):
        (tmp_path / 'real').mkdir()
        os.symlink(tmp_path / 'real', tmp_path / 'link')

        with pytest.raises(SecurityError):
            validate_sync_path('link/file.txt', tmp_path)


class TestConflictCopyName:

    def test_name_keeps_directory_and_extension(self):
        assert (conflict_copy_name('docs/report.docx', WHEN)
                == 'docs/report (Conflict 2024-05-01 101500).docx')

    def test_name_without_extension(self):
        assert conflict_copy_name('Makefile', WHEN) == 'Makefile (Conflict 2024-05-01 101500)'

    def test_taken_names_get_a_counter(self):
        taken = {'a (Conflict 2024-05-01 101500).txt', 'a (Conflict 2024-05-01 101500) 2.txt'}

        name = conflict_copy_name('a.txt', WHEN, taken.__contains__)

        assert name == 'a (Conflict 2024-05-01 101500) 3.txt'


def test_cleanup_empty_parent_dirs(tmp_path):
    nested = tmp_path / 'a' / 'b' / 'c'
    nested.mkdir(parents=True)
    (tmp_path / 'a' / 'keep.txt').write_text('keep')

    cleanup_empty_parent_dirs(nested / 'deleted.txt', tmp_path)

    assert not (tmp_path / 'a' / 'b').exists()
    assert (tmp_path / 'a').exists()


def test_relative_key(tmp_path):
    assert relative_key(tmp_path / 'a' / 'b.txt', tmp_path) == 'a/b.txt'
    assert relative_key(tmp_path.parent / 'other', tmp_path) is None
