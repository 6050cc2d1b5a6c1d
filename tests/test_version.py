import subprocess
from unittest import mock

import pytest

from zfspv import version


@pytest.fixture
def clean(monkeypatch, tmp_path):
    monkeypatch.setattr(version, "VERSION", "")
    monkeypatch.setattr(version, "VERSION_META", "")
    monkeypatch.setattr(version, "GIT_COMMIT", "")
    monkeypatch.setenv(version.HOME_ENV, str(tmp_path))
    return tmp_path


def test_get_uses_variable(clean, monkeypatch):
    monkeypatch.setattr(version, "VERSION", "2.3.0")
    assert version.get() == "2.3.0"
    assert version.current() == "2.3.0"


def test_get_reads_file(clean):
    (clean / version.VERSION_FILE).write_text("  2.4.1\n")
    assert version.get() == "2.4.1"


def test_get_missing_file(clean):
    assert version.get() == ""


def test_build_meta_variable(clean, monkeypatch):
    monkeypatch.setattr(version, "VERSION_META", "dev")
    assert version.get_build_meta() == "-dev"


def test_build_meta_file(clean):
    (clean / version.BUILD_META_FILE).write_text("rc1\n")
    assert version.get_build_meta() == "-rc1"


def test_build_meta_missing(clean):
    assert version.get_build_meta() == ""


def test_git_commit_variable(clean, monkeypatch):
    monkeypatch.setattr(version, "GIT_COMMIT", "0123456789abcdef")
    assert version.get_git_commit() == "0123456789abcdef"


def test_git_commit_from_git(clean):
    done = subprocess.CompletedProcess(args=[], returncode=0, stdout="fedcba9876543210\n")
    with mock.patch("zfspv.version.subprocess.run", return_value=done) as run:
        assert version.get_git_commit() == "fedcba9876543210"
    assert run.call_args.args[0] == ["git", "rev-parse", "--verify", "HEAD"]


def test_git_commit_failure(clean):
    with mock.patch("zfspv.version.subprocess.run", side_effect=FileNotFoundError("git")):
        assert version.get_git_commit() == ""


def test_version_details_and_verbose(clean, monkeypatch):
    monkeypatch.setattr(version, "VERSION", "1.0")
    monkeypatch.setattr(version, "GIT_COMMIT", "abcdef1234567")
    assert version.get_version_details() == "zfs-1.0-abcdef1"
    assert version.verbose() == "1.0-abcdef1"
    assert version.get_version_details() == "zfs-" + version.verbose()


def test_short_commit_raises(clean, monkeypatch):
    monkeypatch.setattr(version, "VERSION", "1.0")
    monkeypatch.setattr(version, "GIT_COMMIT", "abc")
    with pytest.raises(ValueError):
        version.verbose()
    with pytest.raises(ValueError):
        version.get_version_details()