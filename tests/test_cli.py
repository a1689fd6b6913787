"""Tests for the command-line client"""
import argparse

import pytest

from resumable_upload import cli
from resumable_upload.models.session import UploadSession
from resumable_upload.services.planner import plan_chunks
from resumable_upload.services.resume_store import ResumeStore


def test_parse_metadata():
    assert cli.parse_metadata(["album=holiday", "year = 2024"]) == {"album": "holiday", "year": "2024"}
    assert cli.parse_metadata(None) == {}


def test_parse_metadata_rejects_bad_pair():
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_metadata(["no-equals-sign"])


def test_list_without_state(tmp_path, capsys):
    db_url = f"sqlite:///{tmp_path / 'resume.db'}"

    assert cli.main(["--db-url", db_url, "list"]) == 0
    assert "No resumable uploads." in capsys.readouterr().out


def test_list_shows_saved_sessions(tmp_path, capsys):
    db_url = f"sqlite:///{tmp_path / 'resume.db'}"
    ResumeStore(db_url=db_url).save(UploadSession(
        id="sess-42",
        file_name="video.mp4",
        file_size=10 * 1024 * 1024,
        content_type="video/mp4",
        file_hash="abc",
        plan=plan_chunks(10 * 1024 * 1024, 4 * 1024 * 1024),
    ))

    assert cli.main(["--db-url", db_url, "list"]) == 0

    out = capsys.readouterr().out
    assert "sess-42" in out
    assert "video.mp4" in out
    assert "10.00 MB" in out


def test_resume_without_state_exits_nonzero(tmp_path, capsys):
    db_url = f"sqlite:///{tmp_path / 'resume.db'}"

    assert cli.main(["--db-url", db_url, "resume", "unknown-session"]) == 1
    assert "ResumeStateMissingError" in capsys.readouterr().out


def test_subcommand_is_required():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])
