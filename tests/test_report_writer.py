"""Tests for report_writer.py."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from report_writer import report_filename, report_host, write_report

SGT = timezone(timedelta(hours=8))
FIXED_NOW = datetime(2024, 3, 5, 14, 7, 9, tzinfo=SGT)


def test_report_filename_fixed_time() -> None:
    name = report_filename("https://sg.carousell.com/p/item", FIXED_NOW)
    assert name == "sg.carousell.com-2024-03-05T140709+0800.html"


def test_report_filename_default_time_matches_pattern() -> None:
    name = report_filename("https://example.com/")
    assert re.fullmatch(r"example\.com-\d{4}-\d{2}-\d{2}T\d{6}[+-]\d{4}\.html", name)


def test_report_host_keeps_port_and_drops_credentials() -> None:
    assert report_host("http://user:pw@localhost:8080/x") == "localhost_8080"


def test_write_report_round_trip(tmp_path: Path) -> None:
    html = "<html><body>Résumé ✓</body></html>"
    name = write_report(html, "https://example.com", str(tmp_path), FIXED_NOW)
    assert (tmp_path / name).read_bytes() == html.encode("utf-8")


def test_write_report_accepts_bytes(tmp_path: Path) -> None:
    data = b"\x00\x01<html/>"
    name = write_report(data, "https://example.com", str(tmp_path), FIXED_NOW)
    assert (tmp_path / name).read_bytes() == data


def test_write_report_creates_directory(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "reports"
    name = write_report("<html/>", "https://example.com", str(target), FIXED_NOW)
    assert (target / name).is_file()


def test_write_report_unwritable_target_raises(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    with pytest.raises(OSError):
        write_report("<html/>", "https://example.com", str(blocker), FIXED_NOW)


def test_report_filename_with_tag() -> None:
    name = report_filename("https://example.com", FIXED_NOW, tag="mobile-3")
    assert name == "example.com-2024-03-05T140709+0800-mobile-3.html"
