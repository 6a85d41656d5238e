from __future__ import annotations

from pathlib import Path

import pytest

from safetykg.ingestion.text_file_parser import TextFileParser, decode_text_bytes


def test_utf8_text_is_read_with_normalized_newlines(tmp_path: Path) -> None:
    path = tmp_path / "notes.txt"
    path.write_bytes("第一行\r\n第二行\r第三行\n".encode("utf-8"))

    text, encoding = TextFileParser().parse_file(path)

    assert encoding == "utf-8"
    assert text == "第一行\n第二行\n第三行\n"


def test_gbk_text_falls_through_to_gbk(tmp_path: Path) -> None:
    path = tmp_path / "培训.txt"
    path.write_bytes("安全培训：高处作业必须系安全带。".encode("gbk"))

    text, encoding = TextFileParser().parse_file(path)

    assert encoding == "gbk"
    assert text == "安全培训：高处作业必须系安全带。"


def test_empty_bytes_decode_to_empty_text() -> None:
    assert decode_text_bytes(b"") == ("", "utf-8")


def test_unknown_encoding_is_skipped() -> None:
    text, encoding = decode_text_bytes("阀门".encode("utf-8"), ["no-such-codec", "utf-8"])

    assert encoding == "utf-8"
    assert text == "阀门"


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        TextFileParser().parse_file(tmp_path / "absent.txt")
