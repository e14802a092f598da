from unittest.mock import patch

import magic
import pytest

from app.models.records import Kind, Role
from app.services.classifier import SNIFF_LENGTH, classify, extension_of, sniff
from app.services.errors import BlockedError, TooLargeError
from app.services.policy_filter import PolicyFilter
from conftest import make_settings

PNG = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR" + b"\x00" * 32
JPEG = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00" + b"\x00" * 32
GIF = b"GIF89a" + b"\x00" * 32
PDF = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n"


@pytest.mark.parametrize(
    "head, content_type",
    [
        (PNG, "image/png"),
        (JPEG, "image/jpeg"),
        (GIF, "image/gif"),
        (PDF, "application/pdf"),
        (b"<!DOCTYPE html><html></html>", "text/html"),
        (b"just some words\n", "text/plain"),
        (bytes(range(256)), "application/octet-stream"),
    ],
)
def test_sniff(head, content_type):
    assert sniff(head) == content_type


def test_sniff_empty_head():
    assert sniff(b"") == "application/octet-stream"


@pytest.mark.parametrize("reported", ["application/x-empty", "inode/x-empty"])
def test_sniff_maps_empty_types(reported):
    with patch("app.services.classifier.magic.from_buffer", return_value=reported):
        assert sniff(b"\x00") == "application/octet-stream"


def test_sniff_strips_parameters():
    with patch("app.services.classifier.magic.from_buffer", return_value="Text/HTML; charset=us-ascii"):
        assert sniff(b"<p>hi</p>") == "text/html"


def test_sniff_generic_result_that_decodes_is_text():
    with patch("app.services.classifier.magic.from_buffer", return_value="application/octet-stream"):
        assert sniff(b"plain words") == "text/plain"
        assert sniff(b"\x00\x01\x02") == "application/octet-stream"


def test_sniff_survives_libmagic_errors():
    with patch("app.services.classifier.magic.from_buffer", side_effect=magic.MagicException("broken database")):
        assert sniff(PNG) == "application/octet-stream"


DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@patch("app.services.classifier.magic.from_buffer", return_value="application/zip")
def test_zip_container_takes_extension_type(from_buffer):
    with patch("app.services.classifier.guess_from_extension", return_value=DOCX):
        result = classify(b"PK\x03\x04", "report.docx")
    assert result.content_type == DOCX
    assert result.kind is Kind.FILE
    assert result.extension == "docx"


@patch("app.services.classifier.magic.from_buffer", return_value="application/zip")
def test_zip_with_unknown_extension_stays_zip(from_buffer):
    result = classify(b"PK\x03\x04", "bundle.qqq")
    assert result.content_type == "application/zip"
    assert result.kind is Kind.FILE


def test_magic_beats_extension():
    result = classify(PNG, "totally_text.txt")
    assert result.kind is Kind.IMAGE
    assert result.content_type == "image/png"
    assert result.extension == "txt"


def test_image_without_extension():
    result = classify(PNG, None)
    assert result.kind is Kind.IMAGE
    assert result.extension == "png"


def test_plain_text_without_filename():
    result = classify(b"hello there\n", None)
    assert result == classify(b"hello there\n", "")
    assert result.kind is Kind.TEXT
    assert result.content_type == "text/plain"
    assert result.extension == "txt"


def test_source_code_is_text():
    result = classify(b"fn main() {}\n", "main.rs")
    assert result.kind is Kind.TEXT
    assert result.content_type.startswith("text/")
    assert result.extension == "rs"


def test_json_is_text():
    result = classify(b'{"a": 1}', "data.json")
    assert result.kind is Kind.TEXT
    assert result.content_type == "application/json"


def test_text_with_image_extension_stays_text():
    result = classify(b"not really a picture", "photo.png")
    assert result.kind is Kind.TEXT
    assert result.content_type == "text/plain"


def test_binary_is_file():
    result = classify(bytes(range(256)) * 4, "blob.bin")
    assert result.kind is Kind.FILE
    assert result.content_type == "application/octet-stream"


def test_pdf_is_file():
    result = classify(PDF, "paper.pdf")
    assert result.kind is Kind.FILE
    assert result.extension == "pdf"


def test_utf8_cut_at_sniff_window_is_text():
    head = ("a" * (SNIFF_LENGTH - 1)).encode() + "é".encode()
    assert classify(head, "notes").kind is Kind.TEXT


def test_only_head_is_inspected():
    head = b"a" * SNIFF_LENGTH
    assert classify(head + b"\x00\xff", "x") == classify(head, "x")


@pytest.mark.parametrize(
    "filename, extension",
    [
        ("file.PNG", "png"),
        ("archive.tar.gz", "gz"),
        ("C:\\Users\\me\\notes.txt", "txt"),
        ("noext", ""),
        (".bashrc", "bashrc"),
        (None, ""),
    ],
)
def test_extension_of(filename, extension):
    assert extension_of(filename) == extension


# Policy filter

@pytest.fixture
def policy():
    return PolicyFilter(make_settings(filesize_limit_kb=512, admin_filesize_limit_kb=None))


def test_policy_blocks_extension(policy):
    with pytest.raises(BlockedError):
        policy.check("application/octet-stream", "EXE", 10, Role.NORMAL)


def test_policy_blocks_content_type_with_parameters(policy):
    with pytest.raises(BlockedError) as excinfo:
        policy.check("application/x-sh; charset=utf-8", "txt", 10, Role.ADMIN)
    assert excinfo.value.file_type == "application/x-sh"


def test_policy_size_ceiling(policy):
    policy.check("text/plain", "txt", 512 * 1024, Role.NORMAL)
    with pytest.raises(TooLargeError):
        policy.check("text/plain", "txt", 512 * 1024 + 1, Role.NORMAL)


def test_policy_admin_unlimited(policy):
    assert policy.ceiling_for(Role.ADMIN) is None
    policy.check("text/plain", "txt", 10 * 1024 ** 3, Role.ADMIN)


def test_policy_admin_still_blocked(policy):
    with pytest.raises(BlockedError):
        policy.check("text/plain", "bat", 1, Role.ADMIN)


def test_classified_shell_script_is_blocked(policy):
    result = classify(b"#!/bin/sh\nrm -rf /tmp/x\n", "innocent.txt")
    with pytest.raises(BlockedError):
        policy.check_blocklist(result.content_type, result.extension)
