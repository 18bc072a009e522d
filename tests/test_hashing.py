"""Tests for content identity hashing."""

import hashlib

from capture_bridge.hashing import (
    AUDIO_FINGERPRINT_BYTES,
    audio_fingerprint,
    email_content_identity,
    normalize_email_body,
    normalize_text,
    normalize_whitespace,
    sha256_hex,
    strip_html,
    text_identity,
)


def test_sha256_hex_is_lowercase_64_chars():
    digest = sha256_hex("hello")
    assert len(digest) == 64
    assert digest == digest.lower()
    assert digest == hashlib.sha256(b"hello").hexdigest()


def test_text_identity_ignores_line_endings_and_outer_whitespace():
    assert text_identity("line one\r\nline two\n") == text_identity("  line one\nline two")
    assert normalize_text("\r\nabc\r\n") == "abc"


def test_text_identity_differs_for_different_content():
    assert text_identity("buy milk") != text_identity("buy eggs")


def test_strip_html_drops_script_and_style_blocks():
    html = "<style>p{color:red}</style><p>Hello</p><script>alert(1)</script> world"
    assert strip_html(html) == "Hello world"


def test_strip_html_decodes_entities():
    assert strip_html("Tom &amp; Jerry &lt;3 &#39;x&#39; &#x41;") == "Tom & Jerry <3 'x' A"


def test_normalize_whitespace_collapses_blank_lines_and_spaces():
    text = "  Hello\t\tthere  \r\n\r\n\r\n\r\nSecond   para  "
    assert normalize_whitespace(text) == "Hello there\n\nSecond para"


def test_email_identity_is_stable_across_formatting():
    plain = "Meeting notes\n\nShip it on Friday"
    html = "<div>Meeting   notes</div>\r\n\r\n\r\n<p>Ship it on&nbsp;Friday</p>"
    assert normalize_email_body(html) == plain
    assert email_content_identity(html) == email_content_identity(plain)


def test_audio_fingerprint_hashes_only_the_head(tmp_path):
    head = b"a" * AUDIO_FINGERPRINT_BYTES
    one = tmp_path / "one.m4a"
    two = tmp_path / "two.m4a"
    one.write_bytes(head + b"tail-one")
    two.write_bytes(head + b"tail-two")

    assert audio_fingerprint(one) == audio_fingerprint(two)
    assert audio_fingerprint(one) == hashlib.sha256(head).hexdigest()


def test_audio_fingerprint_small_file(tmp_path):
    memo = tmp_path / "memo.m4a"
    memo.write_bytes(b"short memo")
    assert audio_fingerprint(memo) == hashlib.sha256(b"short memo").hexdigest()
