from __future__ import annotations

from pyvalet._redact import redact_for_log, redact_scan_text


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "to": "919000000100",
        "access_token": "EAAG...",
        "hub.verify_token": "secret",
        "nested": {"api_secret": "shh", "scanText": "qr_scan:abcdef:car:1"},
        "items": [{"token": "abc"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["to"] == "919000000100"
    assert redacted["access_token"] == "<redacted>"
    assert redacted["hub.verify_token"] == "<redacted>"
    assert redacted["nested"]["api_secret"] == "<redacted>"
    assert redacted["nested"]["scanText"] == "<redacted>"
    assert redacted["items"][0]["token"] == "<redacted>"


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_summarizes_bytes() -> None:
    assert redact_for_log(b"\x00" * 12) == "<bytes:12b>"


def test_redact_scan_text_masks_token() -> None:
    assert redact_scan_text("qr_scan:abcdef0123:car1:919000000100") == "qr_scan:abcd…:car1:919000000100"
    assert redact_scan_text("hello") == "hello"
