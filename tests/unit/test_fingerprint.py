"""Unit tests for content fingerprints"""

from knowledge_pipeline.services.fingerprint import fingerprint, has_changed


def test_fingerprint_is_sha256_hex():
    assert fingerprint("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert len(fingerprint("hello")) == 64


def test_fingerprint_is_deterministic_and_content_sensitive():
    assert fingerprint("Protein targets") == fingerprint("Protein targets")
    assert fingerprint("Protein targets") != fingerprint("Protein targets.")


def test_fingerprint_handles_unicode():
    assert fingerprint("café") != fingerprint("cafe")


def test_has_changed():
    stored = fingerprint("v1")

    assert has_changed("v1", None) is True
    assert has_changed("v1", stored) is False
    assert has_changed("v2", stored) is True
