"""Tests for document text preparation."""

import base64

from models import Document
from preprocessing import decode_base64_text, normalize_text, prepare_document


def b64(text: str, encoding: str = "utf-8") -> str:
    return base64.b64encode(text.encode(encoding)).decode("ascii")


class TestPrepareDocument:
    def test_plain_text_kept(self):
        doc = prepare_document(Document(id="d", text="Line one\r\nLine two"))
        assert doc.text == "Line one\nLine two"
        assert doc.content is None

    def test_decodes_base64_content(self):
        doc = prepare_document(Document(id="d", content=b64("# Lease\n\nRent is $2,000.")))
        assert doc.text == "# Lease\n\nRent is $2,000."
        assert doc.content is None

    def test_text_takes_precedence_over_content(self):
        doc = prepare_document(Document(id="d", text="plain", content=b64("encoded")))
        assert doc.text == "plain"

    def test_invalid_content_gives_empty_text(self):
        doc = prepare_document(Document(id="d", content="not base64 !!"))
        assert doc.text == ""

    def test_does_not_mutate_input(self):
        original = Document(id="d", content=b64("hello"))
        prepare_document(original)
        assert original.text == ""
        assert original.content is not None


class TestDecodeBase64Text:
    def test_utf8(self):
        assert decode_base64_text(b64("Grüße")) == "Grüße"

    def test_latin1_fallback(self):
        assert decode_base64_text(b64("Grüße", "latin-1")) == "Grüße"

    def test_wrapped_base64(self):
        encoded = b64("a fairly long document body " * 4)
        wrapped = "\n".join(encoded[i:i + 20] for i in range(0, len(encoded), 20))
        assert decode_base64_text(wrapped) == "a fairly long document body " * 4


class TestNormalizeText:
    def test_line_endings(self):
        assert normalize_text("a\r\nb\rc\n") == "a\nb\nc\n"

    def test_strips_nul(self):
        assert normalize_text("a\x00b") == "ab"
