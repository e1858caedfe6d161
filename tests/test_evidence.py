"""Tests for the evidence store and file text extraction."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from pypdf.errors import PdfReadError

from agent_resolve.errors import DeadlinePassed, ExtractionFailed, InvalidDisputeState, NotParty
from agent_resolve.evidence import add_evidence, add_file_evidence, list_evidence
from agent_resolve.extraction import extract_text
from agent_resolve.models import EvidenceDB, EvidenceType, PartyRole

from conftest import NOW


# ---------------------------------------------------------------------------
# Evidence store
# ---------------------------------------------------------------------------


class TestAddEvidence:
    def test_entries_numbered_in_submission_order(self, db, parties, make_dispute):
        dispute = make_dispute()
        first = add_evidence(
            db, dispute.id, parties.claimant, EvidenceType.AGREEMENT_EXCERPT, "Contract", "Deliver by March 1st", NOW
        )
        second = add_evidence(
            db, dispute.id, parties.respondent, EvidenceType.COMMUNICATION_LOG, "Email", "Sent the report Feb 28", NOW
        )
        third = add_evidence(
            db, dispute.id, parties.claimant, EvidenceType.TIMELINE, "Timeline", "Nothing arrived by March 2nd", NOW
        )

        assert [e.sequence for e in (first, second, third)] == [1, 2, 3]
        assert first.submitted_by_role == PartyRole.CLAIMANT
        assert second.submitted_by_role == PartyRole.RESPONDENT
        assert [e.title for e in list_evidence(db, dispute.id, parties.respondent)] == [
            "Contract",
            "Email",
            "Timeline",
        ]

    def test_rejected_while_filed(self, db, parties, make_dispute):
        dispute = make_dispute(respond=False)
        with pytest.raises(InvalidDisputeState):
            add_evidence(db, dispute.id, parties.claimant, EvidenceType.OTHER, "Early", "Too early to submit", NOW)

    def test_rejected_after_window(self, db, parties, make_dispute):
        dispute = make_dispute()
        with pytest.raises(DeadlinePassed):
            add_evidence(
                db,
                dispute.id,
                parties.claimant,
                EvidenceType.OTHER,
                "Late",
                "Submitted after the window",
                NOW + timedelta(hours=24),
            )

    def test_outsider_rejected(self, db, make_dispute, make_agent):
        dispute = make_dispute()
        outsider = make_agent("outsider")
        with pytest.raises(NotParty):
            add_evidence(db, dispute.id, outsider, EvidenceType.OTHER, "Noise", "I was not involved", NOW)
        with pytest.raises(NotParty):
            list_evidence(db, dispute.id, outsider)


class TestAddFileEvidence:
    def test_text_file_is_extracted(self, db, parties, make_dispute):
        dispute = make_dispute()
        item = add_file_evidence(
            db, dispute.id, parties.claimant, "Chat log", "chat.txt", b"  buyer: where is the report?\n", now=NOW
        )

        assert item.content == "buyer: where is the report?"
        assert item.evidence_type == EvidenceType.DOCUMENT
        assert item.source_filename == "chat.txt"
        assert not item.truncated

    def test_failed_extraction_leaves_no_entry(self, db, parties, make_dispute):
        dispute = make_dispute()
        with pytest.raises(ExtractionFailed):
            add_file_evidence(db, dispute.id, parties.claimant, "Scan", "scan.png", b"\x89PNG...", now=NOW)
        assert db.query(EvidenceDB).count() == 0


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _fake_reader(pages: list[str], encrypted: bool = False) -> MagicMock:
    reader = MagicMock()
    reader.is_encrypted = encrypted
    reader.pages = []
    for text in pages:
        page = MagicMock()
        page.extract_text.return_value = text
        reader.pages.append(page)
    return reader


class TestExtractText:
    def test_plain_text(self):
        result = extract_text(b"hello world", "notes.md")
        assert result.text == "hello world"
        assert result.page_count is None

    def test_empty_file(self):
        with pytest.raises(ExtractionFailed):
            extract_text(b"", "empty.txt")

    def test_invalid_utf8(self):
        with pytest.raises(ExtractionFailed):
            extract_text(b"\xff\xfe\xfa", "broken.txt")

    def test_unsupported_extension(self):
        with pytest.raises(ExtractionFailed, match="Unsupported file type"):
            extract_text(b"data", "archive.zip")

    def test_truncates_long_text(self):
        result = extract_text(b"a" * 100, "long.txt", max_chars=10)
        assert result.text == "a" * 10
        assert result.truncated

    @patch("agent_resolve.extraction.PdfReader")
    def test_pdf_pages_joined(self, mock_reader_cls):
        mock_reader_cls.return_value = _fake_reader(["Page one text", "", "Page three text"])
        result = extract_text(b"%PDF-1.7", "contract.pdf")
        assert result.text == "Page one text\n\nPage three text"
        assert result.page_count == 3

    @patch("agent_resolve.extraction.PdfReader")
    def test_pdf_without_text_layer(self, mock_reader_cls):
        mock_reader_cls.return_value = _fake_reader(["", "  "])
        with pytest.raises(ExtractionFailed, match="scanned"):
            extract_text(b"%PDF-1.7", "scan.pdf")

    @patch("agent_resolve.extraction.PdfReader")
    def test_encrypted_pdf(self, mock_reader_cls):
        mock_reader_cls.return_value = _fake_reader(["secret"], encrypted=True)
        with pytest.raises(ExtractionFailed, match="encrypted"):
            extract_text(b"%PDF-1.7", "locked.pdf")

    @patch("agent_resolve.extraction.PdfReader")
    def test_corrupt_pdf(self, mock_reader_cls):
        mock_reader_cls.side_effect = PdfReadError("EOF marker not found")
        with pytest.raises(ExtractionFailed):
            extract_text(b"%PDF-garbage", "corrupt.pdf")
