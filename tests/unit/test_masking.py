"""Unit tests for server-side PII masking."""

from __future__ import annotations

import pytest

from crmguard.disclosure.leads import Lead
from crmguard.disclosure.masking import mask_email, mask_field, mask_phone


class TestMaskEmail:
    @pytest.mark.parametrize(
        "raw,masked",
        [
            ("john.doe@company.com", "j*****@company.com"),
            ("ab@x.io", "a*@x.io"),
            ("a@x.io", "*@x.io"),
            ("no-at-sign", "***@***"),
        ],
    )
    def test_masks(self, raw: str, masked: str) -> None:
        assert mask_email(raw) == masked

    def test_none_passes_through(self) -> None:
        assert mask_email(None) is None


class TestMaskPhone:
    @pytest.mark.parametrize(
        "raw,masked",
        [
            ("+1 (555) 123-4567", "(***) ***-4567"),
            ("5551234567", "******4567"),
            ("555-123-4567", "******4567"),
            ("12", "**"),
        ],
    )
    def test_masks(self, raw: str, masked: str) -> None:
        assert mask_phone(raw) == masked

    def test_none_passes_through(self) -> None:
        assert mask_phone(None) is None


class TestMaskField:
    def test_dispatches_by_kind(self) -> None:
        assert mask_field("email", "jo@x.io") == "j*@x.io"
        assert mask_field("phone", "5551234567") == "******4567"

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValueError):
            mask_field("ssn", "123")

    def test_lead_listing_never_carries_raw_values(self) -> None:
        lead = Lead(id="lead-1", name="Bob", email="bob@corp.com", phone="5551234567", assigned_to="agent-1")
        listing = lead.masked()
        assert "bob@corp.com" not in listing.values()
        assert "5551234567" not in listing.values()
