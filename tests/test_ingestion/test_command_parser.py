"""Tests for the payment command parser.

Pure tests, no database, no network.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from app.services.ingestion.command_parser import PaymentIntent, parse_payment_command


class TestSupportedForms:
    @pytest.mark.parametrize(
        "text, recipient, amount",
        [
            ("send @alice $5.50", "alice", "5.50"),
            ("@wassy_bot send @alice $3", "alice", "3"),
            ("SEND @Alice 12", "alice", "12"),
            ("send $10 to @Bob", "bob", "10"),
            ("please Send 0.25 TO @carol_99 thanks", "carol_99", "0.25"),
            ("pay @dave $7", "dave", "7"),
            ("Pay @Eve .5", "eve", "0.5"),
            ("send @frank $1,250.75 for rent", "frank", "1250.75"),
            ("send @gina $5. thanks!", "gina", "5"),
            ("@wassy_bot send @alice $5.50.", "alice", "5.50"),
            ("Pay @dave $7. Thanks", "dave", "7"),
            ("send @hal $2.", "hal", "2"),
        ],
    )
    def test_extracts_recipient_and_amount(self, text, recipient, amount):
        intent = parse_payment_command(text)
        assert intent == PaymentIntent(recipient=recipient, amount=Decimal(amount))

    def test_amount_is_truncated_to_six_decimals(self):
        intent = parse_payment_command("send @alice $1.23456789")
        assert intent.amount == Decimal("1.234567")


class TestRejected:
    @pytest.mark.parametrize(
        "text",
        [
            "hello world",
            "",
            "send alice $5",
            "send @alice",
            "send @alice $0",
            "send @alice $0.0000001",
            "send @alice $-5",
            "send @alice $abc",
            "send @alice 5.5.5",
            "resend @alice $5",
            "send @ $5",
        ],
    )
    def test_returns_none(self, text):
        assert parse_payment_command(text) is None

    def test_non_ascii_handle_rejected(self):
        assert parse_payment_command("send @ålice $5") is None


class TestPriority:
    def test_first_form_wins_over_later_forms(self):
        """'send @x N' is tried before 'pay @y N'."""
        intent = parse_payment_command("pay @second $2 or send @first $1")
        assert intent.recipient == "first"
        assert intent.amount == Decimal("1")

    def test_first_match_of_same_form_wins(self):
        intent = parse_payment_command("send @alice $1 and send @bob $2")
        assert intent.recipient == "alice"

    def test_invalid_first_match_does_not_fall_through(self):
        """A zero amount in the winning form rejects the whole text."""
        assert parse_payment_command("send @alice $0 then pay @bob $3") is None

    def test_deterministic(self):
        text = "send $4 to @zed, pay @amy $9"
        assert parse_payment_command(text) == parse_payment_command(text)
