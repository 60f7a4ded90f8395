"""Tests for mailbox_sync.composer."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from mailbox_sync.composer import (
    FORWARD_SEPARATOR,
    compose,
    forward_subject,
    quote_forwarded,
    quote_forwarded_html,
    reply_subject,
    unique_content_ids,
)
from mailbox_sync.errors import SendError
from mailbox_sync.models import Address, OutgoingAttachment

NOW = datetime(2025, 6, 2, 9, 0, tzinfo=UTC)
ME = Address(email="me@example.com", name="Me")
ALICE = Address(email="alice@example.com", name="Alice")
BOB = Address(email="bob@example.com")


class TestSubjects:
    @pytest.mark.parametrize(
        "subject, expected",
        [
            ("Intro", "Re: Intro"),
            ("Re: Intro", "Re: Intro"),
            ("RE: Fwd: Intro", "Re: Intro"),
            ("", "Re:"),
        ],
    )
    def test_reply_subject(self, subject, expected):
        assert reply_subject(subject) == expected

    @pytest.mark.parametrize(
        "subject, expected",
        [
            ("Intro", "Fwd: Intro"),
            ("Fw: Re: Intro", "Fwd: Intro"),
        ],
    )
    def test_forward_subject(self, subject, expected):
        assert forward_subject(subject) == expected


class TestCompose:
    def test_headers(self):
        composed = compose(
            sender=ME,
            to=[ALICE],
            cc=[BOB],
            subject="Re: Intro",
            body_text="Thanks!",
            in_reply_to="<a2@example.com>",
            references=["<a1@example.com>", "<a2@example.com>"],
            now=NOW,
        )
        msg = composed.message
        assert msg["From"] == "Me <me@example.com>"
        assert msg["To"] == "Alice <alice@example.com>"
        assert msg["Cc"] == "bob@example.com"
        assert msg["Subject"] == "Re: Intro"
        assert msg["In-Reply-To"] == "<a2@example.com>"
        assert msg["References"] == "<a1@example.com> <a2@example.com>"
        assert msg["Message-ID"] == composed.message_id
        assert composed.message_id.endswith("@example.com>")
        assert msg.get_content_type() == "text/plain"
        assert msg.get_content().strip() == "Thanks!"

    def test_bcc_only_in_envelope(self):
        composed = compose(
            sender=ME, to=[ALICE], bcc=[BOB, ALICE], subject="Hi", body_text="x", now=NOW
        )
        assert composed.message["Bcc"] is None
        assert composed.envelope_recipients == ["alice@example.com", "bob@example.com"]

    def test_html_alternative(self):
        composed = compose(
            sender=ME, to=[ALICE], subject="Hi", body_text="plain", body_html="<p>rich</p>", now=NOW
        )
        msg = composed.message
        assert msg.get_content_type() == "multipart/alternative"
        assert msg.get_body(preferencelist=("html",)).get_content().strip() == "<p>rich</p>"
        assert msg.get_body(preferencelist=("plain",)).get_content().strip() == "plain"

    def test_attachments(self):
        composed = compose(
            sender=ME,
            to=[ALICE],
            subject="Files",
            body_text="see attached",
            attachments=[
                OutgoingAttachment(file_name="report.pdf", content_type="application/pdf", data=b"%PDF-1.4"),
                OutgoingAttachment(
                    file_name="logo.png",
                    content_type="image/png",
                    data=b"\x89PNG",
                    is_inline=True,
                    content_id="logo@example.com",
                ),
            ],
            now=NOW,
        )
        msg = composed.message
        assert msg.get_content_type() == "multipart/mixed"
        parts = {part.get_filename(): part for part in msg.iter_attachments()}
        assert parts["report.pdf"].get_content() == b"%PDF-1.4"
        assert parts["report.pdf"].get_content_disposition() == "attachment"
        assert parts["logo.png"].get_content_disposition() == "inline"
        assert parts["logo.png"]["Content-ID"] == "<logo@example.com>"
        assert len(composed.attachments) == 2

    def test_requires_a_recipient(self):
        with pytest.raises(SendError, match="recipient"):
            compose(sender=ME, to=[], subject="Hi", body_text="x", now=NOW)

    def test_unique_message_ids(self):
        first = compose(sender=ME, to=[ALICE], subject="Hi", body_text="x", now=NOW)
        second = compose(sender=ME, to=[ALICE], subject="Hi", body_text="x", now=NOW)
        assert first.message_id != second.message_id


class TestQuoteForwarded:
    def test_plain_quote(self):
        quoted = quote_forwarded(
            sender="Alice <alice@example.com>",
            sent_at=datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
            subject="Intro",
            to=["me@example.com"],
            body_text="Hello there",
        )
        lines = quoted.splitlines()
        assert lines[0] == FORWARD_SEPARATOR
        assert "From: Alice <alice@example.com>" in lines
        assert "Subject: Intro" in lines
        assert "To: me@example.com" in lines
        assert lines[-1] == "Hello there"

    def test_missing_body(self):
        quoted = quote_forwarded(
            sender="a@example.com", sent_at=NOW, subject="x", to=[], body_text=None
        )
        assert quoted.endswith("\n")

    def test_html_escapes(self):
        assert quote_forwarded_html("a < b\nc") == "<blockquote>a &lt; b<br>c</blockquote>"


class TestUniqueContentIds:
    def test_first_claim_wins(self):
        attachments = unique_content_ids(
            [
                OutgoingAttachment(file_name="a.png", content_type="image/png", data=b"a", content_id="<logo>"),
                OutgoingAttachment(file_name="b.png", content_type="image/png", data=b"b", content_id="logo"),
                OutgoingAttachment(file_name="c.txt", content_type="text/plain", data=b"c", content_id="  "),
            ]
        )
        assert [a.content_id for a in attachments] == ["logo", None, None]
        assert [a.file_name for a in attachments] == ["a.png", "b.png", "c.txt"]

    def test_compose_emits_each_content_id_once(self):
        composed = compose(
            sender=ME,
            to=[ALICE],
            subject="Logos",
            body_text="x",
            attachments=[
                OutgoingAttachment(file_name="a.png", content_type="image/png", data=b"a", is_inline=True,
                                   content_id="logo"),
                OutgoingAttachment(file_name="b.png", content_type="image/png", data=b"b", is_inline=True,
                                   content_id="logo"),
            ],
            now=NOW,
        )
        content_ids = [part["Content-ID"] for part in composed.message.iter_attachments()]
        assert content_ids == ["<logo>", None]
        assert [a.content_id for a in composed.attachments] == ["logo", None]
