"""
Tests for message normalization.

Tests cover:
- Sender resolution fallback chain and its priority
- Phone formatting
- Display name resolution
- Media capture and media failure degradation
- Invalid messages
"""

import asyncio
from datetime import datetime, timezone

import pytest

from harvester.errors import MessageProcessingError
from harvester.media import MediaWriter
from harvester.normalizer import (
    MessageNormalizer,
    format_phone,
    resolve_author_phone,
    resolve_display_name,
)
from harvester.source import ContactInfo, MediaPayload

from conftest import GROUP_ID


class TestFormatPhone:

    def test_prefixes_digits(self):
        assert format_phone("94772147755") == "+94772147755"

    def test_strips_formatting(self):
        assert format_phone("+94 (77) 214-7755") == "+94772147755"

    def test_empty_values(self):
        assert format_phone(None) is None
        assert format_phone("") is None
        assert format_phone("n/a") is None


class TestResolveAuthorPhone:
    """Test the sender fallback chain, first match wins."""

    def test_identity_map_wins_over_contact(self, make_message):
        """A mapped author id beats whatever the contact record says."""
        message = make_message("m1", author_id="162474452119805@lid")
        contact = ContactInfo(id="94779999999@c.us", number="94779999999")

        phone = resolve_author_phone(message, contact, {"162474452119805@lid": "94772147755"})

        assert phone == "+94772147755"

    def test_mapping_without_digits_falls_through(self, make_message):
        message = make_message("m1", author_id="162474452119805@lid")
        contact = ContactInfo(id="162474452119805@lid", number="94770000001")

        assert resolve_author_phone(message, contact, {"162474452119805@lid": "unknown"}) == "+94770000001"

    def test_contact_number(self, make_message):
        message = make_message("m1", author_id="162474452119805@lid")
        contact = ContactInfo(id="162474452119805@lid", number="94770000001")

        assert resolve_author_phone(message, contact, {}) == "+94770000001"

    def test_contact_id_phone_bearing(self, make_message):
        message = make_message("m1", author_id="162474452119805@lid")
        contact = ContactInfo(id="94770000002@c.us")

        assert resolve_author_phone(message, contact, {}) == "+94770000002"

    def test_contact_id_in_identity_map(self, make_message):
        message = make_message("m1", author_id="abc@lid")
        contact = ContactInfo(id="162474452119805@lid")

        phone = resolve_author_phone(message, contact, {"162474452119805@lid": "94770000003"})

        assert phone == "+94770000003"

    def test_author_phone_bearing(self, make_message):
        message = make_message("m1", author_id="94770000004@c.us")

        assert resolve_author_phone(message, None, {}) == "+94770000004"

    def test_author_local_part_shaped_like_phone(self, make_message):
        """No mapping, no contact number, 10-15 digit local part."""
        message = make_message("m1", author_id="162474452119805@lid")
        contact = ContactInfo(id="162474452119805@lid")

        assert resolve_author_phone(message, contact, {}) == "+162474452119805"

    @pytest.mark.parametrize("author_id", ["abcdef@lid", "123456789@lid", "1234567890123456@lid"])
    def test_unresolvable_sender(self, make_message, author_id):
        """Non-numeric or wrongly sized local parts stay unresolved."""
        message = make_message("m1", author_id=author_id)

        assert resolve_author_phone(message, None, {}) is None

    def test_no_author_no_contact(self, make_message):
        message = make_message("m1", author_id=None)

        assert resolve_author_phone(message, None, {}) is None


class TestResolveDisplayName:

    def test_prefers_pushname(self, make_message):
        contact = ContactInfo(id="x@c.us", pushname="Nimal", name="Nimal Perera")
        assert resolve_display_name(make_message("m1"), contact) == "Nimal"

    def test_falls_back_to_name(self, make_message):
        contact = ContactInfo(id="x@c.us", name="Nimal Perera")
        assert resolve_display_name(make_message("m1"), contact) == "Nimal Perera"

    def test_falls_back_to_from_field(self, make_message):
        assert resolve_display_name(make_message("m1"), None) == GROUP_ID


class TestMessageNormalizer:
    """Test building StoredMessage records."""

    def test_normalize_fields(self, fake_source, make_message):
        fake_source.add_contact("94771234567@c.us", pushname="Kamal", number="94771234567")
        raw = make_message("m1", timestamp=1736935200, body="Hi all")

        record = asyncio.run(MessageNormalizer(fake_source).normalize(raw, GROUP_ID, {}))

        assert record.id == "m1"
        assert record.group_id == GROUP_ID
        assert record.message_body == "Hi all"
        assert record.timestamp == 1736935200
        assert record.timestamp_formatted == datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert record.author == "94771234567@c.us"
        assert record.author_phone == "+94771234567"
        assert record.from_name == "Kamal"
        assert record.from_number == GROUP_ID
        assert record.media_path is None

    def test_contact_lookup_failure_degrades(self, fake_source, make_message):
        """Unknown contact: resolution continues without it."""
        raw = make_message("m1", author_id="94770000005@c.us")

        record = asyncio.run(MessageNormalizer(fake_source).normalize(raw, GROUP_ID, {}))

        assert record.author_phone == "+94770000005"
        assert record.from_name == GROUP_ID

    def test_invalid_timestamp_raises(self, fake_source, make_message):
        raw = make_message("m1", timestamp=10 ** 20)

        with pytest.raises(MessageProcessingError):
            asyncio.run(MessageNormalizer(fake_source).normalize(raw, GROUP_ID, {}))

    def test_missing_id_raises(self, fake_source, make_message):
        raw = make_message("")

        with pytest.raises(MessageProcessingError):
            asyncio.run(MessageNormalizer(fake_source).normalize(raw, GROUP_ID, {}))


class TestMediaCapture:
    """Test media download side effect."""

    def test_media_written_by_message_id(self, fake_source, make_message, tmp_path):
        fake_source.media["m1"] = MediaPayload(mime_type="image/jpeg", data=b"\xff\xd8jpeg")
        normalizer = MessageNormalizer(fake_source, MediaWriter(tmp_path / "media"))

        record = asyncio.run(normalizer.normalize(make_message("m1", has_media=True), GROUP_ID, {}))

        assert record.media_path == str(tmp_path / "media" / "m1.jpeg")
        assert (tmp_path / "media" / "m1.jpeg").read_bytes() == b"\xff\xd8jpeg"

    def test_media_failure_keeps_message(self, fake_source, make_message, tmp_path):
        fake_source.broken_media.add("m1")
        normalizer = MessageNormalizer(fake_source, MediaWriter(tmp_path / "media"))

        record = asyncio.run(normalizer.normalize(make_message("m1", has_media=True), GROUP_ID, {}))

        assert record.has_media is True
        assert record.media_path is None

    def test_media_absent_payload(self, fake_source, make_message, tmp_path):
        normalizer = MessageNormalizer(fake_source, MediaWriter(tmp_path / "media"))

        record = asyncio.run(normalizer.normalize(make_message("m1", has_media=True), GROUP_ID, {}))

        assert record.media_path is None

    def test_media_disabled_skips_download(self, fake_source, make_message):
        fake_source.media["m1"] = MediaPayload(mime_type="image/png", data=b"png")

        record = asyncio.run(MessageNormalizer(fake_source).normalize(make_message("m1", has_media=True), GROUP_ID, {}))

        assert record.media_path is None
        assert ("download_media", "m1") not in fake_source.calls

    def test_unsafe_characters_in_file_name(self, tmp_path):
        writer = MediaWriter(tmp_path)
        path = writer.path_for("false_1203@g.us_3EB0/../x", "audio/ogg; codecs=opus")

        assert path.parent == tmp_path
        assert path.name == "false_1203@g.us_3EB0_.._x.ogg"
