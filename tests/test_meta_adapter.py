"""Tests for Meta Cloud API envelope unpacking."""

import pytest

from chatrelay.whatsapp.meta_adapter import (
    InvalidPayloadError,
    extract_messages,
    extract_statuses,
    get_phone_number_id,
    is_whatsapp_envelope,
)
from tests.helpers import make_envelope, profile, text_message


class TestIsWhatsappEnvelope:
    def test_accepts_business_account(self):
        assert is_whatsapp_envelope(make_envelope([]))

    @pytest.mark.parametrize("payload", [{"object": "page"}, {}, [], None, "x"])
    def test_rejects_other_payloads(self, payload):
        assert not is_whatsapp_envelope(payload)


class TestExtractMessages:
    def test_single_message_with_profile(self):
        payload = make_envelope(
            [text_message(sender="5511888888888")],
            contacts=[profile("5511888888888", "Test User")],
        )
        items = extract_messages(payload)

        assert len(items) == 1
        assert items[0].message["id"] == "wamid.1"
        assert items[0].profile_name == "Test User"
        assert items[0].phone_number_id == "PNID-1"

    def test_profile_matched_by_wa_id(self):
        payload = make_envelope(
            [
                text_message(sender="111", message_id="wamid.a"),
                text_message(sender="222", message_id="wamid.b"),
            ],
            contacts=[profile("111", "Ann"), profile("222", "Bo")],
        )
        names = [item.profile_name for item in extract_messages(payload)]
        assert names == ["Ann", "Bo"]

    def test_profile_falls_back_to_first(self):
        payload = make_envelope([text_message(sender="333")], contacts=[profile("999", "Only")])
        assert extract_messages(payload)[0].profile_name == "Only"

    def test_no_contacts(self):
        payload = make_envelope([text_message()])
        assert extract_messages(payload)[0].profile_name is None

    def test_every_entry_and_change(self):
        first = make_envelope([text_message(message_id="wamid.a")])
        second = make_envelope([text_message(message_id="wamid.b")])
        first["entry"].extend(second["entry"])

        ids = [item.message["id"] for item in extract_messages(first)]
        assert ids == ["wamid.a", "wamid.b"]

    def test_status_only_envelope_has_no_messages(self):
        payload = make_envelope(statuses=[{"id": "wamid.1", "status": "read"}])
        assert extract_messages(payload) == []

    def test_skips_non_dict_messages(self):
        payload = make_envelope([text_message(), "garbage", None])
        assert len(extract_messages(payload)) == 1

    def test_non_messages_field_ignored(self):
        payload = make_envelope([text_message()])
        payload["entry"][0]["changes"][0]["field"] = "account_update"
        assert extract_messages(payload) == []

    def test_wrong_object_raises(self):
        with pytest.raises(InvalidPayloadError):
            extract_messages({"object": "instagram", "entry": []})


class TestExtractStatuses:
    def test_valid_statuses(self):
        payload = make_envelope(
            statuses=[
                {"id": "wamid.1", "status": "delivered", "timestamp": "1704067200", "recipient_id": "1555"},
                {"id": "wamid.2", "status": "read"},
            ]
        )
        updates = extract_statuses(payload)

        assert [(u.provider_message_id, u.status) for u in updates] == [
            ("wamid.1", "delivered"),
            ("wamid.2", "read"),
        ]
        assert updates[0].recipient == "1555"

    def test_unknown_status_skipped(self):
        payload = make_envelope(statuses=[{"id": "wamid.1", "status": "deleted"}, {"status": "read"}])
        assert extract_statuses(payload) == []

    def test_non_envelope_returns_empty(self):
        assert extract_statuses({"object": "page"}) == []


class TestGetPhoneNumberId:
    def test_extracts(self):
        assert get_phone_number_id(make_envelope([], phone_number_id="123456789")) == "123456789"

    def test_missing(self):
        assert get_phone_number_id({"object": "whatsapp_business_account", "entry": []}) is None
