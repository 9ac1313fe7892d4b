"""Tests for webhook parsing, secret checks, trigger rule and keyed locking."""

from __future__ import annotations

import asyncio

import pytest

from plansync.core.errors import AuthError, ParseError
from plansync.sync.webhook import KeyedLock, parse_event, should_trigger, verify_secret


class TestParseEvent:
    def test_feature_event(self):
        payload = {"data": {"eventType": "feature.updated", "id": "F1"}}
        event = parse_event(payload)

        assert event.event_type == "feature.updated"
        assert event.item_id == "F1"
        assert event.item_type == "feature"
        assert event.payload is payload

    def test_custom_field_event_reads_target_query(self):
        payload = {
            "data": {
                "eventType": "hierarchy-entity.custom-field-value.updated",
                "links": {
                    "target": "https://api.productboard.com/hierarchy-entities/custom-fields-values"
                    "?customField.id=cf1&hierarchyEntity.id=F42"
                },
            }
        }
        event = parse_event(payload)

        assert event.item_id == "F42"
        assert event.item_type == "hierarchy-entity"

    def test_custom_field_event_without_entity_param(self):
        payload = {
            "data": {
                "eventType": "hierarchy-entity.custom-field-value.updated",
                "links": {"target": "https://api.productboard.com/x?customField.id=cf1"},
            }
        }
        with pytest.raises(ParseError):
            parse_event(payload)

    def test_feature_event_without_id(self):
        with pytest.raises(ParseError):
            parse_event({"data": {"eventType": "feature.created"}})

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"data": "nope"},
            {"data": {"eventType": "note.created", "id": "N1"}},
            {"data": {"id": "F1"}},
            ["not", "a", "dict"],
        ],
    )
    def test_unrecognized_payloads(self, payload):
        with pytest.raises(ParseError):
            parse_event(payload)


class TestVerifySecret:
    def test_match(self):
        verify_secret("s3cret", "s3cret")

    @pytest.mark.parametrize("provided", [None, "", "S3CRET", "s3cret "])
    def test_mismatch(self, provided):
        with pytest.raises(AuthError):
            verify_secret("s3cret", provided)

    def test_unconfigured_secret_rejects_everything(self):
        with pytest.raises(AuthError):
            verify_secret(None, "anything")


class TestShouldTrigger:
    READY = "With Engineering"

    def test_transition_into_ready(self):
        assert should_trigger(self.READY, "Planned", self.READY) is True

    def test_first_sighting_in_ready(self):
        assert should_trigger(self.READY, None, self.READY) is True

    def test_already_ready(self):
        assert should_trigger(self.READY, self.READY, self.READY) is False

    def test_leaving_ready(self):
        assert should_trigger("Planned", self.READY, self.READY) is False

    def test_case_sensitive(self):
        assert should_trigger("with engineering", None, self.READY) is False


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_is_serialised(self):
        locks = KeyedLock()
        order = []

        async def worker(name: str):
            async with locks.hold("F1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_overlap(self):
        locks = KeyedLock()
        inside = asyncio.Event()
        release = asyncio.Event()

        async def first():
            async with locks.hold("F1"):
                inside.set()
                await release.wait()

        task = asyncio.create_task(first())
        await inside.wait()
        async with locks.hold("F2"):
            assert len(locks) == 2
        release.set()
        await task

        assert len(locks) == 0
