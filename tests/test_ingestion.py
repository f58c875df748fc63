"""Tests for the ingestion orchestrator (in-memory store, scripted gateway)."""

import json
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from kiteintel.domain import ingestion
from kiteintel.infra.settings import EvolutionSettings, IngestionSettings
from kiteintel.whatsapp.evolution_client import EvolutionClient, GatewayError
from kiteintel.whatsapp.models import ChatSummary, ContactProfile

from .helpers import BASE_EPOCH, FakeEvolutionClient, raw_message, ts

JID = "5511999990001@s.whatsapp.net"
OTHER_JID = "5511888880002@s.whatsapp.net"
SETTINGS = IngestionSettings(batch_pause_seconds=0)


class TestIngestMessages:
    def test_duplicate_message_id_stored_once_with_latest_status(self, store):
        contact = store.add_contact()

        first = ingestion.ingest_messages(
            store.cursor, contact, [raw_message("ABC123", status="DELIVERY_ACK")]
        )
        second = ingestion.ingest_messages(
            store.cursor, contact, [raw_message("ABC123", status="READ")]
        )

        assert first.created == 1
        assert second.created == 0
        assert second.updated == 1
        assert len(store.messages) == 1
        assert store.messages["ABC123"]["delivery_status"] == "READ"

    def test_unchanged_duplicate_counts_as_skipped(self, store):
        contact = store.add_contact()
        ingestion.ingest_messages(store.cursor, contact, [raw_message("ABC123")])

        summary = ingestion.ingest_messages(store.cursor, contact, [raw_message("ABC123")])

        assert summary.created == 0
        assert summary.updated == 0
        assert summary.skipped == 1

    def test_unusable_and_foreign_items_skipped(self, store):
        contact = store.add_contact()
        no_timestamp = raw_message("NOTS", epoch=None)
        foreign = raw_message("FOREIGN", OTHER_JID)

        summary = ingestion.ingest_messages(store.cursor, contact, [no_timestamp, foreign, "junk"])

        assert summary.skipped == 3
        assert store.messages == {}
        assert store.contacts[contact["id"]]["last_message_at"] is None

    def test_recency_uses_newest_timestamp_not_order(self, store):
        contact = store.add_contact()
        items = [
            raw_message("M2", epoch=BASE_EPOCH + 200),
            raw_message("M1", epoch=BASE_EPOCH + 100),
            raw_message("M3", epoch=BASE_EPOCH + 50, from_me=True),
        ]

        ingestion.ingest_messages(store.cursor, contact, items)

        stored = store.contacts[contact["id"]]
        assert stored["last_message_at"] == ts(200)
        assert stored["last_contact_at"] == ts(200)
        assert stored["message_count"] == 3

    def test_new_inbound_enqueues_analysis(self, store):
        contact = store.add_contact()

        summary = ingestion.ingest_messages(store.cursor, contact, [raw_message("IN1")])

        assert summary.enqueued == 1
        [item] = store.queue_for(contact["id"])
        assert item["status"] == "pendente"

    def test_outbound_only_does_not_enqueue(self, store):
        contact = store.add_contact()

        summary = ingestion.ingest_messages(
            store.cursor, contact, [raw_message("OUT1", from_me=True)]
        )

        assert summary.created == 1
        assert summary.enqueued == 0
        assert store.queue_for(contact["id"]) == []

    def test_redelivered_inbound_does_not_enqueue(self, store):
        contact = store.add_contact()
        ingestion.ingest_messages(store.cursor, contact, [raw_message("IN1")])
        store.queue.clear()

        summary = ingestion.ingest_messages(store.cursor, contact, [raw_message("IN1")])

        assert summary.enqueued == 0
        assert store.queue == {}

    def test_in_flight_item_not_duplicated(self, store):
        contact = store.add_contact()
        ingestion.ingest_messages(store.cursor, contact, [raw_message("IN1")])

        summary = ingestion.ingest_messages(
            store.cursor, contact, [raw_message("IN2", epoch=BASE_EPOCH + 10)]
        )

        assert summary.created == 1
        assert summary.enqueued == 0
        assert len(store.queue_for(contact["id"])) == 1

    def test_latest_inbound_push_name_adopted(self, store):
        contact = store.add_contact(display_name=None)
        items = [
            raw_message("M1", epoch=BASE_EPOCH + 20, push_name="Ana Kite"),
            raw_message("M2", epoch=BASE_EPOCH + 10, push_name="Ana"),
            raw_message("M3", epoch=BASE_EPOCH + 30, from_me=True, push_name="Você"),
        ]

        ingestion.ingest_messages(store.cursor, contact, items)

        assert store.contacts[contact["id"]]["display_name"] == "Ana Kite"


class TestPollRecentChats:
    def test_group_chat_creates_nothing(self, store):
        client = FakeEvolutionClient(chats=[ChatSummary(raw_id="120363000000000000@g.us")])

        summary = ingestion.poll_recent_chats(client, SETTINGS)

        assert summary.skipped == 1
        assert summary.created == 0
        assert store.contacts == {}
        assert store.messages == {}
        assert client.message_calls == []

    def test_chats_resolved_and_messages_stored(self, store):
        client = FakeEvolutionClient(
            chats=[ChatSummary(raw_id=JID, name="Ana Souza")],
            messages={JID: [raw_message("A1"), raw_message("A2", epoch=BASE_EPOCH + 5)]},
        )

        summary = ingestion.poll_recent_chats(client, SETTINGS)

        assert summary.contacts_created == 1
        assert summary.created == 2
        assert summary.chats_processed == 1
        [contact] = store.contacts.values()
        assert contact["display_name"] == "Ana Souza"
        assert contact["last_message_at"] == ts(5)

    def test_chat_limit_passed_to_gateway(self, store):
        client = FakeEvolutionClient()
        ingestion.poll_recent_chats(client, SETTINGS, chat_limit=7)
        assert client.chat_calls == [7]

    def test_one_failing_chat_does_not_abort_batch(self, store):
        client = FakeEvolutionClient(
            chats=[ChatSummary(raw_id=JID), ChatSummary(raw_id=OTHER_JID)],
            messages={
                JID: GatewayError("findMessages failed: HTTP 500", status=500),
                OTHER_JID: [raw_message("B1", OTHER_JID)],
            },
        )

        summary = ingestion.poll_recent_chats(client, SETTINGS)

        assert summary.failed == 1
        assert summary.created == 1
        assert summary.errors == ["poll_recent_chats: GatewayError"]
        assert "B1" in store.messages

    def test_undecodable_gateway_body_isolated_per_chat(self, store):
        bodies = {
            "findChats": json.dumps([{"remoteJid": JID}, {"remoteJid": OTHER_JID}]).encode(),
            JID: b'{"messages": [\xff]}',
            OTHER_JID: json.dumps([raw_message("B1", OTHER_JID)]).encode(),
        }

        def urlopen(req, timeout):
            if req.full_url.endswith("/findChats/kite"):
                body = bodies["findChats"]
            else:
                body = bodies[json.loads(req.data)["where"]["key"]["remoteJid"]]
            response = MagicMock()
            response.__enter__.return_value.read.return_value = body
            return response

        client = EvolutionClient(
            EvolutionSettings(
                base_url="http://evolution.local", instance="kite", api_key="k", max_retries=0
            )
        )
        with patch("kiteintel.whatsapp.evolution_client.urllib.request.urlopen", urlopen):
            summary = ingestion.poll_recent_chats(client, SETTINGS)

        assert summary.failed == 1
        assert summary.errors == ["poll_recent_chats: GatewayError"]
        assert "B1" in store.messages

    def test_store_failure_isolated(self, store, monkeypatch):
        client = FakeEvolutionClient(
            chats=[ChatSummary(raw_id=JID), ChatSummary(raw_id=OTHER_JID)],
            messages={JID: [raw_message("A1")], OTHER_JID: [raw_message("B1", OTHER_JID)]},
        )
        original = store.message_insert_if_absent

        def flaky_insert(cur, **kwargs):
            if kwargs["message_id"] == "A1":
                raise psycopg2.OperationalError("connection lost")
            return original(cur, **kwargs)

        monkeypatch.setattr(
            "kiteintel.infra.repositories.messages_repository.insert_if_absent", flaky_insert
        )

        summary = ingestion.poll_recent_chats(client, SETTINGS)

        assert summary.failed == 1
        assert "B1" in store.messages

    def test_chat_list_failure_propagates(self, store):
        client = FakeEvolutionClient(chats=GatewayError("findChats failed: HTTP 502", status=502))
        with pytest.raises(GatewayError):
            ingestion.poll_recent_chats(client, SETTINGS)

    def test_time_budget_stops_early(self, store):
        client = FakeEvolutionClient(chats=[ChatSummary(raw_id=JID)])
        with patch.object(ingestion._Deadline, "exceeded", return_value=True):
            summary = ingestion.poll_recent_chats(client, SETTINGS, time_budget_seconds=1)

        assert summary.chats_processed == 0
        assert "time budget exhausted" in summary.errors


class TestPollContact:
    def test_uses_stored_address(self, store):
        contact = store.add_contact()
        client = FakeEvolutionClient(messages={JID: [raw_message("A1")]})

        summary = ingestion.poll_contact(client, SETTINGS, contact["id"], limit=10)

        assert summary.created == 1
        assert client.message_calls == [(JID, {"limit": 10, "page": None})]

    def test_unknown_contact(self, store):
        from kiteintel.domain.contacts import ContactNotFoundError

        with pytest.raises(ContactNotFoundError):
            ingestion.poll_contact(FakeEvolutionClient(), SETTINGS, "missing-id")


class TestFetchHistory:
    def test_unknown_phone_creates_contact(self, store):
        client = FakeEvolutionClient(messages={JID: [raw_message("H1")]})

        summary = ingestion.fetch_history(client, SETTINGS, phone="+55 (11) 99999-0001")

        assert summary.contacts_created == 1
        assert summary.created == 1
        [contact] = store.contacts.values()
        assert contact["origin"] == "evolution"

    def test_known_contact_without_address_gets_backfilled(self, store):
        contact = store.add_contact(remote_jid=None)
        client = FakeEvolutionClient(messages={JID: [raw_message("H1")]})

        ingestion.fetch_history(client, SETTINGS, contact_id=contact["id"])

        assert store.contacts[contact["id"]]["remote_jid"] == JID

    def test_invalid_phone(self, store):
        with pytest.raises(ingestion.InvalidIdentityError):
            ingestion.fetch_history(FakeEvolutionClient(), SETTINGS, phone="123")

    def test_requires_target(self, store):
        with pytest.raises(ValueError):
            ingestion.fetch_history(FakeEvolutionClient(), SETTINGS)


class TestFullSync:
    def test_contacts_mode_imports_individual_chats(self, store):
        client = FakeEvolutionClient(
            chats=[
                ChatSummary(raw_id=JID),
                ChatSummary(raw_id="120363000000000000@g.us"),
                ChatSummary(raw_id=OTHER_JID, name="Bruno Kite"),
            ],
            profiles={JID: ContactProfile(name="Ana Souza", is_business=False)},
        )

        summary = ingestion.full_sync(client, SETTINGS, "contacts")

        assert summary.contacts_created == 2
        assert summary.skipped == 1
        names = sorted(c["display_name"] for c in store.contacts.values())
        assert names == ["Ana Souza", "Bruno Kite"]
        run = store.sync_runs[summary.run_id]
        assert run["status"] == "concluido"
        assert run["progress_current"] == 2
        assert run["progress_total"] == 2

    def test_profile_failure_is_best_effort(self, store):
        client = FakeEvolutionClient(
            chats=[ChatSummary(raw_id=JID)],
            profiles={JID: GatewayError("fetchProfile failed: HTTP 500", status=500)},
        )

        summary = ingestion.full_sync(client, SETTINGS, "contacts")

        assert summary.contacts_created == 1
        assert summary.failed == 0

    def test_messages_mode_pages_history(self, store):
        contact = store.add_contact()
        client = FakeEvolutionClient(
            pages={
                JID: [
                    [raw_message("P1"), raw_message("P2", epoch=BASE_EPOCH + 1)],
                    [raw_message("P3", epoch=BASE_EPOCH + 2)],
                ]
            }
        )

        summary = ingestion.full_sync(client, SETTINGS, "messages")

        assert summary.created == 3
        assert store.contacts[contact["id"]]["message_count"] == 3
        assert [call[1]["page"] for call in client.message_calls] == [1, 2]

    def test_page_cap_bounds_backfill(self, store):
        store.add_contact()
        client = FakeEvolutionClient(
            pages={JID: [[raw_message(f"P{i}", epoch=BASE_EPOCH + i)] for i in range(5)]}
        )
        settings = IngestionSettings(batch_pause_seconds=0, sync_max_pages=2)

        summary = ingestion.full_sync(client, settings, "messages")

        assert summary.created == 2

    def test_chat_list_failure_marks_run_erro(self, store):
        client = FakeEvolutionClient(chats=GatewayError("findChats failed: HTTP 502", status=502))

        with pytest.raises(GatewayError):
            ingestion.full_sync(client, SETTINGS, "full")

        [run] = store.sync_runs.values()
        assert run["status"] == "erro"
        assert run["error"] == "GatewayError"

    def test_unknown_mode(self, store):
        with pytest.raises(ValueError):
            ingestion.full_sync(FakeEvolutionClient(), SETTINGS, "everything")


class TestWebhookMessage:
    def test_pushed_message_creates_contact_and_enqueues(self, store):
        summary = ingestion.ingest_webhook_message(
            {"data": raw_message("W1", push_name="Ana Souza")}, SETTINGS, "kite"
        )

        assert summary.contacts_created == 1
        assert summary.created == 1
        assert summary.enqueued == 1
        assert store.messages["W1"]["instance_name"] == "kite"

    def test_group_message_skipped(self, store):
        summary = ingestion.ingest_webhook_message(
            raw_message("G1", "120363000000000000@g.us"), SETTINGS
        )

        assert summary.skipped == 1
        assert store.contacts == {}

    def test_webhook_then_poll_stores_once(self, store):
        ingestion.ingest_webhook_message(raw_message("DUP1"), SETTINGS)
        client = FakeEvolutionClient(
            chats=[ChatSummary(raw_id=JID)],
            messages={JID: [raw_message("DUP1", status="READ")]},
        )

        summary = ingestion.poll_recent_chats(client, SETTINGS)

        assert summary.created == 0
        assert summary.updated == 1
        assert len(store.messages) == 1
