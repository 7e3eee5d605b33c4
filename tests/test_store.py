"""Tests for the record store adapter."""

from datetime import timedelta

import pytest

from bonfire.models import (
    Account,
    AnnouncementRecord,
    ChangeKind,
    RecordStatus,
    Roster,
    RosterEvent,
    utcnow,
)
from bonfire.store import PENDING, UPDATE_REQUESTED, RecordStore, RosterConflictError


def make_record(**overrides) -> AnnouncementRecord:
    fields = {"title": "Evening Roam", "description": "North gate", "author": "Sky"}
    fields.update(overrides)
    return AnnouncementRecord(**fields)


class TestRecords:
    def test_create_and_get(self, store: RecordStore) -> None:
        record = store.create(make_record())

        fetched = store.get(record.id)

        assert fetched is not None
        assert fetched.title == "Evening Roam"
        assert fetched.status == RecordStatus.PENDING
        assert fetched.reactions == {}
        assert fetched.created_at.tzinfo is not None

    def test_get_missing(self, store: RecordStore) -> None:
        assert store.get("nope") is None

    def test_update_bumps_revision(self, store: RecordStore) -> None:
        record = store.create(make_record())

        assert store.update(record.id, {"description": "South gate"}) is True

        fetched = store.get(record.id)
        assert fetched.description == "South gate"
        assert fetched.revision == record.revision + 1

    def test_update_missing_record(self, store: RecordStore) -> None:
        assert store.update("nope", {"title": "x"}) is False

    def test_query_by_status(self, store: RecordStore) -> None:
        pending = store.create(make_record())
        store.create(make_record(status=RecordStatus.POSTED))

        assert [r.id for r in store.query(PENDING)] == [pending.id]

    def test_list_records_newest_first(self, store: RecordStore) -> None:
        now = utcnow()
        old = store.create(make_record(created_at=now - timedelta(hours=1)))
        new = store.create(make_record(created_at=now))

        records = store.list_records()
        assert [r.id for r in records] == [new.id, old.id]

        assert [r.id for r in store.list_records(limit=1)] == [new.id]

    def test_list_records_with_message(self, store: RecordStore, posted_record) -> None:
        store.create(make_record(status=RecordStatus.POSTED))

        records = store.list_records(status=RecordStatus.POSTED, with_message=True)

        assert [r.id for r in records] == [posted_record.id]

    def test_find_by_message_id(self, store: RecordStore, posted_record) -> None:
        assert store.find_by_message_id("M1").id == posted_record.id
        assert store.find_by_message_id("M404") is None

    def test_set_reaction_count_keeps_other_symbols(self, store: RecordStore) -> None:
        record = store.create(make_record(reactions={"✅": 1, "🔥": 2}))

        store.set_reaction_count(record.id, "✅", 3)

        fetched = store.get(record.id)
        assert fetched.reactions == {"✅": 3, "🔥": 2}
        assert fetched.last_reaction_update is not None

    def test_replace_reactions(self, store: RecordStore) -> None:
        record = store.create(make_record(reactions={"✅": 1, "🔥": 2}))

        store.replace_reactions(record.id, {"✅": 5})

        fetched = store.get(record.id)
        assert fetched.reactions == {"✅": 5}
        assert fetched.last_reaction_sync is not None

    def test_mark_deleted(self, store: RecordStore, posted_record) -> None:
        assert store.mark_deleted(posted_record.id) is True

        fetched = store.get(posted_record.id)
        assert fetched.status == RecordStatus.DELETED
        assert fetched.deleted_at is not None
        # The message reference is kept
        assert fetched.discord_message_id == "M1"


class TestUpdateRequests:
    def test_request_update_ignores_non_content_fields(
        self, store: RecordStore, posted_record
    ) -> None:
        store.request_update(
            posted_record.id,
            {"additional_info": "Bring water", "status": "error", "reactions": {}},
        )

        fetched = store.get(posted_record.id)
        assert fetched.additional_info == "Bring water"
        assert fetched.status == RecordStatus.POSTED
        assert fetched.update_requested is True
        assert fetched.update_requested_at is not None

    def test_complete_update_clears_request(self, store: RecordStore, posted_record) -> None:
        store.request_update(posted_record.id, {"additional_info": "Bring water"})
        requested_at = store.get(posted_record.id).update_requested_at

        assert store.complete_update(posted_record.id, requested_at) is True

        fetched = store.get(posted_record.id)
        assert fetched.update_requested is False
        assert fetched.internal_update_in_flight is True
        assert fetched.last_updated is not None

    def test_complete_update_keeps_newer_request(
        self, store: RecordStore, posted_record
    ) -> None:
        store.request_update(posted_record.id, {"additional_info": "Bring water"})
        first = store.get(posted_record.id).update_requested_at

        store.update(
            posted_record.id,
            {"update_requested_at": first + timedelta(seconds=1), "title": "Late Roam"},
        )

        assert store.complete_update(posted_record.id, first) is False

        fetched = store.get(posted_record.id)
        assert fetched.update_requested is True
        assert fetched.internal_update_in_flight is True

    def test_complete_update_clears_previous_error(
        self, store: RecordStore, posted_record
    ) -> None:
        store.update(posted_record.id, {"update_error": "boom", "update_error_at": utcnow()})
        store.request_update(posted_record.id, {"title": "Retry"})

        store.complete_update(posted_record.id, store.get(posted_record.id).update_requested_at)

        assert store.get(posted_record.id).update_error is None

    def test_reset_in_flight_markers(self, store: RecordStore, posted_record) -> None:
        store.update(posted_record.id, {"internal_update_in_flight": True})

        assert store.reset_in_flight_markers() == 1
        assert store.get(posted_record.id).internal_update_in_flight is False
        assert store.reset_in_flight_markers() == 0


class TestWatch:
    @pytest.mark.asyncio
    async def test_first_snapshot_reports_existing_records(self, store: RecordStore) -> None:
        record = store.create(make_record())

        changes = store.watch(PENDING, interval=0.01)
        change = await anext(changes)

        assert change.kind == ChangeKind.ADDED
        assert change.record.id == record.id
        await changes.aclose()

    @pytest.mark.asyncio
    async def test_modified_and_removed(self, store: RecordStore, posted_record) -> None:
        changes = store.watch(UPDATE_REQUESTED, interval=0.01)

        store.request_update(posted_record.id, {"title": "Late Roam"})
        added = await anext(changes)
        assert added.kind == ChangeKind.ADDED
        assert added.record.title == "Late Roam"

        store.update(posted_record.id, {"title": "Later Roam"})
        modified = await anext(changes)
        assert modified.kind == ChangeKind.MODIFIED
        assert modified.previous.title == "Late Roam"
        assert modified.record.title == "Later Roam"

        store.complete_update(posted_record.id, modified.record.update_requested_at)
        removed = await anext(changes)
        assert removed.kind == ChangeKind.REMOVED
        assert removed.record.id == posted_record.id

        await changes.aclose()


class TestRoster:
    def test_save_and_get(self, store: RecordStore, roster: Roster) -> None:
        fetched = store.get_roster("roams")

        assert fetched.version == 1
        assert fetched.find_event("roam-1").title == "Evening Roam"
        assert fetched.find_event("nope") is None

    def test_unknown_fields_survive_round_trip(self, store: RecordStore) -> None:
        store.save_roster(
            Roster(
                id="roams",
                scheduled=[RosterEvent.model_validate({"id": "r", "meetingPoint": "gate"})],
            )
        )

        store.mutate_event("roams", "r", lambda e: e.signups.append("U1") or True)

        event = store.get_roster("roams").find_event("r")
        assert event.signups == ["U1"]
        assert event.to_document()["meetingPoint"] == "gate"

    def test_mutate_event_persists_and_bumps_version(
        self, store: RecordStore, roster: Roster
    ) -> None:
        def join(event: RosterEvent) -> bool:
            event.signups.append("U1")
            return True

        event = store.mutate_event("roams", "roam-1", join)

        assert event.signups == ["U1"]
        fetched = store.get_roster("roams")
        assert fetched.version == 2
        assert fetched.find_event("roam-1").signups == ["U1"]

    def test_mutate_event_no_change_skips_write(
        self, store: RecordStore, roster: Roster
    ) -> None:
        store.mutate_event("roams", "roam-1", lambda e: False)

        assert store.get_roster("roams").version == 1

    def test_mutate_event_missing(self, store: RecordStore, roster: Roster) -> None:
        assert store.mutate_event("other", "roam-1", lambda e: True) is None
        assert store.mutate_event("roams", "nope", lambda e: True) is None

    def test_mutate_event_retries_after_concurrent_write(
        self, store: RecordStore, roster: Roster
    ) -> None:
        calls = []

        def join(event: RosterEvent) -> bool:
            calls.append(list(event.signups))
            if len(calls) == 1:
                # Another writer lands between our read and our write
                current = store.get_roster("roams")
                current.find_event("roam-1").signups.append("U2")
                store.save_roster(current)
            event.signups.append("U1")
            return True

        event = store.mutate_event("roams", "roam-1", join)

        assert calls == [[], ["U2"]]
        assert event.signups == ["U2", "U1"]
        assert store.get_roster("roams").find_event("roam-1").signups == ["U2", "U1"]

    def test_mutate_event_gives_up(self, engine, roster: Roster) -> None:
        store = RecordStore(engine, roster_max_retries=2)

        def always_conflicting(event: RosterEvent) -> bool:
            store.save_roster(store.get_roster("roams"))
            event.signups.append("U1")
            return True

        with pytest.raises(RosterConflictError):
            store.mutate_event("roams", "roam-1", always_conflicting)


class TestAccounts:
    def test_create_and_lookup(self, store: RecordStore) -> None:
        account = store.create_account(Account(discord_id="U1", username="sky"))

        fetched = store.get_account_by_discord_id("U1")
        assert fetched.id == account.id
        assert fetched.username == "sky"
        assert store.get_account_by_discord_id("U2") is None

    def test_duplicate_discord_id_rejected(self, store: RecordStore) -> None:
        store.create_account(Account(discord_id="U1", username="sky"))

        with pytest.raises(ValueError):
            store.create_account(Account(discord_id="U1", username="other"))
