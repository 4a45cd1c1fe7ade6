import re
from unittest.mock import Mock

from app.models import LineMessage
from app.services.message_service import (
    get_latest_message_for_user,
    get_message_record,
    insert_message_record,
    list_message_records,
    now_iso,
)

ISO_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")
CONVERSATION_ID = "550e8400-e29b-41d4-a716-446655440000"


def _insert(db, **overrides):
    fields = {
        "conversation_id": CONVERSATION_ID,
        "user_id": "U1",
        "message_type": "text",
        "message_content": "hi",
        "image_url": None,
        "dify_response": "Hello",
    }
    fields.update(overrides)
    return insert_message_record(db, **fields)


def _row(id, created_at, user_id="U1", conversation_id=CONVERSATION_ID):
    return LineMessage(
        id=id,
        conversation_id=conversation_id,
        user_id=user_id,
        message_type="text",
        created_at=created_at,
        updated_at=created_at,
    )


class TestNowIso:
    def test_format(self):
        assert ISO_PATTERN.match(now_iso())


class TestInsertMessageRecord:
    def test_adds_and_commits(self, db_session):
        record = _insert(db_session)

        db_session.add.assert_called_once_with(record)
        db_session.commit.assert_called_once()
        assert record.created_at == record.updated_at
        assert ISO_PATTERN.match(record.created_at)

    def test_empty_conversation_id_stored_as_empty_string(self, db_session):
        record = _insert(db_session, conversation_id=None)
        assert record.conversation_id == ""

    def test_round_trip(self, sqlite_db):
        record = _insert(sqlite_db, message_type="image", message_content=None, image_url="https://example.com/a.png")

        loaded = get_message_record(sqlite_db, record.id)

        assert loaded.to_dict() == {
            "id": record.id,
            "conversation_id": CONVERSATION_ID,
            "user_id": "U1",
            "message_type": "image",
            "message_content": None,
            "image_url": "https://example.com/a.png",
            "dify_response": "Hello",
            "created_at": record.created_at,
            "updated_at": record.created_at,
        }

    def test_ids_are_generated(self, sqlite_db):
        first = _insert(sqlite_db)
        second = _insert(sqlite_db)
        assert second.id > first.id


class TestQueries:
    def test_latest_for_user(self, sqlite_db):
        sqlite_db.add_all(
            [
                _row(1, "2024-01-01T00:00:00.000Z", conversation_id="old"),
                _row(2, "2024-01-02T00:00:00.000Z", conversation_id="new"),
                _row(3, "2024-01-03T00:00:00.000Z", user_id="U2", conversation_id="other"),
            ]
        )
        sqlite_db.commit()

        assert get_latest_message_for_user(sqlite_db, "U1").conversation_id == "new"
        assert get_latest_message_for_user(sqlite_db, "U3") is None

    def test_missing_record(self, sqlite_db):
        assert get_message_record(sqlite_db, 999) is None

    def test_list_paginates_newest_first(self, sqlite_db):
        sqlite_db.add_all([_row(i, f"2024-01-0{i}T00:00:00.000Z") for i in range(1, 6)])
        sqlite_db.commit()

        rows, total = list_message_records(sqlite_db, limit=2, offset=1)

        assert total == 5
        assert [row.id for row in rows] == [4, 3]

    def test_list_filters(self, sqlite_db):
        sqlite_db.add_all(
            [
                _row(1, "2024-01-01T00:00:00.000Z"),
                _row(2, "2024-01-02T00:00:00.000Z", user_id="U2"),
                _row(3, "2024-01-03T00:00:00.000Z", conversation_id=""),
            ]
        )
        sqlite_db.commit()

        rows, total = list_message_records(sqlite_db, user_id="U1")
        assert total == 2
        rows, total = list_message_records(sqlite_db, conversation_id=CONVERSATION_ID, user_id="U1")
        assert [row.id for row in rows] == [1]
        rows, total = list_message_records(sqlite_db, start_date="2024-01-02", end_date="2024-01-02T23:59:59Z")
        assert [row.id for row in rows] == [2]

    def test_list_uses_mocked_query_chain(self):
        db = Mock()
        query = db.query.return_value
        query.filter.return_value = query
        query.count.return_value = 0
        query.order_by.return_value.offset.return_value.limit.return_value.all.return_value = []

        rows, total = list_message_records(db, limit=10, offset=0, user_id="U1")

        assert (rows, total) == ([], 0)
        query.order_by.return_value.offset.assert_called_once_with(0)
        query.order_by.return_value.offset.return_value.limit.assert_called_once_with(10)
