# backend/tests/unit/test_session_service.py

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from leadflow.models.session import SessionStatus
from leadflow.services.session_service import HISTORY_LIMIT, InvalidSessionTransition, SessionService

from fakes import T0


@pytest.fixture
def sessions():
    collection = MagicMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.insert_one = AsyncMock()
    collection.find_one_and_update = AsyncMock(return_value=None)
    collection.update_many = AsyncMock()
    return collection


@pytest.fixture
def service(sessions):
    db = MagicMock()
    db.connector_sessions = sessions
    return SessionService(db, connect_timeout_seconds=60, qr_timeout_seconds=120)


def stored(status, **extra):
    return {"company_id": "company-1", "instance_name": "main", "status": status, **extra}


@pytest.mark.asyncio
async def test_first_report_creates_session_with_deadline(service, sessions):
    sessions.find_one.side_effect = [None, stored("connecting", expires_at=T0 + timedelta(seconds=60))]

    session = await service.transition("company-1", "main", SessionStatus.CONNECTING, now=T0)

    document = sessions.insert_one.await_args.args[0]
    assert document["status"] == "connecting"
    assert document["expires_at"] == T0 + timedelta(seconds=60)
    assert document["history"] == [{"status": "connecting", "at": T0}]
    assert session.status == "connecting"


@pytest.mark.asyncio
async def test_qr_code_refresh_updates_code_and_deadline(service, sessions):
    sessions.find_one.return_value = stored("qr_code", qr_code="old")
    sessions.find_one_and_update.return_value = stored("qr_code", qr_code="new")

    session = await service.transition("company-1", "main", "qr_code", qr_code="new", now=T0)

    query, update = sessions.find_one_and_update.await_args.args
    assert query == {"company_id": "company-1", "instance_name": "main", "status": "qr_code"}
    assert update["$set"]["qr_code"] == "new"
    assert update["$set"]["expires_at"] == T0 + timedelta(seconds=120)
    assert update["$push"]["history"]["$slice"] == -HISTORY_LIMIT
    assert session.qr_code == "new"


@pytest.mark.asyncio
async def test_connected_clears_deadline_and_keeps_phone(service, sessions):
    sessions.find_one.return_value = stored("qr_code")
    sessions.find_one_and_update.return_value = stored("connected", phone_number="5511999990001")

    await service.transition("company-1", "main", "connected", phone_number="5511999990001", now=T0)

    changes = sessions.find_one_and_update.await_args.args[1]["$set"]
    assert changes["expires_at"] is None
    assert changes["qr_code"] is None
    assert changes["phone_number"] == "5511999990001"


@pytest.mark.asyncio
async def test_invalid_transition_raises(service, sessions):
    sessions.find_one.return_value = stored("connected")

    with pytest.raises(InvalidSessionTransition) as exc_info:
        await service.transition("company-1", "main", "qr_code", now=T0)

    assert exc_info.value.current == "connected"
    sessions.find_one_and_update.assert_not_awaited()


@pytest.mark.asyncio
async def test_repeated_status_is_a_no_op(service, sessions):
    sessions.find_one.return_value = stored("connected", phone_number="5511999990001")

    session = await service.transition("company-1", "main", "connected", now=T0)

    assert session.status == "connected"
    sessions.find_one_and_update.assert_not_awaited()


@pytest.mark.asyncio
async def test_disconnect_of_unknown_session_is_a_no_op(service, sessions):
    session = await service.transition("company-1", "main", "disconnected", now=T0)

    assert session.status == "disconnected"
    sessions.insert_one.assert_not_awaited()


@pytest.mark.asyncio
async def test_lost_race_is_re_evaluated(service, sessions):
    sessions.find_one.return_value = stored("connecting")
    sessions.find_one_and_update.side_effect = [None, stored("error", last_error="boom")]

    session = await service.transition("company-1", "main", "error", error="boom", now=T0)

    assert sessions.find_one_and_update.await_count == 2
    assert session.last_error == "boom"


@pytest.mark.asyncio
async def test_gives_up_after_repeated_conflicts(service, sessions):
    sessions.find_one.return_value = stored("connecting")

    with pytest.raises(InvalidSessionTransition):
        await service.transition("company-1", "main", "connected", now=T0)

    assert sessions.find_one_and_update.await_count == 3


@pytest.mark.asyncio
async def test_expire_stale_moves_overdue_sessions_to_error(service, sessions):
    sessions.update_many.return_value = MagicMock(modified_count=2)

    assert await service.expire_stale(T0) == 2

    query, update = sessions.update_many.await_args.args
    assert sorted(query["status"]["$in"]) == ["connecting", "qr_code"]
    assert query["expires_at"] == {"$lte": T0}
    assert update["$set"]["status"] == "error"
    assert update["$set"]["last_error"] == "timeout"
