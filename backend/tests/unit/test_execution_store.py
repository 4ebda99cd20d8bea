# backend/tests/unit/test_execution_store.py

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError

from leadflow.flows.errors import StaleExecutionError, TenantIsolationError
from leadflow.models.execution import Execution, ExecutionLog
from leadflow.services.execution_store import MongoExecutionStore

from fakes import T0


@pytest.fixture
def db():
    db = MagicMock()
    db.flow_executions.insert_one = AsyncMock()
    db.flow_executions.find_one = AsyncMock(return_value=None)
    db.flow_executions.find_one_and_update = AsyncMock(return_value=None)
    db.flow_executions.update_one = AsyncMock()
    db.flow_schedule_runs.insert_one = AsyncMock()
    db.flow_schedule_runs.update_one = AsyncMock()
    db.flow_execution_logs.insert_one = AsyncMock()
    return db


@pytest.fixture
def mongo_store(db):
    return MongoExecutionStore(db)


def sample(**overrides):
    data = dict(company_id="company-1", flow_id="f1", contact_id="contact-1", current_node_id="s", version=3)
    data.update(overrides)
    return Execution(**data)


@pytest.mark.asyncio
async def test_create_returns_none_on_duplicate_active_execution(mongo_store, db):
    db.flow_executions.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
    assert await mongo_store.create_execution(sample()) is None


@pytest.mark.asyncio
async def test_create_writes_active_flag(mongo_store, db):
    execution = sample()
    assert await mongo_store.create_execution(execution) is execution
    document = db.flow_executions.insert_one.await_args.args[0]
    assert document["is_active"] is True
    assert document["_id"] == execution.id


@pytest.mark.asyncio
async def test_save_is_compare_and_set_on_version(mongo_store, db):
    db.flow_executions.update_one.return_value = MagicMock(matched_count=1)
    execution = sample(status="completed")

    saved = await mongo_store.save(execution)

    query, update = db.flow_executions.update_one.await_args.args
    assert query == {"_id": execution.id, "company_id": "company-1", "version": 3}
    assert update["$set"]["version"] == 4
    assert update["$set"]["is_active"] is False
    assert "_id" not in update["$set"]
    assert saved.version == 4


@pytest.mark.asyncio
async def test_save_conflict_raises_stale(mongo_store, db):
    db.flow_executions.update_one.return_value = MagicMock(matched_count=0)
    with pytest.raises(StaleExecutionError):
        await mongo_store.save(sample())


@pytest.mark.asyncio
async def test_claim_requires_same_version_and_free_lease(mongo_store, db):
    execution = sample()
    db.flow_executions.find_one_and_update.return_value = execution.model_copy(
        update={"version": 4, "lease_until": T0 + timedelta(seconds=60)}
    ).to_document()

    claimed = await mongo_store.claim(execution, T0, 60)

    query, update = db.flow_executions.find_one_and_update.await_args.args
    assert query["version"] == 3
    assert query["company_id"] == "company-1"
    assert query["$or"] == [{"lease_until": None}, {"lease_until": {"$lte": T0}}]
    assert update == {"$set": {"lease_until": T0 + timedelta(seconds=60)}, "$inc": {"version": 1}}
    assert claimed.version == 4


@pytest.mark.asyncio
async def test_claim_lost_returns_none(mongo_store):
    assert await mongo_store.claim(sample(), T0, 60) is None


@pytest.mark.asyncio
async def test_get_execution_of_other_company_raises(mongo_store, db):
    db.flow_executions.find_one.side_effect = [None, {"_id": "e1", "company_id": "company-2"}]
    with pytest.raises(TenantIsolationError):
        await mongo_store.get_execution("company-1", "e1")


@pytest.mark.asyncio
async def test_get_missing_execution_returns_none(mongo_store, db):
    assert await mongo_store.get_execution("company-1", "missing") is None
    assert db.flow_executions.find_one.await_count == 2


@pytest.mark.asyncio
async def test_first_schedule_cursor_insert_race(mongo_store, db):
    db.flow_schedule_runs.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
    assert await mongo_store.advance_schedule_cursor("company-1", "f1", None, T0) is False


@pytest.mark.asyncio
async def test_schedule_cursor_moves_only_from_previous(mongo_store, db):
    db.flow_schedule_runs.update_one.return_value = MagicMock(modified_count=1)
    previous = T0 - timedelta(minutes=1)

    assert await mongo_store.advance_schedule_cursor("company-1", "f1", previous, T0) is True
    query, update = db.flow_schedule_runs.update_one.await_args.args
    assert query == {"company_id": "company-1", "flow_id": "f1", "last_checked_at": previous}
    assert update == {"$set": {"last_checked_at": T0}}


@pytest.mark.asyncio
async def test_log_failures_do_not_propagate(mongo_store, db):
    db.flow_execution_logs.insert_one.side_effect = Exception("mongo down")
    entry = ExecutionLog(execution_id="e1", company_id="company-1", flow_id="f1", contact_id="contact-1", action="entered")
    await mongo_store.log_step(entry)
