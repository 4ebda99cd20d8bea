# /leadflow/services/execution_store.py

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from leadflow.flows.errors import StaleExecutionError, TenantIsolationError
from leadflow.models.execution import (
    ACTIVE_STATUSES,
    Execution,
    ExecutionLog,
    ExecutionStatus,
    WaitKind,
)
from leadflow.services.db_service import db_service
from leadflow.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)


def _lease_free(now: datetime) -> Dict[str, Any]:
    return {"$or": [{"lease_until": None}, {"lease_until": {"$lte": now}}]}


class MongoExecutionStore:
    """
    Persistence for flow executions.

    Every read and write is filtered by company_id except ``list_due``, the
    scheduler's cross-tenant sweep. Creation relies on the partial unique
    index over active (company_id, flow_id, contact_id) rows; updates are
    compare-and-set on ``version``.
    """

    def __init__(self, db):
        self.db = db

    @property
    def executions(self):
        return self.db.flow_executions

    def _to_model(self, document: Optional[Dict[str, Any]]) -> Optional[Execution]:
        return Execution.model_validate(document) if document else None

    # ==================== Reads ====================

    async def get_active_execution(self, company_id: str, flow_id: str, contact_id: str) -> Optional[Execution]:
        document = await self.executions.find_one({
            "company_id": company_id,
            "flow_id": flow_id,
            "contact_id": contact_id,
            "status": {"$in": list(ACTIVE_STATUSES)},
        })
        return self._to_model(document)

    async def get_execution(self, company_id: str, execution_id: str) -> Optional[Execution]:
        """
        Loads one execution for a company.

        Raises:
            TenantIsolationError: the execution exists but belongs to another company
        """
        document = await self.executions.find_one({"_id": execution_id, "company_id": company_id})
        if document is None:
            owner = await self.executions.find_one({"_id": execution_id}, {"company_id": 1})
            if owner is not None:
                raise TenantIsolationError(
                    f"Execution {execution_id} does not belong to company {company_id}",
                    company_id=company_id,
                    details={"execution_id": execution_id},
                )
            return None
        return self._to_model(document)

    async def find_waiting_for_reply(self, company_id: str, contact_id: str) -> Optional[Execution]:
        """Most recently touched execution of a contact that is parked on a reply."""
        cursor = self.executions.find({
            "company_id": company_id,
            "contact_id": contact_id,
            "status": ExecutionStatus.WAITING.value,
            "wait_kind": WaitKind.REPLY.value,
        }).sort("updated_at", -1).limit(1)
        documents = await cursor.to_list(length=1)
        return self._to_model(documents[0]) if documents else None

    async def list_due(self, now: datetime, limit: int = 50) -> List[Execution]:
        """
        Executions the scheduler should drive now: elapsed timers, retries
        whose backoff ran out, and running rows whose worker lease expired.
        """
        query = {
            "$and": [
                {"$or": [
                    {"status": ExecutionStatus.WAITING.value, "wait_kind": WaitKind.TIMER.value, "next_action_at": {"$lte": now}},
                    {"status": ExecutionStatus.RUNNING.value, "next_action_at": None},
                    {"status": ExecutionStatus.RUNNING.value, "next_action_at": {"$lte": now}},
                ]},
                _lease_free(now),
            ]
        }
        cursor = self.executions.find(query).sort("next_action_at", 1).limit(limit)
        documents = await cursor.to_list(length=limit)
        database_operations_counter.labels(operation="list_due", status="success").inc()
        return [self._to_model(d) for d in documents]

    async def list_executions(
        self, company_id: str, flow_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50
    ) -> List[Execution]:
        query: Dict[str, Any] = {"company_id": company_id}
        if flow_id:
            query["flow_id"] = flow_id
        if status:
            query["status"] = status
        cursor = self.executions.find(query).sort("updated_at", -1).limit(limit)
        return [self._to_model(d) for d in await cursor.to_list(length=limit)]

    async def count_by_status(self, company_id: str, flow_ids: Iterable[str]) -> Dict[str, Dict[str, int]]:
        """Per-flow execution counts keyed by status."""
        pipeline = [
            {"$match": {"company_id": company_id, "flow_id": {"$in": list(flow_ids)}}},
            {"$group": {"_id": {"flow_id": "$flow_id", "status": "$status"}, "count": {"$sum": 1}}},
        ]
        counts: Dict[str, Dict[str, int]] = {}
        async for row in self.executions.aggregate(pipeline):
            counts.setdefault(row["_id"]["flow_id"], {})[row["_id"]["status"]] = row["count"]
        return counts

    async def get_logs(self, company_id: str, execution_id: str, limit: int = 200) -> List[Dict[str, Any]]:
        cursor = self.db.flow_execution_logs.find(
            {"company_id": company_id, "execution_id": execution_id}
        ).sort("created_at", 1).limit(limit)
        logs = await cursor.to_list(length=limit)
        for entry in logs:
            entry["_id"] = str(entry["_id"])
        return logs

    # ==================== Writes ====================

    async def create_execution(self, execution: Execution) -> Optional[Execution]:
        """Inserts a new execution; None when the (flow, contact) pair already has an active one."""
        try:
            await self.executions.insert_one(execution.to_document())
        except DuplicateKeyError:
            database_operations_counter.labels(operation="create_execution", status="duplicate").inc()
            return None
        database_operations_counter.labels(operation="create_execution", status="success").inc()
        return execution

    async def claim(self, execution: Execution, now: datetime, lease_seconds: int) -> Optional[Execution]:
        """
        Takes the execution's lease if nobody changed it since it was read and
        no other worker holds an unexpired lease. Returns the claimed state.
        """
        document = await self.executions.find_one_and_update(
            {
                "_id": execution.id,
                "company_id": execution.company_id,
                "version": execution.version,
                **_lease_free(now),
            },
            {
                "$set": {"lease_until": now + timedelta(seconds=lease_seconds)},
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._to_model(document)

    async def release(self, execution: Execution) -> None:
        await self.executions.update_one(
            {"_id": execution.id, "company_id": execution.company_id, "version": execution.version},
            {"$set": {"lease_until": None}, "$inc": {"version": 1}},
        )

    async def save(self, execution: Execution) -> Execution:
        """
        Persists the whole execution if its stored version still matches.

        Raises:
            StaleExecutionError: another writer saved or claimed it first
        """
        saved = execution.model_copy(update={"version": execution.version + 1})
        document = saved.to_document()
        document.pop("_id")
        result = await self.executions.update_one(
            {"_id": execution.id, "company_id": execution.company_id, "version": execution.version},
            {"$set": document},
        )
        if result.matched_count == 0:
            database_operations_counter.labels(operation="save_execution", status="conflict").inc()
            raise StaleExecutionError(f"Execution {execution.id} changed since version {execution.version}")
        database_operations_counter.labels(operation="save_execution", status="success").inc()
        return saved

    async def log_step(self, entry: ExecutionLog) -> None:
        try:
            await self.db.flow_execution_logs.insert_one(entry.model_dump())
        except Exception as e:
            logger.warning(f"Failed to write execution log for {entry.execution_id}: {e}")

    # ==================== Schedule cursors ====================

    async def get_schedule_cursor(self, company_id: str, flow_id: str) -> Optional[datetime]:
        document = await self.db.flow_schedule_runs.find_one({"company_id": company_id, "flow_id": flow_id})
        return document["last_checked_at"] if document else None

    async def advance_schedule_cursor(
        self, company_id: str, flow_id: str, previous: Optional[datetime], now: datetime
    ) -> bool:
        """Moves a schedule's cursor from ``previous`` to ``now``; False if another scheduler already did."""
        if previous is None:
            try:
                await self.db.flow_schedule_runs.insert_one(
                    {"company_id": company_id, "flow_id": flow_id, "last_checked_at": now}
                )
                return True
            except DuplicateKeyError:
                return False
        result = await self.db.flow_schedule_runs.update_one(
            {"company_id": company_id, "flow_id": flow_id, "last_checked_at": previous},
            {"$set": {"last_checked_at": now}},
        )
        return result.modified_count == 1


# Globally accessible instance
execution_store = MongoExecutionStore(db_service.db)
