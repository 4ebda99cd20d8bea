# backend/tests/fakes.py
"""In-memory collaborators for engine tests. They enforce the same uniqueness,
version and lease rules as the Mongo adapters."""

import copy
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from leadflow.flows.errors import DeliveryError, FlowConfigurationError, StaleExecutionError, TenantIsolationError
from leadflow.flows.graph import FlowGraph
from leadflow.models.execution import ACTIVE_STATUSES, Execution, ExecutionStatus, WaitKind
from leadflow.models.flow import Flow, FlowEdge, FlowNode

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class InMemoryExecutionStore:
    def __init__(self):
        self.executions: Dict[str, Execution] = {}
        self.logs: List = []
        self.cursors: Dict[tuple, datetime] = {}

    def _copy(self, execution: Optional[Execution]) -> Optional[Execution]:
        return execution.model_copy(deep=True) if execution is not None else None

    def all(self) -> List[Execution]:
        return [self._copy(e) for e in self.executions.values()]

    async def get_active_execution(self, company_id, flow_id, contact_id):
        for e in self.executions.values():
            if (e.company_id, e.flow_id, e.contact_id) == (company_id, flow_id, contact_id) and e.status in ACTIVE_STATUSES:
                return self._copy(e)
        return None

    async def get_execution(self, company_id, execution_id):
        stored = self.executions.get(execution_id)
        if stored is None:
            return None
        if stored.company_id != company_id:
            raise TenantIsolationError("foreign execution", company_id=company_id, details={"execution_id": execution_id})
        return self._copy(stored)

    async def find_waiting_for_reply(self, company_id, contact_id):
        waiting = [
            e for e in self.executions.values()
            if e.company_id == company_id and e.contact_id == contact_id
            and e.status == ExecutionStatus.WAITING and e.wait_kind == WaitKind.REPLY
        ]
        waiting.sort(key=lambda e: e.updated_at, reverse=True)
        return self._copy(waiting[0]) if waiting else None

    async def list_due(self, now, limit=50):
        def due(e: Execution) -> bool:
            if e.lease_until is not None and e.lease_until > now:
                return False
            if e.status == ExecutionStatus.WAITING:
                return e.wait_kind == WaitKind.TIMER and e.next_action_at is not None and e.next_action_at <= now
            if e.status == ExecutionStatus.RUNNING:
                return e.next_action_at is None or e.next_action_at <= now
            return False

        found = sorted((e for e in self.executions.values() if due(e)), key=lambda e: e.next_action_at or now)
        return [self._copy(e) for e in found[:limit]]

    async def list_executions(self, company_id, flow_id=None, status=None, limit=50):
        return [
            self._copy(e) for e in self.executions.values()
            if e.company_id == company_id and (not flow_id or e.flow_id == flow_id) and (not status or e.status == status)
        ][:limit]

    async def count_by_status(self, company_id, flow_ids):
        counts: Dict[str, Dict[str, int]] = {}
        for e in self.executions.values():
            if e.company_id == company_id and e.flow_id in flow_ids:
                counts.setdefault(e.flow_id, {}).setdefault(e.status, 0)
                counts[e.flow_id][e.status] += 1
        return counts

    async def create_execution(self, execution: Execution):
        if await self.get_active_execution(execution.company_id, execution.flow_id, execution.contact_id):
            return None
        self.executions[execution.id] = self._copy(execution)
        return execution

    async def claim(self, execution: Execution, now, lease_seconds):
        stored = self.executions.get(execution.id)
        if stored is None or stored.company_id != execution.company_id or stored.version != execution.version:
            return None
        if stored.lease_until is not None and stored.lease_until > now:
            return None
        claimed = stored.model_copy(deep=True, update={
            "lease_until": now + timedelta(seconds=lease_seconds),
            "version": stored.version + 1,
        })
        self.executions[execution.id] = claimed
        return self._copy(claimed)

    async def release(self, execution: Execution):
        stored = self.executions.get(execution.id)
        if stored is not None and stored.version == execution.version:
            self.executions[execution.id] = stored.model_copy(update={"lease_until": None, "version": stored.version + 1})

    async def save(self, execution: Execution):
        stored = self.executions.get(execution.id)
        if stored is None or stored.version != execution.version:
            raise StaleExecutionError(f"version conflict on {execution.id}")
        saved = execution.model_copy(deep=True, update={"version": execution.version + 1})
        self.executions[execution.id] = saved
        return self._copy(saved)

    async def log_step(self, entry):
        self.logs.append(entry)

    async def get_logs(self, company_id, execution_id, limit=200):
        return [e.model_dump() for e in self.logs if e.company_id == company_id and e.execution_id == execution_id][:limit]

    async def get_schedule_cursor(self, company_id, flow_id):
        return self.cursors.get((company_id, flow_id))

    async def advance_schedule_cursor(self, company_id, flow_id, previous, now):
        if self.cursors.get((company_id, flow_id)) != previous:
            return False
        self.cursors[(company_id, flow_id)] = now
        return True


class InMemoryFlowRepository:
    def __init__(self):
        self.flows: Dict[str, Flow] = {}
        self.nodes: Dict[str, List[FlowNode]] = {}
        self.edges: Dict[str, List[FlowEdge]] = {}

    def add(self, flow: Flow, nodes: List[FlowNode], edges: List[FlowEdge]) -> Flow:
        self.flows[flow.id] = flow
        self.nodes[flow.id] = nodes
        self.edges[flow.id] = edges
        return flow

    def set_active(self, flow_id: str, active: bool):
        self.flows[flow_id] = self.flows[flow_id].model_copy(update={"is_active": active})

    async def list_active_flows(self, company_id, trigger_type):
        return [
            f for f in self.flows.values()
            if f.company_id == company_id and f.is_active and f.trigger_type == trigger_type
        ]

    async def list_schedule_flows(self):
        return [f for f in self.flows.values() if f.is_active and f.trigger_type == "schedule"]

    async def get_flow(self, company_id, flow_id):
        flow = self.flows.get(flow_id)
        return flow if flow is not None and flow.company_id == company_id else None

    async def list_flows(self, company_id):
        return [f for f in self.flows.values() if f.company_id == company_id]

    async def load_graph(self, company_id, flow_id):
        flow = await self.get_flow(company_id, flow_id)
        if flow is None:
            raise FlowConfigurationError(f"Flow {flow_id} not found for company {company_id}")
        return FlowGraph(flow, self.nodes[flow_id], self.edges[flow_id])


class RecordingGateway:
    """Outbound gateway that records messages; ``failures`` sends raise DeliveryError first."""

    def __init__(self, failures: int = 0):
        self.sent: List[dict] = []
        self.failures = failures
        self.on_send = None

    async def send(self, company_id, contact, text, buttons=None, media_url=None, media_type=None, metadata=None):
        if self.failures > 0:
            self.failures -= 1
            raise DeliveryError("gateway unavailable")
        if self.on_send is not None:
            await self.on_send()
        self.sent.append({
            "company_id": company_id,
            "to": contact.get("phone"),
            "text": text,
            "buttons": buttons,
            "media_url": media_url,
            "metadata": metadata or {},
        })
        return f"wamid.{len(self.sent)}"

    def texts(self) -> List[str]:
        return [m["text"] for m in self.sent]


class RecordingCRM:
    def __init__(self):
        self.contacts: Dict[str, dict] = {}
        self.leads: Dict[str, dict] = {}
        self.calls: List[tuple] = []
        self.audience: List[dict] = []

    def add_contact(self, company_id: str, contact_id: str, name: str = "Maria Silva", phone: str = "5511999990000", tags=None) -> dict:
        contact = {"_id": contact_id, "company_id": company_id, "name": name, "phone": phone,
                   "normalized_phone": phone, "tags": list(tags or [])}
        self.contacts[contact_id] = contact
        return contact

    def add_lead(self, company_id: str, lead_id: str, contact_id: Optional[str] = None, phone: Optional[str] = None) -> dict:
        lead = {"_id": lead_id, "company_id": company_id, "contact_id": contact_id, "phone": phone, "name": "Lead"}
        self.leads[lead_id] = lead
        return lead

    def _scoped(self, records: Dict[str, dict], company_id: str, record_id: str) -> Optional[dict]:
        record = records.get(record_id)
        if record is None:
            return None
        if record["company_id"] != company_id:
            raise TenantIsolationError("foreign record", company_id=company_id, details={"record_id": record_id})
        return copy.deepcopy(record)

    async def get_contact(self, company_id, contact_id):
        return self._scoped(self.contacts, company_id, contact_id)

    async def get_lead(self, company_id, lead_id):
        return self._scoped(self.leads, company_id, lead_id)

    async def get_or_create_contact_for_lead(self, company_id, lead):
        if not lead.get("phone"):
            return None
        contact = self.add_contact(company_id, f"contact-for-{lead['_id']}", phone=lead["phone"])
        self.leads[lead["_id"]]["contact_id"] = contact["_id"]
        return contact

    async def add_tag(self, company_id, contact_id, tag):
        self.calls.append(("add_tag", company_id, contact_id, tag))
        tags = self.contacts[contact_id]["tags"]
        if tag not in tags:
            tags.append(tag)

    async def remove_tag(self, company_id, contact_id, tag):
        self.calls.append(("remove_tag", company_id, contact_id, tag))
        tags = self.contacts[contact_id]["tags"]
        if tag in tags:
            tags.remove(tag)

    async def move_stage(self, company_id, contact_id, stage_id, lead_id=None):
        self.calls.append(("move_stage", company_id, contact_id, stage_id, lead_id))

    async def transfer_to_human(self, company_id, contact_id, execution_id=None):
        self.calls.append(("transfer_to_human", company_id, contact_id, execution_id))
        self.contacts[contact_id]["human_takeover"] = True

    async def call_webhook(self, url, payload, idempotency_key):
        self.calls.append(("call_webhook", url, idempotency_key))
        return 200

    async def list_audience(self, company_id, audience):
        return [copy.deepcopy(c) for c in self.audience if c["company_id"] == company_id]


# ==================== Flow builders ====================

def make_flow(flow_id: str, company_id: str = "company-1", trigger_type: str = "new_lead",
              trigger_config: Optional[dict] = None, is_active: bool = True, name: str = "Test flow") -> Flow:
    return Flow.model_validate({
        "_id": flow_id,
        "company_id": company_id,
        "name": name,
        "is_active": is_active,
        "trigger_type": trigger_type,
        "trigger_config": trigger_config or {},
    })


def make_node(flow_id: str, node_id: str, node_type: str, **config) -> FlowNode:
    return FlowNode.model_validate({"_id": node_id, "flow_id": flow_id, "node_type": node_type, "config": config})


def make_edge(flow_id: str, source: str, target: str, handle: Optional[str] = None) -> FlowEdge:
    edge_id = f"{source}->{target}:{handle or ''}"
    return FlowEdge.model_validate({
        "_id": edge_id, "flow_id": flow_id, "source_node_id": source, "target_node_id": target, "source_handle": handle,
    })


def make_graph(flow: Flow, nodes: List[FlowNode], edges: List[FlowEdge]) -> FlowGraph:
    return FlowGraph(flow, nodes, edges)
