# /leadflow/flows/engine.py

"""
Flow trigger-and-execution engine.

Entry point for every event that can start or move an execution:
- new_lead / keyword / stage_change start one execution per matching flow
- inbound_message resumes the contact's reply-waiting execution, or falls
  back to keyword triggers when nothing is waiting
- continue_execution resumes one execution by id
- schedule_tick resumes due timers and retries, and fires cron flows

Correctness comes from the execution store, not from in-process locks:
creation is an atomic insert guarded by a unique index, every step is saved
with a version compare-and-set, and a worker must hold the execution's lease
before stepping it. Node failures become execution state; only
infrastructure errors escape handle_event.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog

from leadflow.flows.errors import (
    FlowConfigurationError,
    StaleExecutionError,
    TenantIsolationError,
)
from leadflow.flows.interpreter import NodeInterpreter
from leadflow.flows.matcher import TriggerMatch, TriggerMatcher, next_fire_time
from leadflow.flows.results import Advance, Complete, Fail, Reply, StepResult, Suspend
from leadflow.models.events import (
    ContinueExecutionEvent,
    InboundMessageEvent,
    KeywordEvent,
    NewLeadEvent,
    ScheduleTickEvent,
    StageChangeEvent,
    parse_event,
)
from leadflow.models.execution import (
    CONSUMED_MESSAGE_IDS_KEPT,
    Execution,
    ExecutionLog,
    ExecutionLogAction,
    ExecutionStatus,
    WaitKind,
    ceil_to_millisecond,
    utcnow,
)
from leadflow.models.flow import NodeType, TriggerType
from leadflow.utils.logging import bind_execution
from leadflow.utils.metrics import (
    flow_events_counter,
    flow_executions_finished_counter,
    flow_scheduler_due_gauge,
    flow_step_duration_histogram,
    flow_steps_counter,
    tenant_violations_counter,
)

log = structlog.get_logger(__name__)


class FlowEngine:
    def __init__(
        self,
        store,
        repository,
        gateway,
        crm,
        security_log=None,
        alerting=None,
        *,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 30,
        max_steps: int = 50,
        lease_seconds: int = 120,
        batch_size: int = 50,
        default_transfer_message: str = "",
        scheduler_timezone: str = "UTC",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.repository = repository
        self.crm = crm
        self.security_log = security_log
        self.alerting = alerting
        self.matcher = TriggerMatcher(repository)
        self.interpreter = NodeInterpreter(gateway, crm, default_transfer_message)
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_steps = max_steps
        self.lease_seconds = lease_seconds
        self.batch_size = batch_size
        self.scheduler_timezone = scheduler_timezone
        self.clock = clock or utcnow

    # ==================== Event entry point ====================

    async def handle_event(self, event) -> Dict[str, Any]:
        """
        Processes one event and returns an acknowledgement such as
        ``{"status": "processed", "started": [...]}``. Node-level failures are
        recorded on the execution and tenant violations are rejected and
        reported. Infrastructure failures (database, cache) are raised so the
        queue leaves the event pending for redelivery.
        """
        if isinstance(event, (dict, str, bytes)):
            event = parse_event(event)
        event_log = log.bind(event_type=event.event_type, company_id=getattr(event, "company_id", None))

        try:
            if isinstance(event, NewLeadEvent):
                result = await self._on_new_lead(event)
            elif isinstance(event, KeywordEvent):
                result = await self._on_keyword(event)
            elif isinstance(event, StageChangeEvent):
                result = await self._on_stage_change(event)
            elif isinstance(event, InboundMessageEvent):
                result = await self._on_inbound_message(event)
            elif isinstance(event, ContinueExecutionEvent):
                result = await self._on_continue(event)
            elif isinstance(event, ScheduleTickEvent):
                result = await self._on_schedule_tick(event)
            else:
                result = {"status": "ignored", "reason": "unknown_event"}
        except TenantIsolationError as e:
            await self._report_violation(event, e)
            result = {"status": "rejected", "reason": str(e)}
        except Exception as e:
            flow_events_counter.labels(event_type=event.event_type, status="error").inc()
            event_log.exception("flow_event_failed", error=str(e))
            raise

        flow_events_counter.labels(event_type=event.event_type, status=result["status"]).inc()
        event_log.info("flow_event_handled", **{k: v for k, v in result.items() if k != "reason"})
        return result

    # ==================== Trigger events ====================

    async def _on_new_lead(self, event: NewLeadEvent) -> Dict[str, Any]:
        lead = await self._require_lead(event.company_id, event.lead_id)
        contact_id = await self._contact_for_lead(event.company_id, lead, event.contact_id)
        if not contact_id:
            return {"status": "ignored", "reason": "lead_has_no_contact"}
        context = {"lead_id": event.lead_id, "funnel_id": event.funnel_id, "stage_id": event.stage_id}
        return await self._start_matches(event, contact_id, lead_id=event.lead_id, context=context)

    async def _on_keyword(self, event: KeywordEvent) -> Dict[str, Any]:
        await self._require_contact(event.company_id, event.contact_id)
        return await self._start_matches(event, event.contact_id, context={"last_message": event.message_text})

    async def _on_stage_change(self, event: StageChangeEvent) -> Dict[str, Any]:
        lead = await self._require_lead(event.company_id, event.lead_id)
        contact_id = await self._contact_for_lead(event.company_id, lead, event.contact_id)
        if not contact_id:
            return {"status": "ignored", "reason": "lead_has_no_contact"}
        context = {
            "lead_id": event.lead_id,
            "funnel_id": event.funnel_id,
            "from_stage_id": event.from_stage_id,
            "stage_id": event.to_stage_id,
        }
        return await self._start_matches(event, contact_id, lead_id=event.lead_id, context=context)

    async def _start_matches(self, event, contact_id: str, lead_id: Optional[str] = None, context: Optional[dict] = None) -> Dict[str, Any]:
        matches = await self.matcher.match(event)
        if not matches:
            return {"status": "no_match", "started": []}

        started, skipped = [], 0
        for match in matches:
            execution = await self._start(match, contact_id, lead_id=lead_id, trigger_type=event.event_type, context=context)
            if execution is None:
                skipped += 1
            else:
                started.append(execution.id)
        return {"status": "processed", "started": started, "skipped": skipped}

    async def _start(
        self,
        match: TriggerMatch,
        contact_id: str,
        lead_id: Optional[str] = None,
        trigger_type: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> Optional[Execution]:
        """Creates and drives one execution; None when the pair already has an active one."""
        now = self.clock()
        execution = Execution(
            company_id=match.flow.company_id,
            flow_id=match.flow.id,
            contact_id=contact_id,
            lead_id=lead_id,
            trigger_type=trigger_type,
            current_node_id=match.start_node_id or "",
            context={k: v for k, v in (context or {}).items() if v is not None},
            lease_until=now + timedelta(seconds=self.lease_seconds),
            started_at=now,
            updated_at=now,
        )
        created = await self.store.create_execution(execution)
        if created is None:
            log.info("execution_already_active", flow_id=match.flow.id, contact_id=contact_id, company_id=match.flow.company_id)
            return None

        await self._log(created, ExecutionLogAction.ENTERED, node_id=created.current_node_id, details={"trigger_type": trigger_type})
        if match.error:
            await self._fail(created, match.error)
            return created
        await self._drive(created)
        return created

    # ==================== Resume paths ====================

    async def _on_inbound_message(self, event: InboundMessageEvent) -> Dict[str, Any]:
        await self._require_contact(event.company_id, event.contact_id)
        waiting = await self.store.find_waiting_for_reply(event.company_id, event.contact_id)
        if waiting is not None:
            reply = Reply(text=event.message_text, button_index=event.button_index, message_id=event.message_id)
            return await self._resume(waiting, reply, expected_node_id=waiting.current_node_id)

        if not event.message_text:
            return {"status": "ignored", "reason": "empty_message"}
        keyword_event = KeywordEvent(company_id=event.company_id, contact_id=event.contact_id, message_text=event.message_text)
        return await self._start_matches(keyword_event, event.contact_id, context={"last_message": event.message_text})

    async def _on_continue(self, event: ContinueExecutionEvent) -> Dict[str, Any]:
        execution = await self.store.get_execution(event.company_id, event.execution_id)
        if execution is None:
            return {"status": "ignored", "reason": "execution_not_found"}
        reply = Reply(text=event.reply_text, button_index=event.button_index)
        return await self._resume(execution, reply, expected_node_id=event.expected_node_id)

    async def _resume(self, execution: Execution, reply: Reply, expected_node_id: Optional[str]) -> Dict[str, Any]:
        def _stale(candidate: Execution) -> Optional[str]:
            if reply.message_id and reply.message_id in candidate.consumed_message_ids:
                return "duplicate_message"
            if not candidate.is_waiting_for_reply:
                return "not_waiting"
            if expected_node_id and candidate.current_node_id != expected_node_id:
                return "already_advanced"
            return None

        reason = _stale(execution)
        if reason:
            log.info("resume_ignored", execution_id=execution.id, reason=reason, node_id=execution.current_node_id)
            return {"status": "ignored", "reason": reason, "execution_id": execution.id}

        claimed = await self.store.claim(execution, self.clock(), self.lease_seconds)
        if claimed is None:
            log.info("resume_ignored", execution_id=execution.id, reason="claimed_elsewhere")
            return {"status": "ignored", "reason": "claimed_elsewhere", "execution_id": execution.id}

        reason = _stale(claimed)
        if reason:
            await self.store.release(claimed)
            return {"status": "ignored", "reason": reason, "execution_id": execution.id}

        if reply.message_id:
            # Saved with the first step, so a redelivery of this message is a no-op
            claimed.consumed_message_ids = (claimed.consumed_message_ids + [reply.message_id])[-CONSUMED_MESSAGE_IDS_KEPT:]
        await self._log(claimed, ExecutionLogAction.RESUMED, node_id=claimed.current_node_id,
                        details={"reply_text": reply.text, "button_index": reply.button_index})
        final = await self._drive(claimed, reply=reply)
        return {"status": "processed", "execution_id": execution.id, "execution_status": final.status if final else None}

    # ==================== Scheduler ====================

    async def _on_schedule_tick(self, event: ScheduleTickEvent) -> Dict[str, Any]:
        now = event.now or self.clock()
        resumed = await self.tick(now)
        fired = await self.fire_schedules(now)
        return {"status": "processed", "resumed": resumed, "fired": fired}

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Drives every execution whose timer or retry is due, or whose lease expired mid-run."""
        now = now or self.clock()
        due = await self.store.list_due(now, self.batch_size)
        flow_scheduler_due_gauge.set(len(due))

        resumed = 0
        for execution in due:
            claimed = await self.store.claim(execution, now, self.lease_seconds)
            if claimed is None:
                continue
            if claimed.is_waiting_for_reply:
                await self.store.release(claimed)
                continue
            timer_elapsed = claimed.status == ExecutionStatus.WAITING and claimed.wait_kind == WaitKind.TIMER
            await self._drive(claimed, timer_elapsed=timer_elapsed)
            resumed += 1
        return resumed

    async def fire_schedules(self, now: Optional[datetime] = None) -> int:
        """Starts executions for schedule-triggered flows whose cron fired since the last check."""
        now = now or self.clock()
        started = 0
        for flow in await self.repository.list_schedule_flows():
            config = flow.trigger_config
            last_checked = await self.store.get_schedule_cursor(flow.company_id, flow.id)
            if last_checked is None:
                # First sighting: start counting from now rather than replaying history
                await self.store.advance_schedule_cursor(flow.company_id, flow.id, None, now)
                continue

            fire_at = next_fire_time(config, last_checked, self.scheduler_timezone)
            if fire_at is None or fire_at > now:
                continue
            if not await self.store.advance_schedule_cursor(flow.company_id, flow.id, last_checked, now):
                continue

            match = await self.matcher.resolve(flow)
            audience = await self.crm.list_audience(flow.company_id, config.audience)
            log.info("schedule_fired", flow_id=flow.id, company_id=flow.company_id, fire_at=fire_at.isoformat(), audience=len(audience))
            for contact in audience:
                execution = await self._start(
                    match,
                    str(contact["_id"]),
                    lead_id=contact.get("lead_id"),
                    trigger_type=TriggerType.SCHEDULE.value,
                    context={"scheduled_at": fire_at.isoformat()},
                )
                if execution is not None:
                    started += 1
        return started

    # ==================== Step loop ====================

    async def _drive(self, execution: Execution, reply: Optional[Reply] = None, timer_elapsed: bool = False) -> Optional[Execution]:
        """
        Steps a leased execution until it suspends, terminates or fails,
        saving after every step. Returns the last saved state, or None when
        another worker took the execution over.
        """
        try:
            with bind_execution(execution):
                return await self._drive_steps(execution, reply, timer_elapsed)
        except StaleExecutionError as e:
            log.info("execution_stale", execution_id=execution.id, flow_id=execution.flow_id, error=str(e))
            return None

    async def _drive_steps(self, execution: Execution, reply: Optional[Reply], timer_elapsed: bool) -> Execution:
        try:
            graph = (await self.repository.load_graph(execution.company_id, execution.flow_id)).validate()
        except FlowConfigurationError as e:
            return await self._fail(execution, str(e))

        contact = await self.crm.get_contact(execution.company_id, execution.contact_id)
        if contact is None:
            return await self._fail(execution, f"Contact {execution.contact_id} no longer exists")

        steps_this_run = 0
        while True:
            if steps_this_run >= self.max_steps:
                return await self._fail(execution, f"Step limit of {self.max_steps} reached in one run; the flow probably loops")

            now = self.clock()
            try:
                node = graph.node(execution.current_node_id)
                with flow_step_duration_histogram.labels(node_type=node.node_type).time():
                    result = await self.interpreter.step(
                        execution, node, graph, now, contact=contact, reply=reply, timer_elapsed=timer_elapsed
                    )
            except FlowConfigurationError as e:
                flow_steps_counter.labels(node_type="unknown", outcome="config_error").inc()
                return await self._fail(execution, str(e))
            except Exception as e:
                flow_steps_counter.labels(node_type=node.node_type, outcome="error").inc()
                return await self._retry_later(execution, node.id, e, now)

            reply, timer_elapsed = None, False
            steps_this_run += 1
            flow_steps_counter.labels(node_type=node.node_type, outcome=type(result).__name__.lower()).inc()
            execution = await self._apply(execution, node, result, now)
            if not isinstance(result, Advance):
                return execution

    async def _apply(self, execution: Execution, node, result: StepResult, now: datetime) -> Execution:
        execution.step_count += 1
        execution.attempts = 0
        execution.last_error = None
        execution.updated_at = now
        step_log = log.bind(execution_id=execution.id, flow_id=execution.flow_id, company_id=execution.company_id, node_id=node.id)

        if isinstance(result, Advance):
            action = ExecutionLogAction.DECISION if node.node_type == NodeType.CONDITION else ExecutionLogAction.EXECUTED
            details = {"next_node_id": result.next_node_id, "handle": result.handle}
            execution.current_node_id = result.next_node_id
            execution.status = ExecutionStatus.RUNNING
            execution.wait_kind = None
            execution.next_action_at = None
            execution.lease_until = now + timedelta(seconds=self.lease_seconds)
        elif isinstance(result, Suspend):
            action = ExecutionLogAction.SUSPENDED
            details = {"resume_at": result.resume_at.isoformat() if result.resume_at else None}
            execution.status = ExecutionStatus.WAITING
            execution.wait_kind = WaitKind.REPLY if result.awaiting_reply else WaitKind.TIMER
            execution.next_action_at = ceil_to_millisecond(result.resume_at) if result.resume_at else None
            execution.lease_until = None
        elif isinstance(result, Complete):
            action = ExecutionLogAction.COMPLETED
            details = {"reason": result.reason}
            execution.status = ExecutionStatus.COMPLETED
            execution.is_human_takeover = execution.is_human_takeover or result.human_takeover
            execution.wait_kind = None
            execution.next_action_at = None
            execution.lease_until = None
            execution.completed_at = now
        else:
            return await self._fail(execution, result.reason)

        saved = await self.store.save(execution)
        await self._log(saved, action, node_id=node.id, node_type=node.node_type, details=details)
        step_log.info("execution_step", action=action.value, status=saved.status, **details)
        if saved.status == ExecutionStatus.COMPLETED:
            flow_executions_finished_counter.labels(status="completed").inc()
        return saved

    async def _retry_later(self, execution: Execution, node_id: str, error: Exception, now: datetime) -> Execution:
        execution.attempts += 1
        execution.last_error = f"{type(error).__name__}: {error}"
        execution.updated_at = now
        if execution.attempts >= self.max_attempts:
            log.error("execution_retries_exhausted", execution_id=execution.id, flow_id=execution.flow_id,
                      company_id=execution.company_id, node_id=node_id, attempts=execution.attempts, error=str(error))
            return await self._fail(execution, execution.last_error)

        delay = self.retry_backoff_seconds * (2 ** (execution.attempts - 1))
        execution.status = ExecutionStatus.RUNNING
        execution.wait_kind = None
        execution.next_action_at = now + timedelta(seconds=delay)
        execution.lease_until = None
        saved = await self.store.save(execution)
        await self._log(saved, ExecutionLogAction.ERROR, node_id=node_id,
                        details={"error": saved.last_error, "attempt": saved.attempts, "retry_at": saved.next_action_at.isoformat()})
        log.warning("execution_step_retry", execution_id=execution.id, flow_id=execution.flow_id, company_id=execution.company_id,
                    node_id=node_id, attempt=saved.attempts, retry_in_seconds=delay, error=str(error))
        return saved

    async def _fail(self, execution: Execution, reason: str) -> Execution:
        now = self.clock()
        execution.status = ExecutionStatus.FAILED
        execution.last_error = reason
        execution.wait_kind = None
        execution.next_action_at = None
        execution.lease_until = None
        execution.completed_at = now
        execution.updated_at = now
        saved = await self.store.save(execution)
        await self._log(saved, ExecutionLogAction.ERROR, node_id=saved.current_node_id or None, details={"error": reason, "final": True})
        log.error("execution_failed", execution_id=saved.id, flow_id=saved.flow_id, company_id=saved.company_id,
                  node_id=saved.current_node_id, error=reason)
        flow_executions_finished_counter.labels(status="failed").inc()
        if self.alerting is not None:
            await self.alerting.send_critical_alert(
                "Flow execution failed",
                {"execution_id": saved.id, "flow_id": saved.flow_id, "company_id": saved.company_id, "error": reason},
            )
        return saved

    # ==================== Tenant checks ====================

    async def _require_contact(self, company_id: str, contact_id: str) -> dict:
        contact = await self.crm.get_contact(company_id, contact_id)
        if contact is None:
            raise TenantIsolationError(f"Contact {contact_id} is not available to company {company_id}",
                                       company_id=company_id, details={"contact_id": contact_id})
        return contact

    async def _require_lead(self, company_id: str, lead_id: str) -> dict:
        lead = await self.crm.get_lead(company_id, lead_id)
        if lead is None:
            raise TenantIsolationError(f"Lead {lead_id} is not available to company {company_id}",
                                       company_id=company_id, details={"lead_id": lead_id})
        return lead

    async def _contact_for_lead(self, company_id: str, lead: dict, contact_id: Optional[str]) -> Optional[str]:
        if contact_id:
            await self._require_contact(company_id, contact_id)
            return contact_id
        if lead.get("contact_id"):
            return str(lead["contact_id"])
        contact = await self.crm.get_or_create_contact_for_lead(company_id, lead)
        return str(contact["_id"]) if contact else None

    async def _report_violation(self, event, error: TenantIsolationError):
        tenant_violations_counter.labels(event_type=event.event_type).inc()
        log.warning("tenant_isolation_violation", event_type=event.event_type, error=str(error), **error.details)
        if self.security_log is not None:
            await self.security_log.log_security_event(
                "tenant_isolation_violation",
                None,
                {"event": event.model_dump(mode="json"), "error": str(error), **error.details},
            )

    async def _log(self, execution: Execution, action: ExecutionLogAction, node_id: Optional[str] = None,
                   node_type: Optional[str] = None, details: Optional[dict] = None):
        await self.store.log_step(ExecutionLog(
            execution_id=execution.id,
            company_id=execution.company_id,
            flow_id=execution.flow_id,
            contact_id=execution.contact_id,
            node_id=node_id,
            node_type=node_type,
            action=action,
            details=details or {},
        ))
