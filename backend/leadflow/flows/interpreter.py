# /leadflow/flows/interpreter.py

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from leadflow.config.strings import QUESTION_OPTION_LINE
from leadflow.flows.conditions import evaluate_conditions, pick_branch, randomizer_seed
from leadflow.flows.errors import FlowConfigurationError
from leadflow.flows.graph import FlowGraph
from leadflow.flows.results import Advance, Complete, Reply, StepResult, Suspend
from leadflow.flows.templating import render
from leadflow.models.execution import Execution
from leadflow.models.flow import (
    ActionConfig,
    ActionType,
    ConditionConfig,
    DelayConfig,
    FlowNode,
    MessageConfig,
    NodeType,
    PauseConfig,
    QuestionConfig,
    RandomBranch,
    TransferConfig,
)

logger = logging.getLogger(__name__)

RANDOMIZER_CONTEXT_KEY = "_randomizer"


def button_handle(index: int) -> str:
    return f"button-{index}"


def option_handle(index: int) -> str:
    return f"option-{index}"


def resolve_choice(labels: List[str], reply: Reply) -> Optional[int]:
    """
    Maps a reply onto one of ``labels``: an explicit button index, a typed
    number (1-based) or the label text itself, compared case-insensitively.
    """
    if reply.button_index is not None:
        return reply.button_index if 0 <= reply.button_index < len(labels) else None
    text = (reply.text or "").strip()
    if not text:
        return None
    if re.fullmatch(r"\d+", text):
        index = int(text) - 1
        return index if 0 <= index < len(labels) else None
    lowered = text.lower()
    for index, label in enumerate(labels):
        if label.lower() == lowered:
            return index
    return None


class NodeInterpreter:
    """
    Executes one node at a time.

    Side effects go through the gateway (outbound messages) and the CRM
    adapter (tags, stages, takeover, webhooks); both must tolerate replays
    because a step is re-run if the process dies before it is saved. The
    interpreter writes captured variables into ``execution.context`` and
    returns where to go next; persistence belongs to the engine.
    """

    def __init__(self, gateway, crm, default_transfer_message: str = ""):
        self.gateway = gateway
        self.crm = crm
        self.default_transfer_message = default_transfer_message

    async def step(
        self,
        execution: Execution,
        node: FlowNode,
        graph: FlowGraph,
        now: datetime,
        contact: Optional[Dict[str, Any]] = None,
        reply: Optional[Reply] = None,
        timer_elapsed: bool = False,
    ) -> StepResult:
        handler = {
            NodeType.START: self._start,
            NodeType.MESSAGE: self._message,
            NodeType.QUESTION: self._question,
            NodeType.CONDITION: self._condition,
            NodeType.ACTION: self._action,
            NodeType.DELAY: self._delay,
            NodeType.PAUSE: self._pause,
            NodeType.TRANSFER: self._transfer,
            NodeType.END: self._end,
        }.get(NodeType(node.node_type))
        if handler is None:
            raise FlowConfigurationError(f"Unsupported node type {node.node_type}")
        return await handler(
            execution=execution, node=node, graph=graph, now=now,
            contact=contact or {}, reply=reply, timer_elapsed=timer_elapsed,
        )

    # ---------------- helpers ---------------- #

    def _follow(self, graph: FlowGraph, node: FlowNode, handle: Optional[str] = None) -> StepResult:
        next_node_id = graph.next_node_id(node.id, handle)
        if next_node_id is None:
            # A node with no usable exit ends the flow
            return Complete(reason="no_outgoing_edge")
        return Advance(next_node_id=next_node_id, handle=handle)

    def _capture(self, execution: Execution, variable: Optional[str], value: Optional[str], raw_text: Optional[str]):
        if raw_text is not None:
            execution.context["last_message"] = raw_text
        if variable and value is not None:
            execution.context[variable] = value

    async def _send(self, execution: Execution, contact: Dict[str, Any], node: FlowNode, text: str, **kwargs) -> str:
        return await self.gateway.send(
            execution.company_id,
            contact,
            text,
            metadata={"execution_id": execution.id, "flow_id": execution.flow_id, "node_id": node.id},
            **kwargs,
        )

    # ---------------- node handlers ---------------- #

    async def _start(self, graph, node, **_) -> StepResult:
        return self._follow(graph, node)

    async def _end(self, **_) -> StepResult:
        return Complete(reason="end")

    async def _message(self, execution, node, graph, contact, reply, **_) -> StepResult:
        config: MessageConfig = node.config

        if reply is not None and config.buttons:
            index = resolve_choice(config.buttons, reply)
            if index is None:
                self._capture(execution, None, None, reply.text)
                if graph.next_node_id(node.id, None) is None:
                    return Suspend()
                return self._follow(graph, node)
            label = config.buttons[index]
            self._capture(execution, config.variable, label, reply.text if reply.text is not None else label)
            execution.context["button_index"] = index
            return self._follow(graph, node, button_handle(index))

        text = render(config.message, execution.context, contact)
        if not text and not config.media_url:
            raise FlowConfigurationError(f"Message node {node.id} has no content")
        await self._send(
            execution, contact, node, text,
            buttons=config.buttons or None,
            media_url=render(config.media_url, execution.context, contact) or None,
            media_type=config.media_type,
        )
        if config.buttons:
            return Suspend()
        return self._follow(graph, node)

    async def _question(self, execution, node, graph, contact, reply, **_) -> StepResult:
        config: QuestionConfig = node.config

        if reply is None:
            text = render(config.question, execution.context, contact)
            if config.options:
                lines = [QUESTION_OPTION_LINE.format(index=i + 1, option=o) for i, o in enumerate(config.options)]
                text = f"{text}\n\n" + "\n".join(lines) if text else "\n".join(lines)
            if text:
                await self._send(execution, contact, node, text)
            return Suspend()

        if not config.options:
            answer = reply.text
            self._capture(execution, config.variable, answer, reply.text)
            return self._follow(graph, node)

        index = resolve_choice(config.options, reply)
        if index is None:
            self._capture(execution, config.variable, reply.text, reply.text)
            if graph.next_node_id(node.id, None) is None:
                # Nothing to route an unrecognised answer to; keep waiting
                return Suspend()
            return self._follow(graph, node)
        option = config.options[index]
        self._capture(execution, config.variable, option, reply.text if reply.text is not None else option)
        return self._follow(graph, node, option_handle(index))

    async def _condition(self, execution, node, graph, contact, **_) -> StepResult:
        config: ConditionConfig = node.config

        if config.is_randomizer:
            handle = self._randomizer_handle(execution, node, graph, config)
            next_node_id = graph.next_node_id(node.id, handle, fallback=False)
            if next_node_id is None:
                return Complete(reason="no_outgoing_edge")
            return Advance(next_node_id=next_node_id, handle=handle)

        handle = "true" if evaluate_conditions(config.conditions, execution.context, contact) else "false"
        return self._follow(graph, node, handle)

    def _randomizer_handle(self, execution, node, graph, config: ConditionConfig) -> Optional[str]:
        drawn = execution.context.setdefault(RANDOMIZER_CONTEXT_KEY, {})
        previous = drawn.get(node.id)
        if previous and previous.get("step") == execution.step_count:
            return previous.get("handle")

        branches = config.branches or [RandomBranch(handle=h) for h in graph.handles(node.id) if h is not None]
        if not branches:
            # A single unlabeled exit leaves nothing to draw
            return None
        handle = pick_branch(branches, randomizer_seed(execution.id, node.id, execution.step_count))
        drawn[node.id] = {"step": execution.step_count, "handle": handle}
        return handle

    async def _action(self, execution, node, graph, contact, now, **_) -> StepResult:
        config: ActionConfig = node.config
        value = render(config.action_value, execution.context, contact) if config.action_value else None
        action_type = ActionType(config.action_type)

        if action_type == ActionType.ADD_TAG:
            await self.crm.add_tag(execution.company_id, execution.contact_id, value)
        elif action_type == ActionType.REMOVE_TAG:
            await self.crm.remove_tag(execution.company_id, execution.contact_id, value)
        elif action_type == ActionType.MOVE_STAGE:
            await self.crm.move_stage(execution.company_id, execution.contact_id, value, lead_id=execution.lead_id)
        elif action_type == ActionType.WEBHOOK:
            await self.crm.call_webhook(
                config.url,
                {
                    "execution_id": execution.id,
                    "flow_id": execution.flow_id,
                    "node_id": node.id,
                    "company_id": execution.company_id,
                    "contact": contact,
                    "context": {k: v for k, v in execution.context.items() if not k.startswith("_")},
                    "timestamp": now.isoformat(),
                },
                idempotency_key=f"{execution.id}:{node.id}:{execution.step_count}",
            )
        return self._follow(graph, node)

    async def _delay(self, node, graph, now, timer_elapsed, **_) -> StepResult:
        config: DelayConfig = node.config
        if config.seconds <= 0 or timer_elapsed:
            return self._follow(graph, node)
        return Suspend(resume_at=now + timedelta(seconds=config.seconds))

    async def _pause(self, execution, node, graph, reply, **_) -> StepResult:
        config: PauseConfig = node.config
        if reply is None:
            return Suspend()
        self._capture(execution, config.variable, reply.text, reply.text)
        return self._follow(graph, node)

    async def _transfer(self, execution, node, contact, **_) -> StepResult:
        config: TransferConfig = node.config
        text = render(config.message or self.default_transfer_message, execution.context, contact)
        if text:
            await self._send(execution, contact, node, text)
        await self.crm.transfer_to_human(execution.company_id, execution.contact_id, execution_id=execution.id)
        return Complete(reason="transfer", human_takeover=True)
