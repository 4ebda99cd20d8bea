# /leadflow/flows/matcher.py

import re
import logging
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from apscheduler.triggers.cron import CronTrigger

from leadflow.flows.errors import FlowConfigurationError
from leadflow.models.events import KeywordEvent, NewLeadEvent, StageChangeEvent
from leadflow.models.flow import Flow, ScheduleTriggerConfig, TriggerType

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\w+")


@dataclass(frozen=True)
class TriggerMatch:
    flow: Flow
    start_node_id: Optional[str]
    # Set when the flow matched but its graph cannot run
    error: Optional[str] = None


def tokenize(text: Optional[str]) -> List[str]:
    """Lowercased word tokens; punctuation and surrounding whitespace are dropped."""
    return _TOKEN.findall(unicodedata.normalize("NFC", text or "").lower())


def _contains_sequence(tokens: Sequence[str], needle: Sequence[str]) -> bool:
    n = len(needle)
    return any(list(tokens[i:i + n]) == list(needle) for i in range(len(tokens) - n + 1))


def keyword_matches(keywords: Sequence[str], message_text: str) -> bool:
    """
    A keyword matches when its tokens appear as a contiguous run of the
    message's tokens. "oi" matches "Oi, tudo bem?" but not "oito".
    """
    tokens = tokenize(message_text)
    for keyword in keywords:
        needle = tokenize(keyword)
        if needle and _contains_sequence(tokens, needle):
            return True
    return False


def next_fire_time(config: ScheduleTriggerConfig, after: datetime, default_timezone: str) -> Optional[datetime]:
    """First cron fire strictly after ``after``."""
    trigger = CronTrigger.from_crontab(config.cron, timezone=config.timezone or default_timezone)
    return trigger.get_next_fire_time(None, after + timedelta(microseconds=1))


class TriggerMatcher:
    """Finds the active flows of a company whose trigger accepts an event."""

    def __init__(self, repository):
        self.repository = repository

    async def match(self, event) -> List[TriggerMatch]:
        """
        Returns one match per accepting flow (fan-out). Events that are not
        triggers (continue_execution, schedule ticks) never match here.
        """
        selector = self._selector(event)
        if selector is None:
            return []
        trigger_type, accepts = selector

        flows = await self.repository.list_active_flows(event.company_id, trigger_type)
        matches = []
        for flow in flows:
            if not flow.is_active or not accepts(flow.trigger_config):
                continue
            matches.append(await self.resolve(flow))
        return matches

    def _selector(self, event) -> Optional[tuple[TriggerType, Callable]]:
        if isinstance(event, NewLeadEvent):
            return TriggerType.NEW_LEAD, lambda c: not c.funnel_id or c.funnel_id == event.funnel_id
        if isinstance(event, KeywordEvent):
            return TriggerType.KEYWORD, lambda c: keyword_matches(c.keywords, event.message_text)
        if isinstance(event, StageChangeEvent):
            return TriggerType.STAGE_CHANGE, lambda c: (
                (not c.funnel_id or c.funnel_id == event.funnel_id)
                and (not c.stage_id or c.stage_id == event.to_stage_id)
            )
        return None

    async def resolve(self, flow: Flow) -> TriggerMatch:
        try:
            graph = await self.repository.load_graph(flow.company_id, flow.id)
            return TriggerMatch(flow=flow, start_node_id=graph.validate().start_node.id)
        except FlowConfigurationError as e:
            logger.error(f"Flow {flow.id} matched but is not executable: {e}")
            return TriggerMatch(flow=flow, start_node_id=None, error=str(e))
