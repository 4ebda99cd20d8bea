# /leadflow/services/flow_repository.py

import logging
from typing import List, Optional

from pydantic import ValidationError

from leadflow.flows.errors import FlowConfigurationError
from leadflow.flows.graph import FlowGraph
from leadflow.models.flow import Flow, FlowEdge, FlowNode, TriggerType
from leadflow.services.db_service import db_service, id_filter

logger = logging.getLogger(__name__)

MAX_GRAPH_SIZE = 500


class MongoFlowRepository:
    """Read-only access to the flow builder's flows, nodes and edges."""

    def __init__(self, db):
        self.db = db

    def _parse_flow(self, document) -> Optional[Flow]:
        try:
            return Flow.model_validate(document)
        except ValidationError as e:
            # A broken trigger only disables that flow's trigger; it must not hide the others
            logger.error(f"Skipping flow {document.get('_id')} with invalid trigger configuration: {e}")
            return None

    async def list_active_flows(self, company_id: str, trigger_type: TriggerType) -> List[Flow]:
        query = {"company_id": company_id, "is_active": True}
        if trigger_type == TriggerType.KEYWORD:
            # Legacy flows only carry trigger_keywords
            query["$or"] = [{"trigger_type": trigger_type.value}, {"trigger_type": None, "trigger_keywords.0": {"$exists": True}}]
        else:
            query["trigger_type"] = trigger_type.value
        documents = await self.db.flows.find(query).to_list(length=None)
        return [flow for flow in (self._parse_flow(d) for d in documents) if flow]

    async def list_schedule_flows(self) -> List[Flow]:
        """Active schedule-triggered flows of every company, for the scheduler sweep."""
        documents = await self.db.flows.find(
            {"is_active": True, "trigger_type": TriggerType.SCHEDULE.value}
        ).to_list(length=None)
        return [flow for flow in (self._parse_flow(d) for d in documents) if flow]

    async def get_flow(self, company_id: str, flow_id: str) -> Optional[Flow]:
        document = await self.db.flows.find_one({"_id": id_filter(flow_id), "company_id": company_id})
        return self._parse_flow(document) if document else None

    async def list_flows(self, company_id: str) -> List[Flow]:
        documents = await self.db.flows.find({"company_id": company_id}).sort("name", 1).to_list(length=None)
        return [flow for flow in (self._parse_flow(d) for d in documents) if flow]

    async def load_graph(self, company_id: str, flow_id: str) -> FlowGraph:
        """
        Loads a flow with its nodes and edges. Inactive flows still load, so
        executions already in flight can finish after a flow is disabled.

        Raises:
            FlowConfigurationError: the flow is missing, a node/edge is malformed
                or the graph has more than MAX_GRAPH_SIZE nodes or edges
        """
        flow = await self.get_flow(company_id, flow_id)
        if flow is None:
            raise FlowConfigurationError(f"Flow {flow_id} not found for company {company_id}")

        flow_ids = list({flow_id, flow.id})
        node_docs = await self.db.flow_nodes.find(
            {"flow_id": {"$in": flow_ids}, "company_id": {"$in": [company_id, None]}}
        ).to_list(length=MAX_GRAPH_SIZE + 1)
        edge_docs = await self.db.flow_edges.find(
            {"flow_id": {"$in": flow_ids}, "company_id": {"$in": [company_id, None]}}
        ).to_list(length=MAX_GRAPH_SIZE + 1)
        # Never run a truncated graph
        if len(node_docs) > MAX_GRAPH_SIZE or len(edge_docs) > MAX_GRAPH_SIZE:
            raise FlowConfigurationError(
                f"Flow {flow_id} is too large: more than {MAX_GRAPH_SIZE} nodes or edges"
            )

        try:
            nodes = [FlowNode.model_validate(d) for d in node_docs]
            edges = [FlowEdge.model_validate(d) for d in edge_docs]
        except ValidationError as e:
            raise FlowConfigurationError(f"Flow {flow_id} has an invalid node or edge: {e}") from e
        return FlowGraph(flow, nodes, edges)


# Globally accessible instance
flow_repository = MongoFlowRepository(db_service.db)
