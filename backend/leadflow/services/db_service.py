# /leadflow/services/db_service.py

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

from leadflow.config.settings import settings
from leadflow.utils.circuit_breaker import RedisCircuitBreaker
from leadflow.utils.metrics import database_operations_counter
from leadflow.services.cache_service import cache_service

logger = logging.getLogger(__name__)

# Constants
DEFAULT_QUERY_LIMIT = 100
COMPANY_CACHE_TTL_SECONDS = 300


def id_filter(value: Any) -> Any:
    """Documents created by the dashboard use ObjectIds; the engine's own rows use uuid strings."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return {"$in": [value, ObjectId(value)]}
    return value


class DatabaseService:
    """
    Owns the MongoDB client and the collections shared by every component:
    index creation, health checks, message logs, security events and
    company / webhook configuration lookups.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            self.circuit_breaker = RedisCircuitBreaker(cache_service.redis, "database")
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    def _serialize_id(self, document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if document and "_id" in document:
            document["_id"] = str(document["_id"])
        return document

    def _serialize_ids(self, documents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [self._serialize_id(doc) for doc in documents]

    async def _safe_db_operation(
        self,
        operation,
        use_circuit_breaker: bool = True,
        default_return: Any = None
    ) -> Any:
        """
        Execute database operation with consistent error handling.

        Args:
            operation: Async callable to execute
            use_circuit_breaker: Whether to use circuit breaker
            default_return: Value to return on failure

        Returns:
            Operation result or default_return on failure
        """
        try:
            if use_circuit_breaker:
                return await self.circuit_breaker.call(operation)
            return await operation()
        except Exception as e:
            logger.exception(f"Database operation failed: {type(e).__name__}")
            database_operations_counter.labels(operation="db_error", status="failed").inc()
            return default_return

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            # One active execution per (flow, contact); completed/failed rows drop out of the index
            ("flow_executions", [("company_id", 1), ("flow_id", 1), ("contact_id", 1)],
             {"unique": True, "partialFilterExpression": {"is_active": True}, "name": "uniq_active_execution"}),
            ("flow_executions", [("status", 1), ("next_action_at", 1)], {}),
            ("flow_executions", [("company_id", 1), ("contact_id", 1), ("status", 1), ("updated_at", -1)], {}),
            ("flow_executions", [("company_id", 1), ("flow_id", 1), ("status", 1)], {}),
            ("flow_execution_logs", [("company_id", 1), ("execution_id", 1), ("created_at", 1)], {}),
            ("flow_schedule_runs", [("company_id", 1), ("flow_id", 1)], {"unique": True}),
            ("flows", [("company_id", 1), ("is_active", 1), ("trigger_type", 1)], {}),
            ("flow_nodes", [("company_id", 1), ("flow_id", 1)], {}),
            ("flow_edges", [("company_id", 1), ("flow_id", 1)], {}),
            ("contacts", [("company_id", 1), ("normalized_phone", 1)], {"unique": True, "sparse": True}),
            ("contacts", [("company_id", 1), ("tags", 1)], {}),
            ("funnel_leads", [("company_id", 1), ("funnel_id", 1), ("stage_id", 1)], {}),
            ("funnel_stages", [("funnel_id", 1), ("position", 1)], {}),
            ("webhook_configs", [("secret", 1)], {"unique": True}),
            ("companies", [("whatsapp_phone_number_id", 1)], {"sparse": True}),
            ("connector_sessions", [("company_id", 1), ("instance_name", 1)], {"unique": True}),
            ("connector_sessions", [("status", 1), ("expires_at", 1)], {}),
            ("message_logs", [("wamid", 1)], {"unique": True, "sparse": True}),
            ("message_logs", [("company_id", 1), ("contact_id", 1), ("timestamp", -1)], {}),
            ("security_events", [("timestamp", -1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Company Configuration ====================

    async def get_company(self, company_id: str) -> Optional[Dict[str, Any]]:
        async def _fetch():
            company = await self.db.companies.find_one({"_id": id_filter(company_id)})
            return self._serialize_id(company)

        return await cache_service.get_or_set(f"company:{company_id}", _fetch, ttl=COMPANY_CACHE_TTL_SECONDS)

    async def get_company_by_phone_number_id(self, phone_number_id: str) -> Optional[Dict[str, Any]]:
        """
        Resolve the company that owns a WhatsApp Cloud API phone number.

        Args:
            phone_number_id: metadata.phone_number_id from the webhook payload

        Returns:
            Company document or None
        """
        if not phone_number_id:
            return None

        async def _fetch():
            company = await self.db.companies.find_one({"whatsapp_phone_number_id": phone_number_id})
            return self._serialize_id(company)

        database_operations_counter.labels(operation="get_company", status="attempted").inc()
        return await cache_service.get_or_set(f"company:phone:{phone_number_id}", _fetch, ttl=COMPANY_CACHE_TTL_SECONDS)

    async def get_webhook_config(self, secret: str) -> Optional[Dict[str, Any]]:
        """Active lead-webhook configuration for a shared secret."""
        if not secret:
            return None
        config = await self._safe_db_operation(
            lambda: self.db.webhook_configs.find_one({"secret": secret, "is_active": True})
        )
        return self._serialize_id(config)

    # ==================== Security Operations ====================

    async def log_security_event(
        self,
        event_type: str,
        ip_address: Optional[str],
        details: Dict[str, Any]
    ) -> None:
        """
        Log security event.

        Args:
            event_type: Type of security event
            ip_address: Source IP address (None for internally detected events)
            details: Additional event details
        """
        event_data = {
            "event_type": event_type,
            "ip_address": ip_address,
            "timestamp": self._now_utc(),
            "details": details
        }
        await self._safe_db_operation(
            lambda: self.db.security_events.insert_one(event_data)
        )

    async def get_security_events(
        self,
        limit: int = DEFAULT_QUERY_LIMIT,
        event_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query = {}
        if event_type:
            query["event_type"] = event_type

        cursor = self.db.security_events.find(query).sort("timestamp", -1).limit(limit)
        events = await cursor.to_list(length=limit)
        return self._serialize_ids(events)

    # ==================== Message Logging ====================

    async def log_message(self, message_data: Dict[str, Any]) -> None:
        """
        Log inbound or outbound message.

        Args:
            message_data: Message information to log
        """
        message_data.setdefault("timestamp", self._now_utc())
        await self._safe_db_operation(lambda: self.db.message_logs.insert_one(message_data))

    async def update_message_status(self, wamid: str, status: str) -> bool:
        """Apply a delivery status callback to the matching outbound message."""
        result = await self._safe_db_operation(
            lambda: self.db.message_logs.update_one(
                {"wamid": wamid},
                {"$set": {"status": status, "status_updated_at": self._now_utc()},
                 "$addToSet": {"status_history": status}}
            )
        )
        return bool(result and result.matched_count)


# Globally accessible instance
db_service = DatabaseService(settings.mongo_atlas_uri)
