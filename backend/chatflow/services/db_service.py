# /chatflow/services/db_service.py

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from chatflow.config.settings import settings
from chatflow.models.execution import (
    ACTIVE_STATUSES,
    ExecutionContext,
    ExecutionStatus,
    StepTrace,
    SubjectRecord,
    WaitType,
)
from chatflow.models.flow import FlowGraph, VariableScope
from chatflow.services.store import ExecutionStore
from chatflow.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from chatflow.utils.metrics import database_operations_counter
from chatflow.workflows.errors import AlreadyRunning, ResourceUnavailable

logger = logging.getLogger(__name__)

# Effect keys only need to outlive any realistic retry of the same step
EFFECT_KEY_TTL_SECONDS = 7 * 24 * 60 * 60


class MongoExecutionStore(ExecutionStore):
    """
    MongoDB-backed execution store.

    Atomicity comes from MongoDB itself:
    - resume claims are find_one_and_update calls with the expected status in the filter
    - progress writes are replace_one calls conditional on the stored status
    - the single-active-context rule is a unique sparse index on active_key,
      which is unset when a context reaches a terminal status
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            self.circuit_breaker = CircuitBreaker("database", exclude=(DuplicateKeyError,))
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    async def _safe_db_operation(self, operation, name: str) -> Any:
        """
        Execute a database operation through the circuit breaker.

        Driver failures surface as ResourceUnavailable so Recovery can treat
        them as transient; DuplicateKeyError is re-raised for the caller.
        """
        try:
            result = await self.circuit_breaker.call(operation)
            database_operations_counter.labels(operation=name, status="success").inc()
            return result
        except DuplicateKeyError:
            database_operations_counter.labels(operation=name, status="duplicate").inc()
            raise
        except (PyMongoError, CircuitOpenError) as e:
            logger.exception(f"Database operation '{name}' failed: {type(e).__name__}")
            database_operations_counter.labels(operation=name, status="failed").inc()
            raise ResourceUnavailable(f"Database operation '{name}' failed") from e

    @staticmethod
    def _context_to_doc(context: ExecutionContext) -> Dict[str, Any]:
        doc = context.model_dump()
        doc["_id"] = doc.pop("id")
        doc["status"] = context.status.value
        doc["wait_type"] = context.wait_type.value
        if context.status in ACTIVE_STATUSES:
            doc["active_key"] = context.active_key
        return doc

    @staticmethod
    def _doc_to_context(doc: Optional[Dict[str, Any]]) -> Optional[ExecutionContext]:
        if not doc:
            return None
        doc = dict(doc)
        doc["id"] = doc.pop("_id")
        doc.pop("active_key", None)
        return ExecutionContext.model_validate(doc)

    @staticmethod
    def _flow_to_doc(flow: FlowGraph) -> Dict[str, Any]:
        doc = flow.model_dump(mode="json")
        doc["created_at"], doc["updated_at"] = flow.created_at, flow.updated_at
        return doc

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("flows", [("id", ASCENDING), ("version", DESCENDING)], {"unique": True}),
            ("flows", [("project_id", ASCENDING), ("is_active", ASCENDING)], {}),
            ("execution_contexts", [("active_key", ASCENDING)], {"unique": True, "sparse": True}),
            ("execution_contexts", [("subject.chat_id", ASCENDING), ("status", ASCENDING), ("wait_type", ASCENDING)], {}),
            ("execution_contexts", [("status", ASCENDING), ("wait_deadline", ASCENDING)], {}),
            ("variables", [("scope", ASCENDING), ("owner", ASCENDING), ("name", ASCENDING)], {"unique": True}),
            ("subjects", [("project_id", ASCENDING), ("phone", ASCENDING)], {}),
            ("subjects", [("project_id", ASCENDING), ("platform_user_id", ASCENDING)], {}),
            ("effect_keys", [("created_at", ASCENDING)], {"expireAfterSeconds": EFFECT_KEY_TTL_SECONDS}),
            ("step_traces", [("context_id", ASCENDING), ("step", ASCENDING)], {}),
            ("recovery_attempts", [("key", ASCENDING), ("at", ASCENDING)], {}),
            ("recovery_attempts", [("at", ASCENDING)], {"expireAfterSeconds": settings.recovery_window_seconds}),
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
            await self.db.command("ping")
            return True
        except PyMongoError as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    def close(self) -> None:
        self.client.close()

    # ==================== Flows ====================

    async def save_flow(self, flow: FlowGraph) -> None:
        doc = self._flow_to_doc(flow)
        await self._safe_db_operation(
            lambda: self.db.flows.replace_one({"id": flow.id, "version": flow.version}, doc, upsert=True),
            "save_flow",
        )

    async def get_flow(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowGraph]:
        query: Dict[str, Any] = {"id": flow_id}
        if version is not None:
            query["version"] = version
        doc = await self._safe_db_operation(
            lambda: self.db.flows.find_one(query, sort=[("version", DESCENDING)]),
            "get_flow",
        )
        if not doc:
            return None
        doc.pop("_id", None)
        return FlowGraph.model_validate(doc)

    async def list_active_flows(self, project_id: str) -> List[FlowGraph]:
        pipeline = [
            {"$match": {"project_id": project_id}},
            {"$sort": {"version": -1}},
            {"$group": {"_id": "$id", "doc": {"$first": "$$ROOT"}}},
            {"$replaceRoot": {"newRoot": "$doc"}},
            {"$match": {"is_active": True}},
        ]
        docs = await self._safe_db_operation(
            lambda: self.db.flows.aggregate(pipeline).to_list(length=None),
            "list_active_flows",
        )
        flows = []
        for doc in docs:
            doc.pop("_id", None)
            flows.append(FlowGraph.model_validate(doc))
        return flows

    # ==================== Contexts ====================

    async def insert_context(self, context: ExecutionContext) -> None:
        try:
            await self._safe_db_operation(
                lambda: self.db.execution_contexts.insert_one(self._context_to_doc(context)),
                "insert_context",
            )
        except DuplicateKeyError as e:
            raise AlreadyRunning(
                f"Flow '{context.flow_id}' is already active for subject '{context.subject.key}'"
            ) from e

    async def get_context(self, context_id: str) -> Optional[ExecutionContext]:
        doc = await self._safe_db_operation(
            lambda: self.db.execution_contexts.find_one({"_id": context_id}),
            "get_context",
        )
        return self._doc_to_context(doc)

    async def find_active_context(self, flow_id: str, subject_key: str) -> Optional[ExecutionContext]:
        doc = await self._safe_db_operation(
            lambda: self.db.execution_contexts.find_one({"active_key": f"{flow_id}:{subject_key}"}),
            "find_active_context",
        )
        return self._doc_to_context(doc)

    async def update_context(self, context: ExecutionContext,
                             expected_statuses: Iterable[ExecutionStatus] = (ExecutionStatus.RUNNING,)) -> bool:
        context.updated_at = datetime.utcnow()
        doc = self._context_to_doc(context)
        expected = [ExecutionStatus(s).value for s in expected_statuses]
        result = await self._safe_db_operation(
            lambda: self.db.execution_contexts.replace_one({"_id": context.id, "status": {"$in": expected}}, doc),
            "update_context",
        )
        return result.matched_count == 1

    def _claim_update(self) -> Dict[str, Any]:
        return {"$set": {
            "status": ExecutionStatus.RUNNING.value,
            "wait_type": WaitType.NONE.value,
            "wait_deadline": None,
            "updated_at": datetime.utcnow(),
        }}

    async def claim_waiting_context(self, chat_id: str, wait_types: Iterable[WaitType],
                                    project_id: Optional[str] = None) -> Optional[ExecutionContext]:
        query: Dict[str, Any] = {
            "subject.chat_id": chat_id,
            "status": ExecutionStatus.WAITING.value,
            "wait_type": {"$in": [WaitType(w).value for w in wait_types]},
        }
        if project_id is not None:
            query["project_id"] = project_id
        doc = await self._safe_db_operation(
            lambda: self.db.execution_contexts.find_one_and_update(
                query, self._claim_update(),
                sort=[("updated_at", DESCENDING)],
                return_document=ReturnDocument.BEFORE,
            ),
            "claim_waiting_context",
        )
        return self._doc_to_context(doc)

    async def claim_expired_wait(self, now: datetime) -> Optional[ExecutionContext]:
        query = {"status": ExecutionStatus.WAITING.value, "wait_deadline": {"$ne": None, "$lte": now}}
        doc = await self._safe_db_operation(
            lambda: self.db.execution_contexts.find_one_and_update(
                query, self._claim_update(),
                sort=[("wait_deadline", ASCENDING)],
                return_document=ReturnDocument.BEFORE,
            ),
            "claim_expired_wait",
        )
        return self._doc_to_context(doc)

    async def cancel_context(self, context_id: str) -> Optional[ExecutionContext]:
        now = datetime.utcnow()
        doc = await self._safe_db_operation(
            lambda: self.db.execution_contexts.find_one_and_update(
                {"_id": context_id, "status": {"$in": [s.value for s in ACTIVE_STATUSES]}},
                {
                    "$set": {
                        "status": ExecutionStatus.CANCELLED.value,
                        "wait_type": WaitType.NONE.value,
                        "wait_deadline": None,
                        "finished_at": now,
                        "updated_at": now,
                    },
                    "$unset": {"active_key": ""},
                },
                return_document=ReturnDocument.AFTER,
            ),
            "cancel_context",
        )
        return self._doc_to_context(doc)

    # ==================== Variables ====================

    async def get_variables(self, owner: str, scope: VariableScope) -> Dict[str, Any]:
        docs = await self._safe_db_operation(
            lambda: self.db.variables.find({"owner": owner, "scope": VariableScope(scope).value}).to_list(length=None),
            "get_variables",
        )
        return {doc["name"]: doc.get("value") for doc in docs}

    async def set_variable(self, owner: str, scope: VariableScope, name: str, value: Any) -> None:
        key = {"owner": owner, "scope": VariableScope(scope).value, "name": name}
        await self._safe_db_operation(
            lambda: self.db.variables.update_one(
                key, {"$set": {"value": value, "updated_at": datetime.utcnow()}}, upsert=True
            ),
            "set_variable",
        )

    # ==================== Subjects ====================

    async def find_subject_by_phone(self, project_id: str, phone_variants: List[str]) -> Optional[SubjectRecord]:
        doc = await self._safe_db_operation(
            lambda: self.db.subjects.find_one({"project_id": project_id, "phone": {"$in": phone_variants}}),
            "find_subject_by_phone",
        )
        return self._doc_to_subject(doc)

    async def find_subject_by_platform_id(self, project_id: str, platform_user_id: str) -> Optional[SubjectRecord]:
        doc = await self._safe_db_operation(
            lambda: self.db.subjects.find_one({"project_id": project_id, "platform_user_id": platform_user_id}),
            "find_subject_by_platform_id",
        )
        return self._doc_to_subject(doc)

    async def get_subject_record(self, subject_id: str) -> Optional[SubjectRecord]:
        doc = await self._safe_db_operation(
            lambda: self.db.subjects.find_one({"_id": subject_id}),
            "get_subject_record",
        )
        return self._doc_to_subject(doc)

    async def save_subject(self, record: SubjectRecord) -> None:
        record.updated_at = datetime.utcnow()
        doc = record.model_dump()
        doc["_id"] = doc.pop("id")
        await self._safe_db_operation(
            lambda: self.db.subjects.replace_one({"_id": doc["_id"]}, doc, upsert=True),
            "save_subject",
        )

    @staticmethod
    def _doc_to_subject(doc: Optional[Dict[str, Any]]) -> Optional[SubjectRecord]:
        if not doc:
            return None
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return SubjectRecord.model_validate(doc)

    # ==================== Effects, traces, recovery ====================

    async def claim_effect(self, effect_key: str) -> bool:
        try:
            await self._safe_db_operation(
                lambda: self.db.effect_keys.insert_one({"_id": effect_key, "created_at": datetime.utcnow()}),
                "claim_effect",
            )
            return True
        except DuplicateKeyError:
            return False

    async def release_effect(self, effect_key: str) -> None:
        await self._safe_db_operation(lambda: self.db.effect_keys.delete_one({"_id": effect_key}), "release_effect")

    async def append_trace(self, trace: StepTrace) -> None:
        doc = trace.model_dump()
        doc["status"] = trace.status.value
        await self._safe_db_operation(lambda: self.db.step_traces.insert_one(doc), "append_trace")

    async def get_traces(self, context_id: str) -> List[StepTrace]:
        docs = await self._safe_db_operation(
            lambda: self.db.step_traces.find({"context_id": context_id})
            .sort([("step", ASCENDING), ("timestamp", ASCENDING)])
            .to_list(length=None),
            "get_traces",
        )
        traces = []
        for doc in docs:
            doc.pop("_id", None)
            traces.append(StepTrace.model_validate(doc))
        return traces

    async def record_recovery_attempt(self, key: str, window_seconds: int) -> int:
        now = datetime.utcnow()
        await self._safe_db_operation(
            lambda: self.db.recovery_attempts.insert_one({"key": key, "at": now}),
            "record_recovery_attempt",
        )
        return await self._safe_db_operation(
            lambda: self.db.recovery_attempts.count_documents(
                {"key": key, "at": {"$gte": now - timedelta(seconds=window_seconds)}}
            ),
            "count_recovery_attempts",
        )

    async def set_fallback_flow(self, project_id: str, flow_id: Optional[str]) -> None:
        await self._safe_db_operation(
            lambda: self.db.fallback_flows.update_one(
                {"_id": project_id}, {"$set": {"flow_id": flow_id, "updated_at": datetime.utcnow()}}, upsert=True
            ),
            "set_fallback_flow",
        )

    async def get_fallback_flow(self, project_id: str) -> Optional[str]:
        doc = await self._safe_db_operation(
            lambda: self.db.fallback_flows.find_one({"_id": project_id}),
            "get_fallback_flow",
        )
        return doc.get("flow_id") if doc else None
