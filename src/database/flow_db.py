from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
import urllib.parse
import threading
import asyncio
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta
import weakref
from pymongo import ReturnDocument
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure, DuplicateKeyError

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import FlowDBException

# Models
from models.flow_data import FlowData
from models.flow_trigger_data import FlowTriggerData, InactivityFiring
from models.flow_session_data import FlowSessionData, HistoryEntry
from models.delay_data import DelayData
from models.inbound_event_data import InboundEventData
from models.customer_data import CustomerData, ChatData

COLLECTION_NAMES = (
    "flows",
    "flow_triggers",
    "flow_sessions",
    "delays",
    "inbound_events",
    "chat_locks",
    "customers",
    "chats",
    "prompts",
    "integrations",
    "messages",
    "inactivity_firings",
)


def _doc_id(value: str) -> Any:
    """
    Ids minted here are ObjectIds; customer and chat ids come from other
    services and may be plain strings.
    """
    return ObjectId(value) if ObjectId.is_valid(value) else value


def _with_id(document: Dict[str, Any]) -> Dict[str, Any]:
    document["id"] = str(document["_id"])
    return document


"""
Database class for flow operations
"""
class FlowDB:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo credentials
        self.username = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_USERNAME"))
        self.password = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_PASSWORD"))
        self.auth_source = self.environment_utils.get_env_variable("MONGO_AUTH_SOURCE")
        self.host = self.environment_utils.get_env_variable("MONGO_HOST")
        self.port = int(self.environment_utils.get_env_variable("MONGO_PORT"))
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0  # Create connections on-demand instead of at startup
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # One client per event loop, keyed by loop id
        self._clients = {}  # {loop_id: {client, db, collections, loop}}

        # Thread-safe initialization lock
        self._client_lock = threading.Lock()

    def _get_client_for_current_loop(self):
        """
        Thread-safe method to get the MongoDB client and collections for the current event loop.
        Returns a dictionary with 'client', 'db', and 'collections' for the current event loop.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)
        if loop_id in self._clients:
            return self._clients[loop_id]

        with self._client_lock:
            # Double-check after acquiring lock (another thread might have created it)
            if loop_id in self._clients:
                return self._clients[loop_id]

            client = AsyncIOMotorClient(
                f"mongodb://{self.username}:{self.password}@{self.host}:{self.port}/?authSource={self.auth_source}",
                maxPoolSize=self.max_pool_size,
                minPoolSize=self.min_pool_size,
                maxIdleTimeMS=self.max_idle_time_ms,
                waitQueueTimeoutMS=self.wait_queue_timeout_ms,
                connectTimeoutMS=self.connect_timeout_ms,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                retryWrites=True,
                retryReads=True
            )
            db = client[self.db_name]

            client_data = {
                'client': client,
                'db': db,
                'collections': {name: db[name] for name in COLLECTION_NAMES},
                'loop': weakref.ref(loop)  # Weak reference to avoid circular references
            }
            self._clients[loop_id] = client_data

            self.log_util.info(
                service_name="FlowDB",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )
            return client_data

    def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="FlowDB",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )
            self._clients.clear()
            self.log_util.info(
                service_name="FlowDB",
                message="All MongoDB clients closed"
            )

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Handle database operation errors with appropriate logging and exception wrapping.
        Used by the writes a session cannot continue without.
        """
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="FlowDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise FlowDBException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        self.log_util.error(
            service_name="FlowDB",
            message=f"Error in {operation_name}: {str(error)}"
        )
        raise FlowDBException(
            message=f"Database error: {str(error)}",
            status_code=500
        )

    # Flow CRUD operations
    async def create_flow(self, flow: FlowData) -> Optional[FlowData]:
        client_data = self._get_client_for_current_loop()
        try:
            flow_dict = flow.model_dump(exclude={"id"})
            result = await client_data['collections']['flows'].insert_one(flow_dict)
            flow_dict["_id"] = result.inserted_id
            return FlowData.model_validate(_with_id(flow_dict))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error creating flow: {str(e)}")
            return None

    async def get_flow(self, flow_id: str) -> Optional[FlowData]:
        """
        Get a flow by ID
        """
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].find_one({"_id": _doc_id(flow_id)})
            if result is None:
                return None
            return FlowData.model_validate(_with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting flow: {str(e)}")
            return None

    async def list_flows(self, organization_id: str) -> List[FlowData]:
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['flows'].find({"organization_id": organization_id}).sort("created_at", 1)
            flows: List[FlowData] = []
            async for flow_dict in cursor:
                flows.append(FlowData.model_validate(_with_id(flow_dict)))
            return flows
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error listing flows: {str(e)}")
            return []

    async def update_flow(self, flow_id: str, fields: Dict[str, Any]) -> Optional[FlowData]:
        """
        Set the given top-level fields of a flow. Snapshots are passed already dumped.
        """
        client_data = self._get_client_for_current_loop()
        try:
            fields = dict(fields)
            fields["updated_at"] = datetime.utcnow()
            result = await client_data['collections']['flows'].find_one_and_update(
                {"_id": _doc_id(flow_id)},
                {"$set": fields},
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return FlowData.model_validate(_with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error updating flow: {str(e)}")
            return None

    async def delete_flow(self, flow_id: str) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flows'].delete_one({"_id": _doc_id(flow_id)})
            return result.deleted_count > 0
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error deleting flow: {str(e)}")
            return False

    # Trigger operations
    async def save_trigger(self, trigger: FlowTriggerData) -> Optional[FlowTriggerData]:
        """
        Insert a new trigger, or replace the stored one when it carries an id
        """
        client_data = self._get_client_for_current_loop()
        try:
            collection = client_data['collections']['flow_triggers']
            trigger_dict = trigger.model_dump(exclude={"id"})
            trigger_dict["updated_at"] = datetime.utcnow()
            if trigger.id:
                result = await collection.find_one_and_replace(
                    {"_id": _doc_id(trigger.id)},
                    trigger_dict,
                    return_document=ReturnDocument.AFTER
                )
                if result is None:
                    return None
                return FlowTriggerData.model_validate(_with_id(result))
            result = await collection.insert_one(trigger_dict)
            trigger_dict["_id"] = result.inserted_id
            return FlowTriggerData.model_validate(_with_id(trigger_dict))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error saving trigger: {str(e)}")
            return None

    async def get_trigger(self, trigger_id: str) -> Optional[FlowTriggerData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flow_triggers'].find_one({"_id": _doc_id(trigger_id)})
            if result is None:
                return None
            return FlowTriggerData.model_validate(_with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting trigger: {str(e)}")
            return None

    async def _find_triggers(self, query: Dict[str, Any]) -> List[FlowTriggerData]:
        client_data = self._get_client_for_current_loop()
        # Insertion order is the tie-break between equal priorities
        cursor = client_data['collections']['flow_triggers'].find(query).sort("_id", 1)
        triggers = []
        async for trigger_dict in cursor:
            triggers.append(FlowTriggerData.model_validate(_with_id(trigger_dict)))
        return triggers

    async def list_triggers(self, flow_id: str) -> List[FlowTriggerData]:
        try:
            return await self._find_triggers({"flow_id": flow_id})
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error listing triggers: {str(e)}")
            return []

    async def get_active_triggers(self, organization_id: str) -> List[FlowTriggerData]:
        try:
            return await self._find_triggers({"organization_id": organization_id, "is_active": True})
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting active triggers: {str(e)}")
            return []

    async def get_active_triggers_by_type(self, trigger_type: str) -> List[FlowTriggerData]:
        try:
            return await self._find_triggers({"type": trigger_type, "is_active": True})
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting {trigger_type} triggers: {str(e)}")
            return []

    async def delete_trigger(self, trigger_id: str) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flow_triggers'].delete_one({"_id": _doc_id(trigger_id)})
            return result.deleted_count > 0
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error deleting trigger: {str(e)}")
            return False

    async def delete_triggers_by_flow(self, flow_id: str) -> int:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flow_triggers'].delete_many({"flow_id": flow_id})
            return result.deleted_count
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error deleting triggers of flow: {str(e)}")
            return 0

    # Session operations
    async def create_session(self, session: FlowSessionData) -> FlowSessionData:
        client_data = self._get_client_for_current_loop()
        try:
            session_dict = session.model_dump(exclude={"id"})
            result = await client_data['collections']['flow_sessions'].insert_one(session_dict)
            session.id = str(result.inserted_id)
            return session
        except Exception as e:
            self._handle_db_operation("create_session", e)

    async def get_session(self, session_id: str) -> Optional[FlowSessionData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flow_sessions'].find_one({"_id": _doc_id(session_id)})
            if result is None:
                return None
            return FlowSessionData.model_validate(_with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting session: {str(e)}")
            return None

    async def get_active_session_by_chat(self, chat_id: str) -> Optional[FlowSessionData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flow_sessions'].find_one(
                {"chat_id": chat_id, "status": "active", "preview": False},
                sort=[("created_at", -1)]
            )
            if result is None:
                return None
            return FlowSessionData.model_validate(_with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting active session: {str(e)}")
            return None

    async def has_previous_session(self, chat_id: str, customer_id: Optional[str] = None) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            query: Dict[str, Any] = {"preview": False}
            query["$or"] = [{"chat_id": chat_id}] + ([{"customer_id": customer_id}] if customer_id else [])
            result = await client_data['collections']['flow_sessions'].find_one(query, projection={"_id": 1})
            return result is not None
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error checking previous sessions: {str(e)}")
            return False

    async def save_session(self, session: FlowSessionData) -> bool:
        """
        Replace the stored session. Returns False when the session was cancelled
        in the meantime, in which case nothing is written.
        """
        client_data = self._get_client_for_current_loop()
        try:
            session_dict = session.model_dump(exclude={"id"})
            result = await client_data['collections']['flow_sessions'].replace_one(
                {"_id": _doc_id(session.id), "cancelled": {"$ne": True}},
                session_dict
            )
            return result.matched_count > 0
        except Exception as e:
            self._handle_db_operation("save_session", e)

    async def is_session_cancelled(self, session_id: str) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['flow_sessions'].find_one(
                {"_id": _doc_id(session_id)},
                projection={"cancelled": 1}
            )
            return bool(result and result.get("cancelled"))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error reading cancellation flag: {str(e)}")
            return False

    async def mark_session_cancelled(self, session_id: str, ended_at: datetime, reason: Optional[str] = None) -> Optional[FlowSessionData]:
        client_data = self._get_client_for_current_loop()
        try:
            entry = HistoryEntry(content=reason or "Session cancelled", sender_type="system", timestamp=ended_at)
            result = await client_data['collections']['flow_sessions'].find_one_and_update(
                {"_id": _doc_id(session_id), "status": "active"},
                {
                    "$set": {
                        "cancelled": True,
                        "status": "inactive",
                        "awaiting": None,
                        "pending_input": [],
                        "timeout_at": None,
                        "debounce_timestamp": None,
                        "resume_at": None,
                        "ended_at": ended_at,
                    },
                    "$push": {"message_history": entry.model_dump()}
                },
                return_document=ReturnDocument.AFTER
            )
            if result is None:
                return None
            return FlowSessionData.model_validate(_with_id(result))
        except Exception as e:
            self._handle_db_operation("mark_session_cancelled", e)

    async def _find_sessions(self, query: Dict[str, Any]) -> List[FlowSessionData]:
        client_data = self._get_client_for_current_loop()
        cursor = client_data['collections']['flow_sessions'].find(query)
        sessions = []
        async for session_dict in cursor:
            sessions.append(FlowSessionData.model_validate(_with_id(session_dict)))
        return sessions

    async def get_sessions_with_due_debounce(self, now: datetime) -> List[FlowSessionData]:
        try:
            return await self._find_sessions({
                "status": "active",
                "awaiting": "input",
                "debounce_timestamp": {"$ne": None, "$lte": now}
            })
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting debounced sessions: {str(e)}")
            return []

    async def get_sessions_with_due_timeout(self, now: datetime) -> List[FlowSessionData]:
        try:
            return await self._find_sessions({
                "status": "active",
                "awaiting": "input",
                "timeout_at": {"$ne": None, "$lte": now}
            })
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting timed out sessions: {str(e)}")
            return []

    async def get_stalled_sessions(self, cutoff: datetime) -> List[FlowSessionData]:
        """
        Active sessions that are not suspended and saw no progress since the cutoff.
        """
        try:
            return await self._find_sessions({
                "status": "active",
                "awaiting": None,
                "last_interaction": {"$lte": cutoff}
            })
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting stalled sessions: {str(e)}")
            return []

    # Delay operations
    async def save_delay(self, delay: DelayData) -> Optional[DelayData]:
        client_data = self._get_client_for_current_loop()
        try:
            delay_dict = delay.model_dump(exclude={"id"})
            result = await client_data['collections']['delays'].insert_one(delay_dict)
            delay_dict["_id"] = result.inserted_id
            return DelayData.model_validate(_with_id(delay_dict))
        except Exception as e:
            self._handle_db_operation("save_delay", e)

    async def get_pending_delays(self, now: datetime) -> List[DelayData]:
        """
        Get all pending delays that need to be processed (not processed and delay_completes_at <= now).
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['delays'].find({
                "processed": False,
                "delay_completes_at": {"$lte": now}
            })
            results = []
            async for doc in cursor:
                results.append(DelayData.model_validate(_with_id(doc)))
            return results
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting pending delays: {str(e)}")
            return []

    async def mark_delay_as_processed(self, delay_id: str) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['delays'].update_one(
                {"_id": _doc_id(delay_id)},
                {"$set": {"processed": True, "updated_at": datetime.utcnow()}}
            )
            return result.modified_count > 0
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error marking delay as processed: {str(e)}")
            return False

    async def mark_delays_processed_for_session(self, session_id: str) -> int:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['delays'].update_many(
                {"session_id": session_id, "processed": False},
                {"$set": {"processed": True, "updated_at": datetime.utcnow()}}
            )
            return result.modified_count
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error clearing delays of session: {str(e)}")
            return 0

    # Inbound event operations
    async def save_inbound_event(self, event: InboundEventData) -> Optional[InboundEventData]:
        client_data = self._get_client_for_current_loop()
        try:
            event_dict = event.model_dump(exclude={"id"})
            result = await client_data['collections']['inbound_events'].insert_one(event_dict)
            event_dict["_id"] = result.inserted_id
            return InboundEventData.model_validate(_with_id(event_dict))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error saving inbound event: {str(e)}")
            return None

    async def update_inbound_event_status(self, event_id: str, status: str, result: Optional[Dict[str, Any]] = None) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            update = await client_data['collections']['inbound_events'].update_one(
                {"_id": _doc_id(event_id)},
                {"$set": {"metadata.status": status, "result": result or {}}}
            )
            return update.matched_count > 0
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error updating inbound event status: {str(e)}")
            return False

    # Chat lock operations
    async def acquire_chat_lock(self, chat_id: str, owner_id: str, ttl_seconds: int) -> bool:
        """
        Take or renew the lease on a chat. An expired lease can be taken over;
        a live lease held by another owner makes the upsert collide on _id.
        """
        client_data = self._get_client_for_current_loop()
        now = datetime.utcnow()
        try:
            await client_data['collections']['chat_locks'].find_one_and_update(
                {"_id": chat_id, "$or": [{"owner_id": owner_id}, {"expires_at": {"$lte": now}}]},
                {"$set": {"owner_id": owner_id, "expires_at": now + timedelta(seconds=ttl_seconds)}},
                upsert=True
            )
            return True
        except DuplicateKeyError:
            return False
        except Exception as e:
            self._handle_db_operation("acquire_chat_lock", e)

    async def release_chat_lock(self, chat_id: str, owner_id: str) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['chat_locks'].delete_one({"_id": chat_id, "owner_id": owner_id})
            return result.deleted_count > 0
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error releasing chat lock: {str(e)}")
            return False

    # Customer and chat operations
    async def get_customer(self, customer_id: str) -> Optional[CustomerData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['customers'].find_one({"_id": _doc_id(customer_id)})
            if result is None:
                return None
            return CustomerData.model_validate(_with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting customer: {str(e)}")
            return None

    async def update_customer(self, customer_id: str, fields: Dict[str, Any]) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['customers'].update_one(
                {"_id": _doc_id(customer_id)},
                {"$set": {**fields, "updated_at": datetime.utcnow()}}
            )
            return result.matched_count > 0
        except Exception as e:
            self._handle_db_operation("update_customer", e)

    async def get_chat(self, chat_id: str) -> Optional[ChatData]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['chats'].find_one({"_id": _doc_id(chat_id)})
            if result is None:
                return None
            return ChatData.model_validate(_with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting chat: {str(e)}")
            return None

    async def update_chat(self, chat_id: str, fields: Dict[str, Any]) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['chats'].update_one(
                {"_id": _doc_id(chat_id)},
                {"$set": fields}
            )
            return result.matched_count > 0
        except Exception as e:
            self._handle_db_operation("update_chat", e)

    async def touch_chat_activity(
        self,
        chat_id: str,
        organization_id: str,
        customer_id: Optional[str],
        channel: Optional[str],
        sender_type: str,
        timestamp: datetime
    ) -> None:
        """
        Record the latest message time of a chat, per source, creating the chat
        record on first sight.
        """
        client_data = self._get_client_for_current_loop()
        activity = {"last_message_at": timestamp}
        if sender_type == "agent":
            activity["last_agent_message_at"] = timestamp
        else:
            activity["last_customer_message_at"] = timestamp
        try:
            await client_data['collections']['chats'].update_one(
                {"_id": _doc_id(chat_id)},
                {
                    "$set": activity,
                    "$setOnInsert": {
                        "organization_id": organization_id,
                        "customer_id": customer_id,
                        "channel": channel,
                        "start_time": timestamp,
                    }
                },
                upsert=True
            )
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error recording chat activity: {str(e)}")

    async def get_idle_chats(self, organization_id: str, activity_field: str, cutoff: datetime) -> List[ChatData]:
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['chats'].find({
                "organization_id": organization_id,
                activity_field: {"$ne": None, "$lte": cutoff}
            })
            chats = []
            async for chat_dict in cursor:
                chats.append(ChatData.model_validate(_with_id(chat_dict)))
            return chats
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting idle chats: {str(e)}")
            return []

    async def get_customer_messages(self, customer_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Latest stored messages of a customer across chats, oldest first
        """
        client_data = self._get_client_for_current_loop()
        try:
            cursor = client_data['collections']['messages'].find({"customer_id": customer_id}).sort("created_at", -1).limit(limit)
            messages = [message async for message in cursor]
            messages.reverse()
            return messages
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting customer messages: {str(e)}")
            return []

    # Prompt and integration lookups
    async def get_prompt(self, prompt_id: str) -> Optional[Dict[str, Any]]:
        client_data = self._get_client_for_current_loop()
        try:
            return await client_data['collections']['prompts'].find_one({"_id": _doc_id(prompt_id)})
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting prompt: {str(e)}")
            return None

    async def get_integration(self, integration_id: str) -> Optional[Dict[str, Any]]:
        client_data = self._get_client_for_current_loop()
        try:
            return await client_data['collections']['integrations'].find_one({"_id": _doc_id(integration_id)})
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting integration: {str(e)}")
            return None

    # Inactivity firings
    async def get_inactivity_firing(self, trigger_id: str, chat_id: str) -> Optional[InactivityFiring]:
        client_data = self._get_client_for_current_loop()
        try:
            result = await client_data['collections']['inactivity_firings'].find_one({"trigger_id": trigger_id, "chat_id": chat_id})
            if result is None:
                return None
            return InactivityFiring.model_validate(_with_id(result))
        except Exception as e:
            self.log_util.error(service_name="FlowDB", message=f"Error getting inactivity firing: {str(e)}")
            return None

    async def save_inactivity_firing(self, firing: InactivityFiring) -> bool:
        client_data = self._get_client_for_current_loop()
        try:
            await client_data['collections']['inactivity_firings'].update_one(
                {"trigger_id": firing.trigger_id, "chat_id": firing.chat_id},
                {"$set": firing.model_dump(exclude={"id"})},
                upsert=True
            )
            return True
        except Exception as e:
            self._handle_db_operation("save_inactivity_firing", e)
