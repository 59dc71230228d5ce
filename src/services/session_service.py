"""
Session Service
The per-chat execution state machine: starts sessions, runs nodes until the
flow suspends or ends, and resumes on input, delay expiry or input timeout.
"""
import traceback
from datetime import datetime, timedelta
from typing import Callable, Optional

from utils.log_utils import LogUtil
from database.flow_db import FlowDB

# Models
from models.flow_data import FlowData
from models.flow_node_data import BaseFlowNode, InputNode, ERROR_HANDLE, TIMEOUT_HANDLE
from models.flow_session_data import FlowSessionData, HistoryEntry, SessionStatus
from models.delay_data import DelayData
from models.node_execution_result import NodeExecutionResult

# Services
from services.flow_graph_service import FlowGraph, FlowGraphService
from services.node_type_registry import NodeTypeRegistry
from services.variable_service import VariableService, ResolutionContext
from services.node_execution_service import NodeExecutionService
from services.message_dispatch_service import MessageDispatchService

# Exceptions
from exceptions.flow_exception import FlowException, SessionStateException, FlowNotFoundException, ExternalCallException


class SessionService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        flow_graph_service: FlowGraphService,
        node_type_registry: NodeTypeRegistry,
        variable_service: VariableService,
        node_execution_service: NodeExecutionService,
        message_dispatch_service: MessageDispatchService,
        max_steps_per_run: int = 100,
        default_debounce_seconds: int = 3,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.flow_graph_service = flow_graph_service
        self.node_type_registry = node_type_registry
        self.variable_service = variable_service
        self.node_execution_service = node_execution_service
        self.message_dispatch_service = message_dispatch_service
        self.max_steps_per_run = max_steps_per_run
        self.default_debounce_seconds = default_debounce_seconds
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> FlowSessionData:
        session = await self.flow_db.get_session(session_id)
        if session is None:
            raise FlowNotFoundException(f"Session {session_id} not found")
        return session

    async def get_active_session_for_chat(self, chat_id: str) -> Optional[FlowSessionData]:
        return await self.flow_db.get_active_session_by_chat(chat_id)

    def _graph_for(self, flow: FlowData, preview: bool) -> FlowGraph:
        # Preview runs the draft, everything else the published snapshot
        if preview:
            return self.flow_graph_service.build_graph(flow.draft_nodes, flow.draft_edges)
        return self.flow_graph_service.build_graph(flow.nodes, flow.edges)

    async def _load_graph(self, session: FlowSessionData) -> Optional[FlowGraph]:
        flow = await self.flow_db.get_flow(session.flow_id)
        if flow is None:
            self.log_util.error(
                service_name="SessionService",
                message=f"[SESSION] Flow {session.flow_id} of session {session.id} no longer exists"
            )
            return None
        return self._graph_for(flow, session.preview)

    async def _context(self, session: FlowSessionData) -> ResolutionContext:
        customer = await self.flow_db.get_customer(session.customer_id) if session.customer_id else None
        chat = await self.flow_db.get_chat(session.chat_id) if session.chat_id else None
        return ResolutionContext(variables=session.variables, customer=customer, chat=chat)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start_session(
        self,
        flow: FlowData,
        organization_id: str,
        chat_id: str,
        customer_id: Optional[str] = None,
        channel: Optional[str] = None,
        trigger_id: Optional[str] = None,
        preview: bool = False,
        initial_message: Optional[str] = None
    ) -> Optional[FlowSessionData]:
        """
        Create a session on the flow's start node and run it until it suspends
        or ends. Returns None for a flow without a start node.
        """
        graph = self._graph_for(flow, preview)
        start_node = graph.start_node()
        if start_node is None:
            self.log_util.warning(
                service_name="SessionService",
                message=f"[SESSION] Flow {flow.id} has no start node, no session started for chat {chat_id}"
            )
            return None

        now = self.clock()
        session = FlowSessionData(
            organization_id=organization_id,
            flow_id=flow.id,
            trigger_id=trigger_id,
            chat_id=chat_id,
            customer_id=customer_id,
            channel=channel,
            current_node_id=start_node.id,
            variables=self.variable_service.build_session_variables(flow.variables, preview=preview),
            preview=preview,
            created_at=now,
            last_interaction=now
        )
        if initial_message:
            session.message_history.append(HistoryEntry(content=initial_message, sender_type="user", timestamp=now))

        session = await self.flow_db.create_session(session)
        self.log_util.info(
            service_name="SessionService",
            message=f"[SESSION] Started session {session.id} on flow {flow.id} for chat {chat_id} (preview={preview})"
        )
        await self._run(session, graph, start_node.id)
        return session

    async def handle_inbound_message(self, session: FlowSessionData, text: str) -> FlowSessionData:
        """
        Record a customer message. While waiting on an input node the message is
        buffered and the debounce window restarts. A session that is (or becomes)
        terminal is left untouched; callers check `is_terminal` on the result.
        """
        await self.flush_overdue_input(session)
        if session.is_terminal:
            self.log_util.info(
                service_name="SessionService",
                message=f"[SESSION] Session {session.id} ended with status {session.status}, message not taken"
            )
            return session

        now = self.clock()
        session.message_history.append(HistoryEntry(content=text, sender_type="user", timestamp=now))
        session.last_interaction = now

        if session.awaiting != "input":
            self.log_util.info(
                service_name="SessionService",
                message=f"[SESSION] Message recorded on session {session.id}, not waiting for input (awaiting={session.awaiting})"
            )
            await self._persist(session)
            return session

        graph = await self._load_graph(session)
        node = graph.get_node(session.current_node_id) if graph else None
        if not isinstance(node, InputNode):
            await self._end_session(session, "inactive", error=f"Session waits on missing input node {session.current_node_id}")
            return session

        session.pending_input.append(text)
        debounce = node.data.inputConfig.debounceTime
        debounce = self.default_debounce_seconds if debounce is None else debounce
        if debounce <= 0:
            await self._resolve_input(session, graph, node)
            return session

        session.debounce_timestamp = now + timedelta(seconds=debounce)
        self.log_util.info(
            service_name="SessionService",
            message=f"[SESSION] Buffered input for session {session.id} ({len(session.pending_input)} pending), flush at {session.debounce_timestamp.isoformat()}"
        )
        await self._persist(session)
        return session

    async def flush_overdue_input(self, session: FlowSessionData) -> FlowSessionData:
        """
        Settle a buffered burst whose debounce window already elapsed. The
        session may end here, before a newer message is taken.
        """
        now = self.clock()
        if session.awaiting == "input" and session.pending_input and session.debounce_timestamp and session.debounce_timestamp <= now:
            await self.flush_debounced_input(session)
        return session

    async def flush_debounced_input(self, session: FlowSessionData) -> FlowSessionData:
        """
        Resolve the buffered messages of a session as one answer.
        """
        if session.is_terminal or session.awaiting != "input" or not session.pending_input:
            return session
        graph = await self._load_graph(session)
        node = graph.get_node(session.current_node_id) if graph else None
        if not isinstance(node, InputNode):
            await self._end_session(session, "inactive", error=f"Session waits on missing input node {session.current_node_id}")
            return session
        await self._resolve_input(session, graph, node)
        return session

    async def _resolve_input(self, session: FlowSessionData, graph: FlowGraph, node: InputNode) -> None:
        answer = "\n".join(session.pending_input)
        self._clear_wait(session)
        result = self.node_execution_service.resolve_input(node, answer, graph)
        await self._continue_after(session, graph, node, result)

    async def resume_delay(self, delay: DelayData) -> Optional[FlowSessionData]:
        session = await self.flow_db.get_session(delay.session_id)
        if session is None or session.is_terminal or session.awaiting != "delay" or session.current_node_id != delay.delay_node_id:
            self.log_util.info(
                service_name="SessionService",
                message=f"[SESSION] Delay {delay.id} no longer applies to its session, skipping"
            )
            return session

        graph = await self._load_graph(session)
        node = graph.get_node(delay.delay_node_id) if graph else None
        if node is None:
            await self._end_session(session, "inactive", error=f"Delay node {delay.delay_node_id} no longer exists")
            return session

        self.log_util.info(
            service_name="SessionService",
            message=f"[SESSION] Resuming session {session.id} after delay node {node.id}"
        )
        self._clear_wait(session)
        await self._continue_after(session, graph, node, NodeExecutionResult(node_id=node.id))
        return session

    async def handle_input_timeout(self, session: FlowSessionData) -> FlowSessionData:
        """
        Follow the input node's timeout handle, or end the session with status
        `timeout` when none is wired.
        """
        now = self.clock()
        if session.is_terminal or session.awaiting != "input" or session.timeout_at is None or session.timeout_at > now:
            return session

        graph = await self._load_graph(session)
        node = graph.get_node(session.current_node_id) if graph else None
        if node is not None and graph.has_route(node.id, TIMEOUT_HANDLE):
            self.log_util.info(
                service_name="SessionService",
                message=f"[SESSION] Input timeout on session {session.id}, following timeout handle of {node.id}"
            )
            self._clear_wait(session)
            await self._continue_after(session, graph, node, NodeExecutionResult(node_id=node.id, handle=TIMEOUT_HANDLE))
            return session

        self.log_util.info(
            service_name="SessionService",
            message=f"[SESSION] Input timeout on session {session.id}, no timeout handle wired"
        )
        await self._end_session(session, "timeout")
        return session

    async def resume_stalled_session(self, session: FlowSessionData) -> FlowSessionData:
        """
        Re-enter a session that stopped mid-run without suspending, e.g. after a
        worker crash during an external call. The run restarts at the current node.
        """
        if session.is_terminal or session.awaiting is not None:
            return session

        graph = await self._load_graph(session)
        if graph is None:
            await self._end_session(session, "inactive", error=f"Flow {session.flow_id} no longer exists")
            return session

        self.log_util.warning(
            service_name="SessionService",
            message=f"[SESSION] Resuming stalled session {session.id} at node {session.current_node_id}"
        )
        await self._run(session, graph, session.current_node_id)
        return session

    async def cancel_session(self, session_id: str, reason: Optional[str] = None) -> FlowSessionData:
        session = await self.get_session(session_id)
        if session.is_terminal:
            raise SessionStateException(f"Session {session_id} already ended with status {session.status}")

        now = self.clock()
        cancelled = await self.flow_db.mark_session_cancelled(session_id, ended_at=now, reason=reason)
        if cancelled is None:
            raise SessionStateException(f"Session {session_id} could not be cancelled")
        await self.flow_db.mark_delays_processed_for_session(session_id)

        self.log_util.info(
            service_name="SessionService",
            message=f"[SESSION] Cancelled session {session_id}" + (f": {reason}" if reason else "")
        )
        return cancelled

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _continue_after(self, session: FlowSessionData, graph: FlowGraph, node: BaseFlowNode, result: NodeExecutionResult) -> None:
        """
        Commit a result produced outside the run loop, then run from its successor.
        """
        try:
            if not await self._commit(session, result):
                return
        except FlowException as e:
            await self._fail(session, graph, node, e.message)
            return
        next_node_id = self._next_node_id(graph, node, result)
        if next_node_id is None:
            await self._end_session(session, "inactive")
            return
        await self._run(session, graph, next_node_id)

    async def _run(self, session: FlowSessionData, graph: FlowGraph, node_id: str) -> None:
        steps = 0
        while True:
            node = graph.get_node(node_id)
            if node is None:
                # Routing to a node that is not in the snapshot ends the run
                await self._end_session(session, "inactive", error=f"Node {node_id} not found in flow")
                return
            if steps >= self.max_steps_per_run:
                await self._end_session(session, "inactive", error=f"Step limit of {self.max_steps_per_run} reached at node {node_id}")
                return
            steps += 1

            session.current_node_id = node.id
            detail = self.node_type_registry.get_node_type(node.type)
            if detail is not None and detail.is_external:
                # Crash recovery resumes from here, not from an earlier node
                if not await self._persist(session):
                    return

            context = await self._context(session)
            try:
                result = await self.node_execution_service.execute(node, session, graph, context)
                if not await self._commit(session, result):
                    return
            except FlowException as e:
                next_node_id = await self._fail(session, graph, node, e.message)
                if next_node_id is None:
                    return
                node_id = next_node_id
                continue
            except Exception as e:
                self.log_util.error(
                    service_name="SessionService",
                    message=f"[NODE_EXEC] Unexpected error on node {node.id} of session {session.id}: {str(e)}\n{traceback.format_exc()}"
                )
                next_node_id = await self._fail(session, graph, node, str(e))
                if next_node_id is None:
                    return
                node_id = next_node_id
                continue

            if result.wait == "input":
                await self._suspend_for_input(session, node)
                return
            if result.wait == "delay":
                await self._suspend_for_delay(session, node, result.delay_seconds)
                return

            next_node_id = self._next_node_id(graph, node, result)
            if next_node_id is None:
                self.log_util.info(
                    service_name="SessionService",
                    message=f"[SESSION] Session {session.id} reached the end of the flow at node {node.id}"
                )
                await self._end_session(session, "inactive")
                return
            node_id = next_node_id

    @staticmethod
    def _next_node_id(graph: FlowGraph, node: BaseFlowNode, result: NodeExecutionResult) -> Optional[str]:
        if result.target_node_id:
            return result.target_node_id
        return graph.next_node_id(node.id, result.handle)

    async def _commit(self, session: FlowSessionData, result: NodeExecutionResult) -> bool:
        """
        Apply a node's side effects. Returns False when the session was cancelled
        in the meantime, in which case nothing is applied.
        """
        if await self.flow_db.is_session_cancelled(session.id):
            self.log_util.info(
                service_name="SessionService",
                message=f"[SESSION] Session {session.id} was cancelled, dropping effects of node {result.node_id}"
            )
            session.cancelled = True
            session.status = "inactive"
            return False

        now = self.clock()
        if result.variable_updates:
            session.variables.update(result.variable_updates)

        if not session.preview:
            if result.customer_update and session.customer_id:
                await self.flow_db.update_customer(session.customer_id, result.customer_update)
            if result.chat_update:
                await self.flow_db.update_chat(session.chat_id, result.chat_update)

        for text in result.system_messages:
            session.message_history.append(HistoryEntry(content=text, sender_type="system", timestamp=now, node_id=result.node_id))

        for index, message in enumerate(result.messages):
            if not session.preview:
                try:
                    await self.message_dispatch_service.send_message(message)
                except ExternalCallException as e:
                    if len(result.messages) < 2:
                        raise
                    # Earlier parts already reached the customer and stay in the history
                    raise ExternalCallException(f"{e.message} ({index} of {len(result.messages)} messages delivered)", node_id=e.node_id) from e
            session.message_history.append(HistoryEntry(
                content=message.content or message.caption or message.media_url or "",
                sender_type="bot",
                timestamp=now,
                node_id=result.node_id,
                metadata={"message_type": message.message_type}
            ))
        return True

    async def _fail(self, session: FlowSessionData, graph: FlowGraph, node: BaseFlowNode, error: str) -> Optional[str]:
        """
        Route a failed node through its `error` handle when wired, otherwise end
        the session. Returns the node to continue with, if any.
        """
        self.log_util.error(
            service_name="SessionService",
            message=f"[NODE_EXEC] Node {node.id} ({node.type}) failed in session {session.id}: {error}"
        )
        session.message_history.append(HistoryEntry(content=error, sender_type="error", timestamp=self.clock(), node_id=node.id))

        if ERROR_HANDLE in node.output_handles() and graph.has_route(node.id, ERROR_HANDLE):
            return graph.next_node_id(node.id, ERROR_HANDLE)

        await self._end_session(session, "inactive", error=error)
        return None

    # ------------------------------------------------------------------
    # Suspension and termination
    # ------------------------------------------------------------------

    @staticmethod
    def _clear_wait(session: FlowSessionData) -> None:
        session.awaiting = None
        session.pending_input = []
        session.timeout_at = None
        session.debounce_timestamp = None
        session.resume_at = None

    async def _suspend_for_input(self, session: FlowSessionData, node: InputNode) -> None:
        now = self.clock()
        self._clear_wait(session)
        session.awaiting = "input"
        timeout = node.data.inputConfig.timeout
        if timeout > 0:
            session.timeout_at = now + timedelta(seconds=timeout)
        self.log_util.info(
            service_name="SessionService",
            message=f"[SESSION] Session {session.id} waiting for input on node {node.id}"
            + (f" until {session.timeout_at.isoformat()}" if session.timeout_at else "")
        )
        await self._persist(session)

    async def _suspend_for_delay(self, session: FlowSessionData, node: BaseFlowNode, delay_seconds: int) -> None:
        now = self.clock()
        self._clear_wait(session)
        session.awaiting = "delay"
        session.resume_at = now + timedelta(seconds=delay_seconds)
        if not await self._persist(session):
            return

        delay = DelayData(
            session_id=session.id,
            organization_id=session.organization_id,
            flow_id=session.flow_id,
            chat_id=session.chat_id,
            delay_node_id=node.id,
            delay_seconds=delay_seconds,
            delay_started_at=now,
            delay_completes_at=session.resume_at,
            created_at=now,
            updated_at=now
        )
        await self.flow_db.save_delay(delay)
        self.log_util.info(
            service_name="SessionService",
            message=f"[SESSION] Session {session.id} delayed {delay_seconds}s on node {node.id}, resumes at {session.resume_at.isoformat()}"
        )

    async def _end_session(self, session: FlowSessionData, status: SessionStatus, error: Optional[str] = None) -> None:
        now = self.clock()
        self._clear_wait(session)
        session.status = status
        session.ended_at = now
        if error:
            session.error = error
            if not session.message_history or session.message_history[-1].content != error:
                session.message_history.append(HistoryEntry(content=error, sender_type="error", timestamp=now, node_id=session.current_node_id))
        self.log_util.info(
            service_name="SessionService",
            message=f"[SESSION] Session {session.id} ended with status {status}" + (f": {error}" if error else "")
        )
        await self._persist(session)

    async def _persist(self, session: FlowSessionData) -> bool:
        session.last_interaction = self.clock()
        saved = await self.flow_db.save_session(session)
        if not saved:
            # Cancelled sessions are never overwritten
            session.cancelled = True
            session.status = "inactive"
        return saved

