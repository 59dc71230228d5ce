"""
Scheduler Service
Background service that resumes expired delays, flushes debounced input,
applies input timeouts, re-enters stalled sessions and fires inactivity triggers.
"""
import asyncio
import traceback
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from utils.log_utils import LogUtil
from utils.lock_utils import ChatLockManager
from database.flow_db import FlowDB
from models.customer_data import ChatData
from models.flow_trigger_data import FlowTriggerData, InactivityFiring, InactivityRuleParams
from services.session_service import SessionService
from services.trigger_evaluation_service import TriggerEvaluationService, TriggerEvent

ACTIVITY_FIELDS = {
    "customer": "last_customer_message_at",
    "agent": "last_agent_message_at",
}


class SchedulerService:
    """
    Background service polling for work that is due. Every unit of work runs
    under the chat lock so it never interleaves with inbound events.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        session_service: SessionService,
        trigger_evaluation_service: TriggerEvaluationService,
        lock_manager: ChatLockManager,
        check_interval_seconds: int = 2,
        stalled_after_seconds: int = 60,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.session_service = session_service
        self.trigger_evaluation_service = trigger_evaluation_service
        self.lock_manager = lock_manager
        self.check_interval_seconds = check_interval_seconds
        self.stalled_after_seconds = stalled_after_seconds
        self.clock = clock
        self._running = False
        self._task = None

    async def start(self):
        """
        Start the background scheduler task.
        """
        if self._running:
            self.log_util.warning(
                service_name="SchedulerService",
                message="[SCHEDULER] Scheduler is already running"
            )
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        self.log_util.info(
            service_name="SchedulerService",
            message=f"[SCHEDULER] Scheduler started, checking every {self.check_interval_seconds} seconds"
        )

    async def stop(self):
        """
        Stop the background scheduler task.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.log_util.info(
            service_name="SchedulerService",
            message="[SCHEDULER] Scheduler stopped"
        )

    async def _scheduler_loop(self):
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_util.error(
                    service_name="SchedulerService",
                    message=f"[SCHEDULER] Error in scheduler loop: {str(e)}\nTraceback: {traceback.format_exc()}"
                )
                # Wait before retrying to avoid tight error loop
                await asyncio.sleep(self.check_interval_seconds)

    async def run_once(self):
        """
        One sweep. Debounced input is flushed before timeouts are applied, so an
        answer that arrived in time is never lost to the timeout.
        """
        await self._process_expired_delays()
        await self._process_debounced_inputs()
        await self._process_input_timeouts()
        await self._process_stalled_sessions()
        await self._process_inactivity_triggers()

    async def _process_expired_delays(self):
        pending_delays = await self.flow_db.get_pending_delays(self.clock())
        if not pending_delays:
            return

        self.log_util.info(
            service_name="SchedulerService",
            message=f"[SCHEDULER] Found {len(pending_delays)} expired delay(s) to process"
        )
        for delay in pending_delays:
            try:
                async with self.lock_manager.hold(delay.chat_id):
                    await self.session_service.resume_delay(delay)
                    await self.flow_db.mark_delay_as_processed(delay.id)
            except Exception as e:
                self.log_util.error(
                    service_name="SchedulerService",
                    message=f"[SCHEDULER] Error processing delay {delay.id}: {str(e)}\nTraceback: {traceback.format_exc()}"
                )

    async def _process_debounced_inputs(self):
        sessions = await self.flow_db.get_sessions_with_due_debounce(self.clock())
        for candidate in sessions:
            try:
                async with self.lock_manager.hold(candidate.chat_id):
                    # Re-read under the lock, an inbound event may have moved it on
                    session = await self.flow_db.get_session(candidate.id)
                    if session is None or session.debounce_timestamp is None or session.debounce_timestamp > self.clock():
                        continue
                    self.log_util.info(
                        service_name="SchedulerService",
                        message=f"[SCHEDULER] Flushing {len(session.pending_input)} buffered message(s) of session {session.id}"
                    )
                    await self.session_service.flush_debounced_input(session)
            except Exception as e:
                self.log_util.error(
                    service_name="SchedulerService",
                    message=f"[SCHEDULER] Error flushing input of session {candidate.id}: {str(e)}\nTraceback: {traceback.format_exc()}"
                )

    async def _process_input_timeouts(self):
        sessions = await self.flow_db.get_sessions_with_due_timeout(self.clock())
        for candidate in sessions:
            try:
                async with self.lock_manager.hold(candidate.chat_id):
                    session = await self.flow_db.get_session(candidate.id)
                    if session is None or session.pending_input:
                        continue
                    await self.session_service.handle_input_timeout(session)
            except Exception as e:
                self.log_util.error(
                    service_name="SchedulerService",
                    message=f"[SCHEDULER] Error applying timeout to session {candidate.id}: {str(e)}\nTraceback: {traceback.format_exc()}"
                )

    async def _process_stalled_sessions(self):
        cutoff = self.clock() - timedelta(seconds=self.stalled_after_seconds)
        sessions = await self.flow_db.get_stalled_sessions(cutoff)
        for candidate in sessions:
            try:
                async with self.lock_manager.hold(candidate.chat_id):
                    # A live run holds the lock and leaves the session suspended or ended
                    session = await self.flow_db.get_session(candidate.id)
                    if session is None or session.is_terminal or session.awaiting is not None:
                        continue
                    if session.last_interaction is None or session.last_interaction > cutoff:
                        continue
                    self.log_util.info(
                        service_name="SchedulerService",
                        message=f"[SCHEDULER] Session {session.id} made no progress since {session.last_interaction.isoformat()}, resuming at node {session.current_node_id}"
                    )
                    await self.session_service.resume_stalled_session(session)
            except Exception as e:
                self.log_util.error(
                    service_name="SchedulerService",
                    message=f"[SCHEDULER] Error resuming stalled session {candidate.id}: {str(e)}\nTraceback: {traceback.format_exc()}"
                )

    async def _process_inactivity_triggers(self):
        triggers = await self.flow_db.get_active_triggers_by_type("inactivity")
        if not triggers:
            return

        for trigger in sorted(triggers, key=lambda item: -item.priority):
            rules = [rule.params for rule in trigger.rules_of_type("inactivity") if isinstance(rule.params, InactivityRuleParams)]
            if not rules:
                self.log_util.warning(
                    service_name="SchedulerService",
                    message=f"[SCHEDULER] Inactivity trigger {trigger.id} has no inactivity rule, skipping"
                )
                continue
            for chat in await self._idle_candidates(trigger, rules):
                try:
                    async with self.lock_manager.hold(chat.id):
                        await self._fire_inactivity(trigger, chat)
                except Exception as e:
                    self.log_util.error(
                        service_name="SchedulerService",
                        message=f"[SCHEDULER] Error firing inactivity trigger {trigger.id} for chat {chat.id}: {str(e)}\nTraceback: {traceback.format_exc()}"
                    )

    async def _idle_candidates(self, trigger: FlowTriggerData, rules: List[InactivityRuleParams]) -> List[ChatData]:
        now = self.clock()
        candidates: Dict[str, ChatData] = {}
        for params in rules:
            chats = await self.flow_db.get_idle_chats(
                organization_id=trigger.organization_id,
                activity_field=ACTIVITY_FIELDS[params.source],
                cutoff=now - timedelta(minutes=params.minutes)
            )
            for chat in chats:
                candidates.setdefault(chat.id, chat)
        return list(candidates.values())

    def _idle_minutes(self, chat: ChatData) -> Dict[str, Optional[float]]:
        now = self.clock()
        idle: Dict[str, Optional[float]] = {}
        for source, field in ACTIVITY_FIELDS.items():
            last = getattr(chat, field)
            idle[source] = (now - last).total_seconds() / 60 if last else None
        return idle

    async def _fire_inactivity(self, trigger: FlowTriggerData, chat: ChatData):
        if await self.flow_db.get_active_session_by_chat(chat.id) is not None:
            return

        # One firing per trigger and idle period; new activity opens a new period
        firing = await self.flow_db.get_inactivity_firing(trigger.id, chat.id)
        if firing is not None and firing.last_activity_at == chat.last_message_at:
            return

        event = TriggerEvent(channel=chat.channel, timestamp=self.clock(), idle_minutes=self._idle_minutes(chat))
        if not self.trigger_evaluation_service.evaluate(trigger, event):
            return

        flow = await self.flow_db.get_flow(trigger.flow_id)
        if flow is None or not flow.is_published:
            self.log_util.warning(
                service_name="SchedulerService",
                message=f"[SCHEDULER] Inactivity trigger {trigger.id} points at missing or unpublished flow {trigger.flow_id}"
            )
            return

        self.log_util.info(
            service_name="SchedulerService",
            message=f"[SCHEDULER] Inactivity trigger {trigger.id} fired for chat {chat.id}"
        )
        await self.flow_db.save_inactivity_firing(InactivityFiring(
            trigger_id=trigger.id,
            chat_id=chat.id,
            last_activity_at=chat.last_message_at,
            fired_at=self.clock()
        ))
        await self.session_service.start_session(
            flow,
            organization_id=chat.organization_id,
            chat_id=chat.id,
            customer_id=chat.customer_id,
            channel=chat.channel,
            trigger_id=trigger.id
        )
