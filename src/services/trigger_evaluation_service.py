"""
Trigger Evaluation Service
Decides whether a flow trigger fires for an incoming event or an idle chat.
"""
from datetime import datetime, time, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from utils.log_utils import LogUtil
from models.flow_trigger_data import (
    FlowTriggerData,
    TriggerRule,
    ChannelRuleParams,
    ScheduleRuleParams,
    InactivityRuleParams,
)


class TriggerEvent:
    """
    What a trigger is evaluated against. `idle_minutes` is only filled by the
    scheduler's inactivity sweep, keyed by activity source (customer / agent).
    """
    def __init__(
        self,
        channel: Optional[str],
        timestamp: datetime,
        is_first_contact: bool = False,
        idle_minutes: Optional[dict] = None
    ):
        self.channel = channel
        self.timestamp = timestamp
        self.is_first_contact = is_first_contact
        self.idle_minutes = idle_minutes

    @property
    def from_scheduler(self) -> bool:
        return self.idle_minutes is not None


def _parse_clock(value: str) -> time:
    hours, _, minutes = value.strip().partition(":")
    if int(hours) == 24:
        return time.max
    return time(int(hours), int(minutes or 0))


class TriggerEvaluationService:
    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def evaluate(self, trigger: FlowTriggerData, event: TriggerEvent) -> bool:
        if not trigger.is_active:
            return False

        # Inbound events start first_contact flows, the idle sweep starts inactivity flows
        if trigger.type == "inactivity" and not event.from_scheduler:
            return False
        if trigger.type == "first_contact":
            if event.from_scheduler or not event.is_first_contact:
                return False

        rules = trigger.conditions.rules
        if not rules:
            return True

        results = [self.evaluate_rule(rule, event) for rule in rules]
        matched = all(results) if trigger.conditions.operator == "AND" else any(results)

        self.log_util.debug(
            service_name="TriggerEvaluationService",
            message=f"[TRIGGER_CHECK] Trigger {trigger.id} ({trigger.conditions.operator}) rule results {results} -> {matched}"
        )
        return matched

    def evaluate_rule(self, rule: TriggerRule, event: TriggerEvent) -> bool:
        if rule.type == "channel" and isinstance(rule.params, ChannelRuleParams):
            return self._match_channel(rule.params, event)
        if rule.type == "schedule" and isinstance(rule.params, ScheduleRuleParams):
            return self._match_schedule(rule.params, event)
        if rule.type == "inactivity" and isinstance(rule.params, InactivityRuleParams):
            return self._match_inactivity(rule.params, event)
        self.log_util.warning(
            service_name="TriggerEvaluationService",
            message=f"[TRIGGER_CHECK] Rule {rule.id} of type '{rule.type}' has mismatched params, treating as not matched"
        )
        return False

    def _match_channel(self, params: ChannelRuleParams, event: TriggerEvent) -> bool:
        # An empty channel list does not constrain
        if not params.channels:
            return True
        if not event.channel:
            return False
        return event.channel.lower() in [channel.lower() for channel in params.channels]

    def _match_schedule(self, params: ScheduleRuleParams, event: TriggerEvent) -> bool:
        if not params.timeSlots:
            return True
        try:
            zone = ZoneInfo(params.timezone or "UTC")
        except (ZoneInfoNotFoundError, ValueError):
            self.log_util.warning(
                service_name="TriggerEvaluationService",
                message=f"[TRIGGER_CHECK] Unknown timezone '{params.timezone}', falling back to UTC"
            )
            zone = ZoneInfo("UTC")

        timestamp = event.timestamp
        if timestamp.tzinfo is None:
            # Naive timestamps are UTC throughout the service
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        local = timestamp.astimezone(zone)

        # Python: Monday=0 ... Sunday=6; slots: Sunday=0 ... Saturday=6
        day = (local.weekday() + 1) % 7
        now = local.time().replace(tzinfo=None)

        for slot in params.timeSlots:
            if slot.day != day:
                continue
            try:
                start, end = _parse_clock(slot.startTime), _parse_clock(slot.endTime)
            except ValueError:
                self.log_util.warning(
                    service_name="TriggerEvaluationService",
                    message=f"[TRIGGER_CHECK] Malformed time slot {slot.id}: {slot.startTime}-{slot.endTime}"
                )
                continue
            if start <= now < end:
                return True
        return False

    def _match_inactivity(self, params: InactivityRuleParams, event: TriggerEvent) -> bool:
        # Only the scheduler knows how long a chat has been idle
        if not event.from_scheduler:
            return False
        idle = event.idle_minutes.get(params.source)
        return idle is not None and idle >= params.minutes

    def find_matching_trigger(self, triggers: List[FlowTriggerData], event: TriggerEvent) -> Optional[FlowTriggerData]:
        """
        Highest priority first, stored order breaks ties, first match wins.
        """
        ordered = sorted(triggers, key=lambda trigger: -trigger.priority)
        for trigger in ordered:
            if self.evaluate(trigger, event):
                self.log_util.info(
                    service_name="TriggerEvaluationService",
                    message=f"[TRIGGER_CHECK] Trigger {trigger.id} matched for flow {trigger.flow_id}"
                )
                return trigger
        return None
