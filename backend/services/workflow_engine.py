"""
Bill Workflow Hub - Workflow Engine Service

Orchestrates role-to-role hand-offs of bills. For every bill in a batch the
engine loads the bill, evaluates the transition rule table, appends an
immutable record to the transition log and applies the resulting field writes
to the bill in a single atomic update.

Every attempt is logged, including attempts that match no rule or are blocked
by a guard. The transition log is the source of truth for history; the
history on a bill summary is rebuilt from it on read.

Per-bill failures never abort a batch. Only a malformed request fails the
whole call.
"""

import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from dateutil import parser as date_parser

from .master_data import MasterDataLookup, NOT_AVAILABLE
from .stores import BillStore, StorageFaultError, TransitionLog, get_path, rebase_set_fields
from .transition_rules import Applied, NoRule, Rejected, TransitionOutcome, evaluate
from .workflow_config import (
    SiteStatus,
    TransitionAction,
    WorkflowConfig,
    WorkflowState,
    load_workflow_config,
    normalize_roles,
)

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class WorkflowError(Exception):
    """Base exception for workflow engine errors."""
    error_type = "WorkflowError"

    def __init__(self, message: str, details: Dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidBatchRequestError(WorkflowError):
    """Raised when a batch request is malformed. Fails the whole call."""
    error_type = "InvalidRequest"


class BillNotFoundError(WorkflowError):
    error_type = "NotFound"


class BillAlreadyRejectedError(WorkflowError):
    error_type = "AlreadyTerminal"


class GuardViolationError(WorkflowError):
    """A production matched but a bill attribute forbids it."""
    error_type = "GuardViolation"


class NoMatchingRuleError(WorkflowError):
    error_type = "NoMatchingRule"


class UnknownRoleError(WorkflowError):
    error_type = "InvalidRequest"


class UnknownStateError(WorkflowError):
    error_type = "InvalidRequest"


MALFORMED_REQUEST_MESSAGE = "Missing required fields or bill_ids must be a non-empty array"


# =============================================================================
# BATCH RESULT
# =============================================================================

@dataclass
class BatchTransitionResult:
    """Partitioned outcome of a batch transition request."""
    requested: int
    successful: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def record_success(self, bill_id: str, record: Dict) -> None:
        self.successful.append({"bill_id": bill_id, "workflow": record})

    def record_failure(self, bill_id: str, message: str, error_type: str) -> None:
        self.failed.append({"bill_id": bill_id, "message": message, "error_type": error_type})

    @property
    def message(self) -> str:
        return (
            f"Processed {self.requested} bills: "
            f"{len(self.successful)} successful, {len(self.failed)} failed"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "data": {
                "successful": self.successful,
                "failed": self.failed,
            },
        }


# =============================================================================
# TIME HELPERS
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (ISO string or datetime). Naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.isoparse(str(value))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _hours(seconds: float) -> float:
    return round(seconds / 3600, 2)


# =============================================================================
# MAIN WORKFLOW ENGINE
# =============================================================================

class WorkflowEngine:
    """
    Bill workflow state machine service.

    Collaborators and configuration are passed in explicitly so the engine
    holds no ambient module state and can run against any store
    implementation.
    """

    def __init__(
        self,
        bill_store: BillStore,
        transition_log: TransitionLog,
        config: Optional[WorkflowConfig] = None,
        master_data: Optional[MasterDataLookup] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.bill_store = bill_store
        self.transition_log = transition_log
        self.config = config or load_workflow_config()
        self.master_data = master_data
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return self._clock()

    # ==================== BATCH TRANSITIONS ====================

    @staticmethod
    def validate_batch_request(
        from_user: Optional[Dict],
        to_user: Optional[Dict],
        bill_ids: Any,
        action: Optional[str]
    ) -> None:
        """Reject malformed requests before any bill is touched."""
        if not from_user or not to_user or not action:
            raise InvalidBatchRequestError(MALFORMED_REQUEST_MESSAGE)
        if not isinstance(bill_ids, list) or len(bill_ids) == 0:
            raise InvalidBatchRequestError(MALFORMED_REQUEST_MESSAGE)
        if not all(isinstance(bill_id, str) and bill_id.strip() for bill_id in bill_ids):
            raise InvalidBatchRequestError("bill_ids must contain only non-empty strings")

        valid_actions = [a.value for a in TransitionAction]
        if action not in valid_actions:
            raise InvalidBatchRequestError(f"Invalid action '{action}'. Valid: {valid_actions}")

        for label, user in (("from_user", from_user), ("to_user", to_user)):
            if not normalize_roles(user.get("role")):
                raise InvalidBatchRequestError(f"{label} must carry at least one role")

    def _actor(self, user: Dict) -> Tuple[Dict, frozenset]:
        raw_roles = user.get("role")
        roles = self.config.normalize_roles(raw_roles)
        first = raw_roles[0] if isinstance(raw_roles, list) and raw_roles else raw_roles
        primary = next(iter(self.config.normalize_roles(first)), None)
        actor = {
            "id": user.get("id") or None,
            "name": user.get("name") or "",
            "role": primary,
            "roles": sorted(roles),
        }
        return actor, roles

    async def apply_batch_transition(
        self,
        from_user: Dict,
        to_user: Dict,
        bill_ids: List[str],
        action: str,
        remarks: Optional[str] = None
    ) -> BatchTransitionResult:
        """
        Hand a batch of bills from one user to another.

        Args:
            from_user: {id, name, role} of the initiator; role is a string or list
            to_user: {id, name, role} of the recipient
            bill_ids: Non-empty list of bill ids, processed in order
            action: "forward" or "backward"
            remarks: Free-text remarks stored on the record

        Returns:
            BatchTransitionResult with one entry per requested id

        Raises:
            InvalidBatchRequestError: if the request itself is malformed
        """
        action = action.value if isinstance(action, TransitionAction) else action
        self.validate_batch_request(from_user, to_user, bill_ids, action)

        from_actor, from_roles = self._actor(from_user)
        to_actor, to_roles = self._actor(to_user)
        result = BatchTransitionResult(requested=len(bill_ids))

        for bill_id in bill_ids:
            try:
                record = await self._transition_one(
                    bill_id, from_actor, from_roles, to_actor, to_roles, action, remarks
                )
                result.record_success(bill_id, record)
            except WorkflowError as e:
                result.record_failure(bill_id, e.message, e.error_type)
            except StorageFaultError as e:
                logger.error("Storage fault while transitioning bill %s: %s", bill_id, e.message)
                result.record_failure(bill_id, e.message, e.error_type)

        logger.info(
            "Batch transition %s -> %s (%s): %s",
            from_actor["role"], to_actor["role"], action, result.message
        )
        return result

    async def _transition_one(
        self,
        bill_id: str,
        from_actor: Dict,
        from_roles: frozenset,
        to_actor: Dict,
        to_roles: frozenset,
        action: str,
        remarks: Optional[str]
    ) -> Dict:
        bill = await self.bill_store.find_by_id(bill_id)
        if bill is None:
            raise BillNotFoundError("Bill not found")
        if bill.get("site_status") == SiteStatus.REJECT.value:
            raise BillAlreadyRejectedError("Bill is already rejected")

        now = self._now()
        previous = await self.transition_log.find_latest_for_bill(bill_id)
        duration = self._seconds_since(previous, now)

        facts = await self._resolve_bill_facts(bill)
        outcome = evaluate(
            facts, from_roles, to_roles, action, remarks, now,
            recipient_name=to_actor["name"],
            rules=self.config.rules,
        )

        # Written before the bill is touched so every attempt is on the ledger
        record = self._build_record(bill_id, from_actor, to_actor, action, remarks, duration, now, outcome)
        await self.transition_log.insert(record)

        if isinstance(outcome, Rejected):
            logger.warning(
                "Blocked workflow transition: bill=%s, rule=%s, reason=%s",
                bill_id, outcome.rule.name, outcome.reason
            )
            raise GuardViolationError(outcome.reason)
        if isinstance(outcome, NoRule):
            logger.warning(
                "No workflow rule: bill=%s, from=%s, to=%s, action=%s",
                bill_id, sorted(from_roles), sorted(to_roles), action
            )
            raise NoMatchingRuleError(outcome.reason)

        # Dotted writes under a null stage block become whole-block writes
        set_fields = rebase_set_fields(bill, outcome.to_update())
        updated = await self.bill_store.update_by_id(bill_id, set_fields, outcome.to_max_update())
        if not updated:
            raise StorageFaultError("Failed to update bill workflow", operation="update_bill")

        logger.info(
            "Workflow transition: bill=%s, rule=%s, position %s -> %s (action=%s, actor=%s)",
            bill_id, outcome.rule.name, bill.get("position"), outcome.new_position,
            action, from_actor["name"]
        )
        return record

    async def _resolve_bill_facts(self, bill: Dict) -> Dict:
        """Bill view handed to the rule table, with nature of work as a name."""
        nature = bill.get("nature_of_work")
        if isinstance(nature, str) and self.master_data is not None:
            name = await self.master_data.get_nature_of_work_name(nature)
            if name:
                return {**bill, "nature_of_work": name}
        return bill

    @staticmethod
    def _seconds_since(previous: Optional[Dict], now: datetime) -> float:
        if not previous:
            return 0
        created = parse_timestamp(previous.get("created_at"))
        if created is None:
            return 0
        return max((now - created).total_seconds(), 0)

    @staticmethod
    def _build_record(
        bill_id: str,
        from_actor: Dict,
        to_actor: Dict,
        action: str,
        remarks: Optional[str],
        duration: float,
        now: datetime,
        outcome: TransitionOutcome
    ) -> Dict:
        applied = isinstance(outcome, Applied)
        return {
            "id": str(uuid.uuid4()),
            "bill_id": bill_id,
            "from_user": dict(from_actor),
            "to_user": dict(to_actor),
            "action": action,
            "remarks": remarks,
            "duration_seconds": duration,
            "created_at": now.isoformat(),
            "rule": outcome.rule.name if outcome.rule else None,
            "outcome": outcome.outcome,
            "message": None if applied else outcome.reason,
            "state": outcome.state if applied else None,
            "position": outcome.new_position if applied else None,
            "history_entry": outcome.history_entry if applied else None,
        }

    # ==================== HISTORY QUERIES ====================

    async def get_history(self, bill_id: str) -> List[Dict]:
        """All transition records of a bill, oldest first, with actor details filled in."""
        records = await self.transition_log.find_by_bill(bill_id)
        if not records or self.master_data is None:
            return records

        user_ids = set()
        for record in records:
            user_ids.add(get_path(record, "from_user.id"))
            user_ids.add(get_path(record, "to_user.id"))
        users = await self.master_data.get_users([u for u in user_ids if u])

        for record in records:
            for side in ("from_user", "to_user"):
                actor = record.get(side) or {}
                details = users.get(actor.get("id"))
                if details:
                    actor["name"] = actor.get("name") or details.get("name")
                    actor["department"] = details.get("department")
        return records

    async def get_bill_workflow(self, bill_id: str) -> Dict:
        """Workflow summary of a bill with its history rebuilt from the transition log."""
        bill = await self.bill_store.find_by_id(bill_id)
        if bill is None:
            raise BillNotFoundError("Bill not found")

        records = await self.transition_log.find_by_bill(bill_id)
        history = [
            r["history_entry"] for r in records
            if r.get("outcome") == Applied.outcome and r.get("history_entry")
        ]
        workflow_state = bill.get("workflow_state") or {}
        return {
            "bill_id": bill_id,
            "serial_number": bill.get("serial_number"),
            "position": bill.get("position"),
            "max_position_reached": bill.get("max_position_reached"),
            "site_status": bill.get("site_status"),
            "current_state": workflow_state.get("current_state"),
            "last_updated": workflow_state.get("last_updated"),
            "history": history,
        }

    @staticmethod
    def _state_durations(
        records: List[Dict],
        initial_state: Optional[str] = None
    ) -> Tuple[Dict[str, List[float]], Optional[str], Optional[datetime]]:
        """
        Split a bill's record timeline into per-state closed intervals.

        Each gap between consecutive records is attributed to the state that
        was active before the later record. Returns the closed intervals per
        state, the state active after the last record and that record's time.
        """
        durations: Dict[str, List[float]] = defaultdict(list)
        state = initial_state or WorkflowState.UNASSIGNED.value
        previous_time = None

        for record in records:
            created = parse_timestamp(record.get("created_at"))
            if created is None:
                continue
            if previous_time is not None:
                durations[state].append(max((created - previous_time).total_seconds(), 0))
            if record.get("outcome") == Applied.outcome and record.get("state"):
                state = record["state"]
            previous_time = created

        return durations, state, previous_time

    async def get_time_in_each_state(self, bill_id: str) -> Dict:
        """Hours a bill spent in each state, including the still-open current interval."""
        bill = await self.bill_store.find_by_id(bill_id)
        if bill is None:
            raise BillNotFoundError("Bill not found")

        records = await self.transition_log.find_by_bill(bill_id)
        durations, state, last_time = self._state_durations(records)

        totals = {s: sum(values) for s, values in durations.items()}
        if last_time is not None:
            open_interval = max((self._now() - last_time).total_seconds(), 0)
            totals[state] = totals.get(state, 0) + open_interval

        return {
            "bill_id": bill_id,
            "current_state": (bill.get("workflow_state") or {}).get("current_state"),
            "time_in_states": {s: _hours(seconds) for s, seconds in totals.items()},
            "total_transitions": len(records),
        }

    async def get_user_activity(self, user_id: str, limit: int = 50) -> Dict:
        """Transitions initiated by one user, newest first."""
        records = await self.transition_log.find_by_user(user_id, limit=limit)
        summary = {a.value: 0 for a in TransitionAction}
        for record in records:
            action = record.get("action")
            if action in summary:
                summary[action] += 1
        return {
            "transitions": records,
            "action_summary": summary,
            "total_transitions": len(records),
        }

    async def get_role_performance(self) -> List[Dict]:
        """
        Average wait before each applied forward hand-off, grouped by the
        initiating role and actor.
        """
        records = await self.transition_log.list_records()
        by_role: Dict[str, Dict[Tuple, List[float]]] = defaultdict(lambda: defaultdict(list))

        for record in records:
            if record.get("action") != TransitionAction.FORWARD.value:
                continue
            if record.get("outcome") != Applied.outcome:
                continue
            actor = record.get("from_user") or {}
            key = (actor.get("id"), actor.get("name"))
            by_role[actor.get("role") or WorkflowState.UNASSIGNED.value][key].append(
                record.get("duration_seconds") or 0
            )

        metrics = []
        for role in sorted(by_role):
            actors = []
            all_waits: List[float] = []
            for (actor_id, actor_name), waits in by_role[role].items():
                all_waits.extend(waits)
                actors.append({
                    "id": actor_id,
                    "name": actor_name,
                    "count": len(waits),
                    "avg_response_time_hours": _hours(sum(waits) / len(waits)),
                })
            metrics.append({
                "role": role,
                "actors": actors,
                "total_count": len(all_waits),
                "avg_overall_response_time_hours": _hours(sum(all_waits) / len(all_waits)),
            })
        return metrics

    # ==================== BILL QUERIES ====================

    async def get_current_state_counts(self) -> Dict[str, int]:
        """Number of bills per named workflow state."""
        bills = await self.bill_store.list_bills()
        counts = Counter(
            get_path(b, "workflow_state.current_state") or WorkflowState.UNASSIGNED.value
            for b in bills
        )
        return dict(sorted(counts.items()))

    async def get_stuck_bills(self, threshold_days: Optional[int] = None) -> List[Dict]:
        """
        Bills not updated for longer than the threshold and not in a terminal
        state, oldest first.
        """
        days = self.config.stuck_threshold_days if threshold_days is None else threshold_days
        cutoff = self._now() - timedelta(days=days)

        stuck = []
        for bill in await self.bill_store.list_bills():
            state = get_path(bill, "workflow_state.current_state")
            if self.config.is_terminal(state):
                continue
            last_updated = parse_timestamp(get_path(bill, "workflow_state.last_updated"))
            if last_updated is None or last_updated >= cutoff:
                continue
            stuck.append(self._bill_summary(bill))

        stuck.sort(key=lambda b: b["last_updated"])
        return stuck

    async def get_bills_above_level(self, role: str) -> List[Dict]:
        """Bills that have moved past the level a role works at."""
        level = self.config.level_for(role)
        if level is None:
            raise UnknownRoleError("Invalid role provided", {"role": role})

        bills = [b for b in await self.bill_store.list_bills() if (b.get("position") or 1) > level]
        return await self._with_vendor_names(bills)

    async def get_bills_by_state(self, state: str) -> List[Dict]:
        """Bill summaries in a named state, most recently updated first."""
        valid_states = [s.value for s in WorkflowState]
        if state not in valid_states:
            raise UnknownStateError("Invalid workflow state", {"valid_states": valid_states})

        bills = await self.bill_store.list_bills({"workflow_state.current_state": state})
        summaries = [self._bill_summary(b) for b in await self._with_vendor_names(bills)]
        summaries.sort(key=lambda b: b["last_updated"] or "", reverse=True)
        return summaries

    async def get_workflow_stats(self) -> Dict:
        """Dashboard statistics across all bills and transitions."""
        state_counts = await self.get_current_state_counts()
        records = await self.transition_log.list_records()

        by_bill: Dict[str, List[Dict]] = defaultdict(list)
        for record in records:
            by_bill[record.get("bill_id")].append(record)

        per_state: Dict[str, List[float]] = defaultdict(list)
        for bill_records in by_bill.values():
            durations, _, _ = self._state_durations(bill_records)
            for state, values in durations.items():
                per_state[state].extend(values)

        average_time_in_state = [
            {
                "state": state,
                "count": len(values),
                "avg_duration_hours": _hours(sum(values) / len(values)),
                "max_duration_hours": _hours(max(values)),
                "min_duration_hours": _hours(min(values)),
            }
            for state, values in sorted(per_state.items()) if values
        ]

        blocked = Counter(r.get("outcome") for r in records if r.get("outcome") != Applied.outcome)
        blocked_attempts = [
            {"outcome": outcome, "count": count} for outcome, count in blocked.most_common()
        ]

        recent_activity = await self.transition_log.list_records(
            limit=self.config.recent_activity_limit, newest_first=True
        )

        return {
            "state_counts": state_counts,
            "average_time_in_state": average_time_in_state,
            "blocked_attempts": blocked_attempts,
            "recent_activity": recent_activity,
            "stuck_bills": self.group_stuck_bills(
                await self.get_stuck_bills(), self.config.stuck_examples_per_state
            ),
        }

    @staticmethod
    def group_stuck_bills(stuck: Iterable[Dict], examples: int = 5) -> List[Dict]:
        """Group stuck bill summaries by state, keeping a few examples of each."""
        groups: Dict[str, List[Dict]] = defaultdict(list)
        for bill in stuck:
            groups[bill.get("current_state") or WorkflowState.UNASSIGNED.value].append(bill)
        grouped = [
            {"state": state, "count": len(bills), "bills": bills[:examples]}
            for state, bills in groups.items()
        ]
        grouped.sort(key=lambda g: g["count"], reverse=True)
        return grouped

    # ==================== HELPERS ====================

    @staticmethod
    def _bill_summary(bill: Dict) -> Dict:
        workflow_state = bill.get("workflow_state") or {}
        summary = {
            "id": bill.get("id"),
            "serial_number": bill.get("serial_number"),
            "amount": bill.get("tax_inv_amount"),
            "position": bill.get("position"),
            "current_state": workflow_state.get("current_state"),
            "last_updated": workflow_state.get("last_updated"),
        }
        for key in ("vendor_name", "vendor_no"):
            if key in bill:
                summary[key] = bill[key]
        return summary

    async def _with_vendor_names(self, bills: List[Dict]) -> List[Dict]:
        """Flatten vendor master fields onto bills. Unknown vendors render as N/A."""
        refs = [b.get("vendor") for b in bills if isinstance(b.get("vendor"), str)]
        vendors = await self.master_data.get_vendors(refs) if self.master_data and refs else {}

        flattened = []
        for bill in bills:
            vendor = vendors.get(bill.get("vendor")) or {}
            flattened.append({
                **bill,
                "vendor_name": vendor.get("vendor_name") or NOT_AVAILABLE,
                "vendor_no": vendor.get("vendor_no") or NOT_AVAILABLE,
            })
        return flattened
