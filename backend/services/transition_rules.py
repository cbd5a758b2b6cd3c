"""
Bill Workflow Hub - Transition Rule Table

Deterministic rule table deciding whether a bill may be handed from one set of
roles to another, and what the hand-off writes onto the bill.

The table is an ordered tuple of productions. evaluate() walks it top to
bottom and the first production matching (from roles, to roles, action) wins.
Role sets overlap between productions, so the order is part of the contract:
a guard failure on the first match rejects the transition, it never falls
through to a later production.

This module is pure business logic with no I/O.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple, Union
import logging

from .workflow_config import (
    Role,
    SiteStatus,
    TransitionAction,
    WorkflowState,
    SITE_SIBLING_ROLES,
    normalize_roles,
)

logger = logging.getLogger(__name__)

NO_RULE_MESSAGE = "No matching workflow transition rule found"


# =============================================================================
# RULE BUILDING BLOCKS
# =============================================================================

class StampValue(str, Enum):
    """Where a stamped field takes its value from."""
    NOW = "now"
    RECIPIENT_NAME = "recipient_name"
    REMARKS = "remarks"


@dataclass(frozen=True)
class Guard:
    """Blocks an otherwise matching production when a bill attribute has a forbidden value."""
    attribute: str
    forbidden_value: str
    message: str

    def blocks(self, bill: Dict) -> bool:
        return attribute_value(bill, self.attribute) == self.forbidden_value


@dataclass(frozen=True)
class TransitionRule:
    """One production of the rule table."""
    name: str
    from_roles: FrozenSet[str]
    to_roles: FrozenSet[str]
    action: str
    position: int
    state: str
    stamps: Tuple[Tuple[str, StampValue], ...] = ()
    constants: Tuple[Tuple[str, Any], ...] = ()
    guard: Optional[Guard] = None

    def matches(self, from_roles: FrozenSet[str], to_roles: FrozenSet[str], action: str) -> bool:
        return (
            self.action == action
            and not self.from_roles.isdisjoint(from_roles)
            and not self.to_roles.isdisjoint(to_roles)
        )

    def field_writes(self, now: datetime, recipient_name: str, remarks: str) -> Dict[str, Any]:
        sources = {
            StampValue.NOW: now.isoformat(),
            StampValue.RECIPIENT_NAME: recipient_name or "",
            StampValue.REMARKS: remarks,
        }
        writes = {path: sources[source] for path, source in self.stamps}
        writes.update(dict(self.constants))
        return writes


# =============================================================================
# OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class Applied:
    rule: TransitionRule
    field_writes: Dict[str, Any]
    history_entry: Dict[str, Any]
    new_position: int
    new_max_position: int
    state: str
    timestamp: str

    outcome = "applied"

    def to_update(self) -> Dict[str, Any]:
        """$set document for the bill. The high-water mark travels separately in `to_max_update()`."""
        update = dict(self.field_writes)
        update["position"] = self.new_position
        update["workflow_state.current_state"] = self.state
        update["workflow_state.last_updated"] = self.timestamp
        return update

    def to_max_update(self) -> Dict[str, Any]:
        """Fields that may only grow, sent as $max in the same update."""
        return {"max_position_reached": self.new_max_position}


@dataclass(frozen=True)
class Rejected:
    rule: TransitionRule
    reason: str

    outcome = "rejected"


@dataclass(frozen=True)
class NoRule:
    reason: str = NO_RULE_MESSAGE
    rule: Optional[TransitionRule] = field(default=None)

    outcome = "no_rule"


TransitionOutcome = Union[Applied, Rejected, NoRule]


# =============================================================================
# PRODUCTION HELPERS
# =============================================================================

def _roles(*roles: Role) -> FrozenSet[str]:
    return frozenset(r.value for r in roles)


def _given(block: str, name_field: str = "name") -> Tuple[Tuple[str, StampValue], ...]:
    return (
        (f"{block}.date_given", StampValue.NOW),
        (f"{block}.{name_field}", StampValue.RECIPIENT_NAME),
    )


def _forward(name, from_roles, to_roles, position, state, stamps=(), constants=(), guard=None):
    return TransitionRule(
        name=name,
        from_roles=from_roles,
        to_roles=to_roles,
        action=TransitionAction.FORWARD.value,
        position=position,
        state=state.value,
        stamps=tuple(stamps),
        constants=tuple(constants),
        guard=guard,
    )


def _backward(name, from_roles, to_roles, position, state):
    # Reverts only move the position; stamped dates stay as the audit trail
    return TransitionRule(
        name=name,
        from_roles=from_roles,
        to_roles=to_roles,
        action=TransitionAction.BACKWARD.value,
        position=position,
        state=state.value,
    )


SITE = _roles(Role.SITE_TEAM)
QS = _roles(Role.QS_TEAM)
REGIONAL = _roles(Role.REGIONAL_OFFICE)
OVERSIGHT = _roles(Role.OVERSIGHT_SURVEYOR)
COMMITTEE = _roles(Role.COMMITTEE)
ACCOUNTS = _roles(Role.ACCOUNTS_DEPARTMENT)

SERVICE_GUARD = Guard(
    attribute="nature_of_work",
    forbidden_value="Service",
    message="Service bill cannot be forwarded to Quality Inspector",
)

MATERIAL_GUARD = Guard(
    attribute="nature_of_work",
    forbidden_value="Material",
    message="Material bill cannot be forwarded to Site Architect",
)


# =============================================================================
# CANONICAL RULE TABLE
# =============================================================================

TRANSITION_RULES: Tuple[TransitionRule, ...] = (
    # ---- Site team fan-out (parallel sibling stages at level 1) ----
    _forward("site_to_quality_engineer", SITE, _roles(Role.QUALITY_ENGINEER), 1,
             WorkflowState.QUALITY_ENGINEER, _given("quality_engineer"), guard=SERVICE_GUARD),
    _forward("site_to_measurement_surveyor", SITE, _roles(Role.MEASUREMENT_SURVEYOR), 2,
             WorkflowState.MEASUREMENT_SURVEYOR, _given("measurement_check")),
    _forward("site_to_certification_surveyor", SITE, _roles(Role.CERTIFICATION_SURVEYOR), 2,
             WorkflowState.CERTIFICATION_SURVEYOR, _given("certification")),
    _forward("site_to_goods_receipt_entry", SITE, _roles(Role.GOODS_RECEIPT_ENTRY), 1,
             WorkflowState.GOODS_RECEIPT, _given("goods_receipt", name_field="done_by")),
    _forward("site_to_goods_receipt_return", SITE, _roles(Role.GOODS_RECEIPT_RETURN), 1,
             WorkflowState.SITE_TEAM, [("invoice_returned_to_site", StampValue.NOW)]),
    _forward("site_to_site_engineer", SITE, _roles(Role.SITE_ENGINEER), 1,
             WorkflowState.SITE_ENGINEER, _given("site_engineer")),
    _forward("site_to_architect", SITE, _roles(Role.SITE_ARCHITECT), 1,
             WorkflowState.SITE_ARCHITECT, _given("architect"), guard=MATERIAL_GUARD),
    _forward("site_to_site_incharge", SITE, _roles(Role.SITE_INCHARGE), 1,
             WorkflowState.SITE_INCHARGE, _given("site_incharge")),
    _forward("site_to_dispatch", SITE, _roles(Role.SITE_DISPATCH_TEAM), 1,
             WorkflowState.SITE_DISPATCH, _given("site_office_dispatch")),

    # ---- Site team -> regional office ----
    _forward("site_to_regional_office", SITE, REGIONAL, 2,
             WorkflowState.REGIONAL_OFFICE, _given("regional_office"),
             constants=[("site_status", SiteStatus.HOLD.value)]),

    # ---- Quantity surveyor returns ----
    _forward("qs_to_site_certification_return", QS, _roles(Role.SITE_CERTIFICATION_RETURN), 1,
             WorkflowState.SITE_TEAM, [("certification.date_returned", StampValue.NOW)]),
    _forward("qs_to_measurement_return", QS, _roles(Role.MEASUREMENT_RETURN), 1,
             WorkflowState.SITE_TEAM,
             _given("vendor_final_invoice") + (("measurement_check.date_returned", StampValue.NOW),)),
    _forward("qs_to_regional_certification_return", QS, _roles(Role.REGIONAL_CERTIFICATION_RETURN), 2,
             WorkflowState.REGIONAL_OFFICE,
             [("regional_office.date_returned_from_certification", StampValue.NOW)]),

    # ---- Regional office fan-out ----
    # Numbered on one monotone scale: oversight 3, its return 4, IT, settlement,
    # their returns and committee share 5, committee return 6, accounts 7.
    _forward("regional_to_oversight_surveyor", REGIONAL, OVERSIGHT, 3,
             WorkflowState.OVERSIGHT_SURVEYOR, _given("oversight_survey")),
    _forward("oversight_to_regional_office", OVERSIGHT, REGIONAL, 4,
             WorkflowState.REGIONAL_OFFICE,
             [("regional_office.date_returned_from_oversight", StampValue.NOW),
              ("regional_office.received_by", StampValue.RECIPIENT_NAME)]),
    _forward("regional_to_it_department", REGIONAL, _roles(Role.IT_DEPARTMENT), 5,
             WorkflowState.IT_DEPARTMENT, _given("it_dept")),
    _forward("regional_to_settlement_team", REGIONAL, _roles(Role.SETTLEMENT_TEAM), 5,
             WorkflowState.SETTLEMENT_TEAM, _given("settlement")),
    _forward("regional_to_it_return", REGIONAL, _roles(Role.IT_RETURN_TEAM), 5,
             WorkflowState.REGIONAL_OFFICE, [("regional_office.date_received_from_it", StampValue.NOW)]),
    _forward("regional_to_settlement_return", REGIONAL, _roles(Role.SETTLEMENT_RETURN_TEAM), 5,
             WorkflowState.REGIONAL_OFFICE,
             [("regional_office.date_returned_from_settlement", StampValue.NOW)]),
    _forward("regional_to_committee", REGIONAL, COMMITTEE, 5,
             WorkflowState.COMMITTEE,
             [("approval_details.committee_approval.date_given", StampValue.NOW)]),

    # ---- Committee -> regional office ----
    _forward("committee_to_regional_office", COMMITTEE, REGIONAL, 6,
             WorkflowState.REGIONAL_OFFICE,
             [("regional_office.date_returned_from_committee", StampValue.NOW),
              ("regional_office.received_by", StampValue.RECIPIENT_NAME),
              ("approval_details.regional_office_remarks", StampValue.REMARKS)]),

    # ---- Regional office -> accounts ----
    _forward("regional_to_accounts", REGIONAL, ACCOUNTS, 7,
             WorkflowState.ACCOUNTS_DEPARTMENT,
             [("accounts_dept.date_given", StampValue.NOW),
              ("accounts_dept.given_by", StampValue.RECIPIENT_NAME),
              ("accounts_dept.remarks", StampValue.REMARKS)]),

    # ---- Accounts -> booking / payment ----
    _forward("accounts_to_booking", ACCOUNTS, _roles(Role.BOOKING_TEAM), 8,
             WorkflowState.ACCOUNTS_DEPARTMENT,
             [("accounts_dept.inv_booking_checking", StampValue.NOW)]),
    _forward("accounts_to_payment", ACCOUNTS, _roles(Role.PAYMENT_TEAM), 8,
             WorkflowState.ACCOUNTS_DEPARTMENT,
             [("accounts_dept.payment_instructions", StampValue.NOW)]),

    # ---- Backward flow ----
    _backward("regional_back_to_site_incharge", REGIONAL, _roles(Role.SITE_INCHARGE), 1,
              WorkflowState.SITE_INCHARGE),
    _backward("regional_back_to_site", REGIONAL, SITE, 1, WorkflowState.SITE_TEAM),
    _backward("oversight_back_to_regional", OVERSIGHT, REGIONAL, 2, WorkflowState.REGIONAL_OFFICE),
    _backward("regional_back_to_oversight", REGIONAL, OVERSIGHT, 3, WorkflowState.OVERSIGHT_SURVEYOR),
    _backward("committee_back_to_regional", COMMITTEE, REGIONAL, 4, WorkflowState.REGIONAL_OFFICE),
    _backward("regional_back_to_committee", REGIONAL, COMMITTEE, 5, WorkflowState.COMMITTEE),
    _backward("accounts_back_to_regional", ACCOUNTS, REGIONAL, 6, WorkflowState.REGIONAL_OFFICE),
    _backward("payment_back_to_accounts", _roles(Role.BOOKING_TEAM, Role.PAYMENT_TEAM), ACCOUNTS, 7,
              WorkflowState.ACCOUNTS_DEPARTMENT),
    _backward("site_sibling_back_to_site", SITE_SIBLING_ROLES, SITE, 1, WorkflowState.SITE_TEAM),
)


# =============================================================================
# EVALUATION
# =============================================================================

def attribute_value(bill: Dict, path: str) -> Any:
    """Read a dotted attribute from a bill. Embedded master records yield their name."""
    value: Any = bill
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    if isinstance(value, dict):
        return value.get("name")
    return value


def current_max_position(bill: Dict) -> int:
    """High-water mark of a bill, falling back to its position for legacy records."""
    position = bill.get("position") or 1
    return max(bill.get("max_position_reached") or position, position)


def find_rule(
    from_roles: FrozenSet[str],
    to_roles: FrozenSet[str],
    action: str,
    rules: Iterable[TransitionRule] = TRANSITION_RULES
) -> Optional[TransitionRule]:
    """Return the first production matching the role sets and action."""
    for rule in rules:
        if rule.matches(from_roles, to_roles, action):
            return rule
    return None


def evaluate(
    bill: Dict,
    from_roles: Union[str, Iterable[str]],
    to_roles: Union[str, Iterable[str]],
    action: str,
    remarks: Optional[str],
    now: datetime,
    recipient_name: str = "",
    rules: Optional[Iterable[TransitionRule]] = None
) -> TransitionOutcome:
    """
    Decide the outcome of handing a bill from one role set to another.

    Args:
        bill: Bill snapshot; guards read nature_of_work as a resolved name
        from_roles: Roles held by the initiator (string or iterable)
        to_roles: Roles held by the recipient (string or iterable)
        action: "forward" or "backward"
        remarks: Free-text remarks attached to the hand-off
        now: Timestamp stamped onto the bill
        recipient_name: Display name written into the stamped sub-block
        rules: Rule table override; defaults to TRANSITION_RULES

    Returns:
        Applied, Rejected or NoRule
    """
    from_set = from_roles if isinstance(from_roles, frozenset) else normalize_roles(from_roles)
    to_set = to_roles if isinstance(to_roles, frozenset) else normalize_roles(to_roles)
    action_key = action.value if isinstance(action, TransitionAction) else action

    rule = find_rule(from_set, to_set, action_key, TRANSITION_RULES if rules is None else rules)
    if rule is None:
        return NoRule()

    if rule.guard is not None and rule.guard.blocks(bill):
        logger.info("Guard blocked rule %s for bill %s: %s", rule.name, bill.get("id"), rule.guard.message)
        return Rejected(rule=rule, reason=rule.guard.message)

    timestamp = now.isoformat()
    history_entry = {
        "state": rule.state,
        "timestamp": timestamp,
        "actor": recipient_name or "",
        "comments": remarks,
        "action": rule.action,
    }

    return Applied(
        rule=rule,
        field_writes=rule.field_writes(now, recipient_name, remarks),
        history_entry=history_entry,
        new_position=rule.position,
        new_max_position=max(current_max_position(bill), rule.position),
        state=rule.state,
        timestamp=timestamp,
    )
