"""
Bill Workflow Hub - Workflow Configuration

Single home for the role vocabulary, named workflow states, role aliases,
role levels and runtime settings used by the workflow engine.

The configuration is built once at process start with load_workflow_config()
and handed to the WorkflowEngine explicitly.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Tuple, Union


# =============================================================================
# ROLES
# =============================================================================

class Role(str, Enum):
    """Organizational roles a bill can be handed between."""
    # Site stage
    SITE_TEAM = "site_team"
    QUALITY_ENGINEER = "quality_engineer"
    MEASUREMENT_SURVEYOR = "measurement_surveyor"
    CERTIFICATION_SURVEYOR = "certification_surveyor"
    SITE_DISPATCH_TEAM = "site_dispatch_team"
    SITE_ARCHITECT = "site_architect"
    SITE_INCHARGE = "site_incharge"
    SITE_ENGINEER = "site_engineer"
    GOODS_RECEIPT_ENTRY = "goods_receipt_entry"
    GOODS_RECEIPT_RETURN = "goods_receipt_return"

    # Quantity surveyor returns
    QS_TEAM = "qs_team"
    SITE_CERTIFICATION_RETURN = "site_certification_return"
    MEASUREMENT_RETURN = "measurement_return"
    REGIONAL_CERTIFICATION_RETURN = "regional_certification_return"

    # Regional finance office and its satellites
    REGIONAL_OFFICE = "regional_office"
    OVERSIGHT_SURVEYOR = "oversight_surveyor"
    IT_DEPARTMENT = "it_department"
    SETTLEMENT_TEAM = "settlement_team"
    IT_RETURN_TEAM = "it_return_team"
    SETTLEMENT_RETURN_TEAM = "settlement_return_team"
    COMMITTEE = "committee"

    # Accounts
    ACCOUNTS_DEPARTMENT = "accounts_department"
    BOOKING_TEAM = "booking_team"
    PAYMENT_TEAM = "payment_team"


SITE_SIBLING_ROLES = frozenset({
    Role.QUALITY_ENGINEER.value,
    Role.MEASUREMENT_SURVEYOR.value,
    Role.CERTIFICATION_SURVEYOR.value,
    Role.SITE_DISPATCH_TEAM.value,
    Role.SITE_ARCHITECT.value,
    Role.SITE_INCHARGE.value,
    Role.SITE_ENGINEER.value,
    Role.GOODS_RECEIPT_ENTRY.value,
})


# Role spellings used by older clients -> canonical role
ROLE_ALIASES: Dict[str, str] = {
    "site_officer": Role.SITE_TEAM.value,
    "quality_inspector": Role.QUALITY_ENGINEER.value,
    "qs_measurement": Role.MEASUREMENT_SURVEYOR.value,
    "qs_cop": Role.CERTIFICATION_SURVEYOR.value,
    "architect": Role.SITE_ARCHITECT.value,
    "migo_entry": Role.GOODS_RECEIPT_ENTRY.value,
    "migo_entry_return": Role.GOODS_RECEIPT_RETURN.value,
    "site_cop": Role.SITE_CERTIFICATION_RETURN.value,
    "measure": Role.MEASUREMENT_RETURN.value,
    "pimo_cop": Role.REGIONAL_CERTIFICATION_RETURN.value,
    "pimo_mumbai": Role.REGIONAL_OFFICE.value,
    "qs_mumbai": Role.OVERSIGHT_SURVEYOR.value,
    "it_team": Role.IT_DEPARTMENT.value,
    "it_office_mumbai": Role.IT_DEPARTMENT.value,
    "ses_team": Role.SETTLEMENT_TEAM.value,
    "ses_return_team": Role.SETTLEMENT_RETURN_TEAM.value,
    "trustee": Role.COMMITTEE.value,
    "trustees": Role.COMMITTEE.value,
    "accounts": Role.ACCOUNTS_DEPARTMENT.value,
    "booking_checking": Role.BOOKING_TEAM.value,
}


# =============================================================================
# STATES & STATUSES
# =============================================================================

class WorkflowState(str, Enum):
    """Named workflow states shown on the bill summary."""
    UNASSIGNED = "Unassigned"
    SITE_TEAM = "Site_Team"
    QUALITY_ENGINEER = "Quality_Engineer"
    MEASUREMENT_SURVEYOR = "Measurement_Surveyor"
    CERTIFICATION_SURVEYOR = "Certification_Surveyor"
    SITE_DISPATCH = "Site_Dispatch"
    SITE_ARCHITECT = "Site_Architect"
    SITE_INCHARGE = "Site_Incharge"
    SITE_ENGINEER = "Site_Engineer"
    GOODS_RECEIPT = "Goods_Receipt"
    REGIONAL_OFFICE = "Regional_Office"
    OVERSIGHT_SURVEYOR = "Oversight_Surveyor"
    IT_DEPARTMENT = "IT_Department"
    SETTLEMENT_TEAM = "Settlement_Team"
    COMMITTEE = "Committee"
    ACCOUNTS_DEPARTMENT = "Accounts_Department"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class SiteStatus(str, Enum):
    """Site-level disposition of a bill."""
    HOLD = "hold"
    ACCEPT = "accept"
    PROFORMA = "proforma"
    REJECT = "reject"


class TransitionAction(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


TERMINAL_STATES: FrozenSet[str] = frozenset({
    WorkflowState.COMPLETED.value,
    WorkflowState.REJECTED.value,
})


# Highest position a role works at. Bills beyond it have left that role.
ROLE_LEVELS: Dict[str, int] = {
    Role.SITE_TEAM.value: 1,
    Role.QUALITY_ENGINEER.value: 1,
    Role.SITE_DISPATCH_TEAM.value: 1,
    Role.SITE_ARCHITECT.value: 1,
    Role.SITE_INCHARGE.value: 1,
    Role.SITE_ENGINEER.value: 1,
    Role.GOODS_RECEIPT_ENTRY.value: 1,
    Role.MEASUREMENT_SURVEYOR.value: 2,
    Role.CERTIFICATION_SURVEYOR.value: 2,
    Role.QS_TEAM.value: 2,
    Role.REGIONAL_OFFICE.value: 2,
    Role.OVERSIGHT_SURVEYOR.value: 3,
    Role.IT_DEPARTMENT.value: 5,
    Role.SETTLEMENT_TEAM.value: 5,
    Role.COMMITTEE.value: 5,
    Role.ACCOUNTS_DEPARTMENT.value: 7,
    Role.BOOKING_TEAM.value: 8,
    Role.PAYMENT_TEAM.value: 8,
}


# =============================================================================
# RUNTIME CONFIGURATION
# =============================================================================

DEFAULT_STUCK_THRESHOLD_DAYS = 7


def _default_rules() -> Tuple:
    # Imported here so the rule table can use the role/state enums above
    from .transition_rules import TRANSITION_RULES
    return TRANSITION_RULES


@dataclass(frozen=True)
class WorkflowConfig:
    """Immutable workflow configuration passed into the engine."""
    rules: Tuple = field(default_factory=_default_rules)
    role_aliases: Dict[str, str] = field(default_factory=lambda: dict(ROLE_ALIASES))
    role_levels: Dict[str, int] = field(default_factory=lambda: dict(ROLE_LEVELS))
    terminal_states: FrozenSet[str] = TERMINAL_STATES
    stuck_threshold_days: int = DEFAULT_STUCK_THRESHOLD_DAYS
    recent_activity_limit: int = 10
    stuck_examples_per_state: int = 5

    def normalize_roles(self, roles: Union[str, Iterable[str], None]) -> FrozenSet[str]:
        """Turn a role string or list into a set of canonical role names."""
        return normalize_roles(roles, self.role_aliases)

    def level_for(self, role: str) -> Optional[int]:
        canonical = self.role_aliases.get(role, role)
        return self.role_levels.get(canonical)

    def is_terminal(self, state: Optional[str]) -> bool:
        return state in self.terminal_states


def normalize_roles(
    roles: Union[str, Iterable[str], None],
    aliases: Optional[Dict[str, str]] = None
) -> FrozenSet[str]:
    """Normalize a role string or list of role strings into a frozenset."""
    aliases = ROLE_ALIASES if aliases is None else aliases
    if roles is None:
        return frozenset()
    if isinstance(roles, (str, Role)):
        roles = [roles]

    normalized = set()
    for role in roles:
        if role is None:
            continue
        value = role.value if isinstance(role, Role) else str(role).strip()
        if value:
            normalized.add(aliases.get(value, value))
    return frozenset(normalized)


def load_workflow_config() -> WorkflowConfig:
    """
    Build the workflow configuration from the canonical rule table and the
    environment. Called once at startup.
    """
    threshold = int(os.environ.get("STUCK_BILL_THRESHOLD_DAYS", DEFAULT_STUCK_THRESHOLD_DAYS))
    return WorkflowConfig(
        rules=_default_rules(),
        stuck_threshold_days=threshold,
    )
