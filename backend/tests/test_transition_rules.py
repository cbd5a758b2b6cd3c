"""
Unit tests for the bill transition rule table.
Tests the pure rule evaluation in services/transition_rules.py
"""
import pytest
from datetime import datetime, timezone

from services.transition_rules import (
    TRANSITION_RULES,
    NO_RULE_MESSAGE,
    Applied,
    NoRule,
    Rejected,
    attribute_value,
    current_max_position,
    evaluate,
    find_rule,
)
from services.workflow_config import (
    Role,
    WorkflowConfig,
    WorkflowState,
    normalize_roles,
)


NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def bill(**overrides):
    base = {"id": "bill-1", "position": 1, "max_position_reached": 1, "nature_of_work": "Civil"}
    base.update(overrides)
    return base


class TestRuleTable:
    """Test the shape of the canonical rule table."""

    def test_rule_names_are_unique(self):
        names = [r.name for r in TRANSITION_RULES]
        assert len(names) == len(set(names))

    def test_positions_within_levels(self):
        for rule in TRANSITION_RULES:
            assert 1 <= rule.position <= 8, rule.name

    def test_backward_rules_write_no_fields(self):
        """Reverts only move the position."""
        for rule in TRANSITION_RULES:
            if rule.action == "backward":
                assert rule.stamps == ()
                assert rule.constants == ()

    def test_first_match_wins(self):
        rule = find_rule(frozenset({"site_team"}), frozenset({"quality_engineer"}), "forward")
        assert rule.name == "site_to_quality_engineer"

    def test_action_is_part_of_the_key(self):
        """The same role pair with another action does not match."""
        assert find_rule(frozenset({"site_team"}), frozenset({"regional_office"}), "backward") is None
        assert find_rule(frozenset({"regional_office"}), frozenset({"site_team"}), "forward") is None

    @pytest.mark.parametrize("target,position", [
        (Role.OVERSIGHT_SURVEYOR, 3),
        (Role.IT_DEPARTMENT, 5),
        (Role.SETTLEMENT_TEAM, 5),
        (Role.IT_RETURN_TEAM, 5),
        (Role.SETTLEMENT_RETURN_TEAM, 5),
        (Role.COMMITTEE, 5),
        (Role.ACCOUNTS_DEPARTMENT, 7),
    ])
    def test_regional_fan_out_positions(self, target, position):
        rule = find_rule(frozenset({"regional_office"}), frozenset({target.value}), "forward")
        assert rule.position == position


class TestEvaluate:
    """Test evaluation outcomes."""

    def test_site_to_regional_office(self):
        outcome = evaluate(bill(), "site_team", "regional_office", "forward", "sent", NOW, "Regional Officer")

        assert isinstance(outcome, Applied)
        assert outcome.rule.name == "site_to_regional_office"
        assert outcome.new_position == 2
        assert outcome.new_max_position == 2
        assert outcome.state == WorkflowState.REGIONAL_OFFICE.value
        assert outcome.field_writes == {
            "regional_office.date_given": NOW.isoformat(),
            "regional_office.name": "Regional Officer",
            "site_status": "hold",
        }

    def test_to_update_includes_workflow_fields(self):
        outcome = evaluate(bill(), "site_team", "regional_office", "forward", None, NOW, "RO")
        update = outcome.to_update()

        assert update["position"] == 2
        assert "max_position_reached" not in update
        assert outcome.to_max_update() == {"max_position_reached": 2}
        assert update["workflow_state.current_state"] == "Regional_Office"
        assert update["workflow_state.last_updated"] == NOW.isoformat()
        assert "workflow_state.history" not in update

    def test_history_entry_shape(self):
        outcome = evaluate(bill(), "site_team", "site_engineer", "forward", "check this", NOW, "Engineer")
        assert outcome.history_entry == {
            "state": "Site_Engineer",
            "timestamp": NOW.isoformat(),
            "actor": "Engineer",
            "comments": "check this",
            "action": "forward",
        }

    def test_remarks_are_stamped(self):
        outcome = evaluate(bill(position=5), "committee", "regional_office", "forward", "approved", NOW, "RO")
        assert outcome.field_writes["approval_details.regional_office_remarks"] == "approved"
        assert outcome.field_writes["regional_office.received_by"] == "RO"
        assert outcome.new_position == 6

    def test_aliases_are_normalized(self):
        outcome = evaluate(bill(), "site_officer", "quality_inspector", "forward", None, NOW, "QE")
        assert isinstance(outcome, Applied)
        assert outcome.rule.name == "site_to_quality_engineer"

    def test_multi_role_actor(self):
        outcome = evaluate(bill(), ["qs_team", "site_team"], ["regional_office"], "forward", None, NOW)
        assert outcome.rule.name == "site_to_regional_office"

    def test_no_rule(self):
        outcome = evaluate(bill(), "site_team", "payment_team", "forward", None, NOW)
        assert isinstance(outcome, NoRule)
        assert outcome.reason == NO_RULE_MESSAGE
        assert outcome.rule is None

    def test_service_bill_blocked_from_quality_engineer(self):
        outcome = evaluate(bill(nature_of_work="Service"), "site_team", "quality_engineer", "forward", None, NOW)
        assert isinstance(outcome, Rejected)
        assert outcome.reason == "Service bill cannot be forwarded to Quality Inspector"

    def test_material_bill_blocked_from_architect(self):
        outcome = evaluate(bill(nature_of_work="Material"), "site_team", "site_architect", "forward", None, NOW)
        assert isinstance(outcome, Rejected)
        assert outcome.reason == "Material bill cannot be forwarded to Site Architect"

    @pytest.mark.parametrize("nature", ["Civil", "Service", None])
    def test_other_natures_reach_architect(self, nature):
        outcome = evaluate(bill(nature_of_work=nature), "site_team", "architect", "forward", None, NOW)
        assert isinstance(outcome, Applied)

    def test_embedded_nature_of_work(self):
        b = bill(nature_of_work={"id": "now-1", "name": "Service"})
        outcome = evaluate(b, "site_team", "quality_engineer", "forward", None, NOW)
        assert isinstance(outcome, Rejected)

    def test_max_position_never_decreases(self):
        outcome = evaluate(bill(position=7, max_position_reached=7), "regional_office", "oversight_surveyor",
                           "forward", None, NOW)
        assert outcome.new_position == 3
        assert outcome.new_max_position == 7

    def test_backward_keeps_max_position(self):
        outcome = evaluate(bill(position=4, max_position_reached=4), "regional_office", "site_team",
                           "backward", None, NOW)
        assert outcome.new_position == 1
        assert outcome.new_max_position == 4
        assert outcome.field_writes == {}

    def test_custom_rule_table(self):
        outcome = evaluate(bill(), "site_team", "regional_office", "forward", None, NOW, rules=())
        assert isinstance(outcome, NoRule)


class TestHelpers:

    def test_attribute_value_dotted(self):
        assert attribute_value({"a": {"b": "x"}}, "a.b") == "x"
        assert attribute_value({"a": None}, "a.b") is None

    def test_current_max_position_legacy(self):
        assert current_max_position({"position": 3}) == 3
        assert current_max_position({"position": 2, "max_position_reached": 5}) == 5
        assert current_max_position({}) == 1

    def test_normalize_roles(self):
        assert normalize_roles(None) == frozenset()
        assert normalize_roles(" accounts ") == frozenset({"accounts_department"})
        assert normalize_roles(["trustees", Role.QS_TEAM, ""]) == frozenset({"committee", "qs_team"})

    def test_config_levels(self):
        config = WorkflowConfig()
        assert config.level_for("site_officer") == 1
        assert config.level_for("accounts") == 7
        assert config.level_for("nobody") is None
        assert config.is_terminal("Completed")
        assert not config.is_terminal("Regional_Office")
        assert config.rules == TRANSITION_RULES
