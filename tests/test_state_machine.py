import itertools

import pytest
from engage.services.state_machine import (
    DEFAULT_MODE,
    AutomationMode,
    ModeScope,
    accepted_mode_values,
    give_back_refusal,
    parse_mode,
    resolve_mode,
    take_over,
)


class TestParseMode:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("AUTONOMOUS", AutomationMode.AUTONOMOUS),
            ("ia_auto", AutomationMode.AUTONOMOUS),
            (" Auto ", AutomationMode.AUTONOMOUS),
            ("COPILOTO", AutomationMode.ASSISTED),
            ("suggest", AutomationMode.ASSISTED),
            ("HUMANO", AutomationMode.MANUAL),
            ("off", AutomationMode.MANUAL),
        ],
    )
    def test_synonyms(self, raw, expected):
        assert parse_mode(raw) == expected

    def test_unknown_values(self):
        assert parse_mode("TURBO") is None
        assert parse_mode("") is None
        assert parse_mode(None) is None
        assert parse_mode(3) is None

    def test_accepted_values_lists_synonyms(self):
        values = accepted_mode_values()
        assert "IA_AUTO" in values
        assert "MANUAL" in values
        assert values == sorted(values)


class TestResolveMode:
    LEVELS = [None, "MANUAL", "ASSISTED", "AUTONOMOUS"]

    def test_precedence_for_every_combination(self):
        for ticket, queue, tenant in itertools.product(self.LEVELS, repeat=3):
            mode, scope = resolve_mode(ticket, queue, tenant)
            if ticket:
                assert (mode.value, scope) == (ticket, ModeScope.TICKET)
            elif queue:
                assert (mode.value, scope) == (queue, ModeScope.QUEUE)
            elif tenant:
                assert (mode.value, scope) == (tenant, ModeScope.TENANT)
            else:
                assert (mode, scope) == (AutomationMode.ASSISTED, ModeScope.DEFAULT)

    def test_compiled_default_is_assisted(self):
        assert DEFAULT_MODE == AutomationMode.ASSISTED

    def test_unrecognised_stored_value_falls_through(self):
        mode, scope = resolve_mode("BROKEN", None, "IA_AUTO")
        assert mode == AutomationMode.AUTONOMOUS
        assert scope == ModeScope.TENANT


class TestAgentTransitions:
    def test_take_over_forces_manual(self):
        assert take_over() == AutomationMode.MANUAL

    def test_give_back_without_confidence_is_refused(self):
        assert give_back_refusal(None, 0.7) == "no_confidence"

    def test_give_back_below_threshold_is_refused(self):
        assert give_back_refusal(0.69, 0.7) == "low_confidence"

    def test_give_back_at_threshold_is_allowed(self):
        assert give_back_refusal(0.7, 0.7) is None
        assert give_back_refusal(0.95, 0.7) is None
