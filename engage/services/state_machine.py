from enum import Enum
from typing import Optional


class AutomationMode(str, Enum):
    MANUAL = "MANUAL"
    ASSISTED = "ASSISTED"
    AUTONOMOUS = "AUTONOMOUS"


DEFAULT_MODE = AutomationMode.ASSISTED

# Legacy names still sent by older dashboards and stored in older config rows.
MODE_SYNONYMS = {
    "AUTONOMOUS": AutomationMode.AUTONOMOUS,
    "AUTO": AutomationMode.AUTONOMOUS,
    "IA_AUTO": AutomationMode.AUTONOMOUS,
    "ASSISTED": AutomationMode.ASSISTED,
    "ASSIST": AutomationMode.ASSISTED,
    "COPILOT": AutomationMode.ASSISTED,
    "COPILOTO": AutomationMode.ASSISTED,
    "SUGGEST": AutomationMode.ASSISTED,
    "MANUAL": AutomationMode.MANUAL,
    "HUMAN": AutomationMode.MANUAL,
    "HUMANO": AutomationMode.MANUAL,
    "OFF": AutomationMode.MANUAL,
}


class ModeScope(str, Enum):
    TICKET = "ticket"
    QUEUE = "queue"
    TENANT = "tenant"
    DEFAULT = "default"


def accepted_mode_values() -> list[str]:
    return sorted(MODE_SYNONYMS)


def parse_mode(value: object) -> Optional[AutomationMode]:
    """Map a mode name or synonym to AutomationMode. Returns None if unknown."""
    if isinstance(value, AutomationMode):
        return value
    if not isinstance(value, str):
        return None
    return MODE_SYNONYMS.get(value.strip().upper())


def resolve_mode(
    ticket_mode: Optional[str],
    queue_mode: Optional[str],
    tenant_mode: Optional[str],
) -> tuple[AutomationMode, ModeScope]:
    """Pick the effective mode: ticket > queue > tenant > compiled default.

    Unrecognised stored values are skipped rather than trusted.
    """
    for raw, scope in (
        (ticket_mode, ModeScope.TICKET),
        (queue_mode, ModeScope.QUEUE),
        (tenant_mode, ModeScope.TENANT),
    ):
        mode = parse_mode(raw)
        if mode is not None:
            return mode, scope
    return DEFAULT_MODE, ModeScope.DEFAULT


def take_over() -> AutomationMode:
    """Agent takes the conversation: the ticket override becomes MANUAL."""
    return AutomationMode.MANUAL


def give_back_refusal(confidence: Optional[float], threshold: float) -> Optional[str]:
    """Return the refusal code for handing a ticket back to automation, or None if allowed."""
    if confidence is None:
        return "no_confidence"
    if confidence < threshold:
        return "low_confidence"
    return None
