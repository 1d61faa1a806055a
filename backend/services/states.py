"""
Dialogue states for one call and the transitions allowed between them.
Slot states are visited in a fixed order; each one gates entry to the next.
"""

from enum import Enum


class DialogueState(Enum):
    AWAIT_EMERGENCY = "await_emergency"
    AWAIT_LOCATION = "await_location"
    AWAIT_NAME = "await_name"
    AWAIT_NUMBER = "await_number"
    FOLLOWUP = "followup"
    TERMINATED = "terminated"

    @property
    def slot(self) -> str | None:
        """Session attribute this state collects, or None outside slot-filling."""
        return SLOT_FOR_STATE.get(self)

    @property
    def is_terminal(self) -> bool:
        return self is DialogueState.TERMINATED


SLOT_FOR_STATE = {
    DialogueState.AWAIT_EMERGENCY: "emergency",
    DialogueState.AWAIT_LOCATION: "location",
    DialogueState.AWAIT_NAME: "name",
    DialogueState.AWAIT_NUMBER: "number",
}

# FOLLOWUP loops on itself through followup_count; TERMINATED is reachable from
# every live state because a hang-up can be forced at any point.
TRANSITIONS = {
    DialogueState.AWAIT_EMERGENCY: {DialogueState.AWAIT_LOCATION, DialogueState.TERMINATED},
    DialogueState.AWAIT_LOCATION: {DialogueState.AWAIT_NAME, DialogueState.TERMINATED},
    DialogueState.AWAIT_NAME: {DialogueState.AWAIT_NUMBER, DialogueState.TERMINATED},
    DialogueState.AWAIT_NUMBER: {DialogueState.FOLLOWUP, DialogueState.TERMINATED},
    DialogueState.FOLLOWUP: {DialogueState.TERMINATED},
    DialogueState.TERMINATED: set(),
}

SLOT_ORDER = ("emergency", "location", "name", "number")
