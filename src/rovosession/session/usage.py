"""Latest status, usage and saved-prompt snapshots for a session."""

from __future__ import annotations

from rovosession.events.models import (
    Event,
    PromptsEvent,
    SavedPrompt,
    StatusEvent,
    StatusSnapshot,
    UsageEvent,
    UsageSnapshot,
)


class UsageAndStatusTracker:
    """Keeps the most recent snapshot of each kind.

    Every snapshot event replaces the previous one wholesale. Nothing is
    merged and no history is kept.
    """

    def __init__(self) -> None:
        self.status: StatusSnapshot | None = None
        self.usage: UsageSnapshot | None = None
        self.prompts: list[SavedPrompt] = []

    def update(self, event: Event) -> bool:
        """Apply a snapshot event. Returns False for any other event."""
        if isinstance(event, StatusEvent):
            self.status = event.data
        elif isinstance(event, UsageEvent):
            self.usage = event.data.content
        elif isinstance(event, PromptsEvent):
            self.prompts = list(event.data.prompts)
        else:
            return False
        return True

    def reset(self) -> None:
        self.status = None
        self.usage = None
        self.prompts = []
