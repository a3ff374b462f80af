"""Tool call correlation and permission gating.

The agent announces each tool call, may then pause on a batch
(``on_call_tools_start``) until the user allows or denies the calls whose
scenario is ``ASK``, and finally reports a result (``tool-return``) or a
retry (``retry-prompt``). ToolCallCoordinator keeps one record per call id
and walks it through::

    awaiting-result ──▶ completed
          │
          └─(batch)─▶ pending-permission ──▶ allowed ──▶ awaiting-result ──▶ completed
                              │
                              └──▶ denied

Any open record can become ``abandoned`` on cancellation, and ``retried``
when the agent rejects its outcome.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rovosession.events.models import (
    PermissionScenario,
    RetryPromptEvent,
    ToolCallEvent,
    ToolCallsStartEvent,
    ToolReturnEvent,
)
from rovosession.logging import get_logger
from rovosession.session.protocols import AnomalyKind, ProtocolAnomaly, ToolDecision

log = get_logger("session.tools")


class ToolCallStatus(str, Enum):
    PENDING_PERMISSION = "pending-permission"
    ALLOWED = "allowed"
    DENIED = "denied"
    AWAITING_RESULT = "awaiting-result"
    COMPLETED = "completed"
    RETRIED = "retried"
    ABANDONED = "abandoned"


OPEN_STATUSES = frozenset(
    {ToolCallStatus.PENDING_PERMISSION, ToolCallStatus.ALLOWED, ToolCallStatus.AWAITING_RESULT}
)


class PermissionChoice(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass
class UnknownToolCallError(Exception):
    """Raised when a decision names a call id the session has never seen."""

    call_id: str

    def __str__(self) -> str:
        return f"Received an unexpected tool confirmation: not found ({self.call_id})."


@dataclass
class ToolCallAlreadyDecidedError(Exception):
    """Raised when a decision targets a call that is not pending permission."""

    call_id: str
    status: ToolCallStatus

    def __str__(self) -> str:
        return (
            f"Received an unexpected tool confirmation: already confirmed "
            f"({self.call_id} is {self.status.value})."
        )


@dataclass(frozen=True, slots=True)
class ToolResult:
    content: str | None = None
    parsed_content: dict[str, Any] | None = None  # Only when content is a JSON object
    timestamp: str = ""


@dataclass
class ToolCallRecord:
    """State of one tool call. Owned and mutated only by the coordinator."""

    call_id: str
    tool_name: str
    args: str = ""
    mcp_server_name: str | None = None
    status: ToolCallStatus = ToolCallStatus.AWAITING_RESULT
    scenario: PermissionScenario | None = None  # Set once a batch declares gating
    choice: PermissionChoice | None = None
    result: ToolResult | None = None
    retry_content: str | None = None
    batch_id: int | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def parsed_args(self) -> dict[str, Any]:
        """Arguments as a dict, or empty when they are not a JSON object."""
        try:
            value = json.loads(self.args) if self.args else {}
        except ValueError:
            return {}
        return value if isinstance(value, dict) else {}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "args": self.args,
            "status": self.status.value,
        }
        if self.mcp_server_name:
            data["mcp_server"] = self.mcp_server_name
        if self.scenario is not None:
            data["scenario"] = self.scenario.value
        if self.choice is not None:
            data["choice"] = self.choice.value
        if self.result is not None:
            data["result"] = {
                "content": self.result.content,
                "parsed_content": self.result.parsed_content,
                "timestamp": self.result.timestamp,
            }
        if self.retry_content is not None:
            data["retry_content"] = self.retry_content
        return data


@dataclass
class ToolStep:
    """What one coordinator input changed."""

    changed: list[ToolCallRecord] = field(default_factory=list)
    anomalies: list[ProtocolAnomaly] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class BatchDecision:
    """The user's choices for every ``ASK`` call of a batch."""

    batch_id: int
    choices: dict[str, PermissionChoice]

    def to_tool_decisions(self, deny_message: str) -> list[ToolDecision]:
        return [
            ToolDecision(call_id, None if choice == PermissionChoice.ALLOW else deny_message)
            for call_id, choice in self.choices.items()
        ]


@dataclass
class BatchOutcome(ToolStep):
    """Result of gating a batch.

    ``pending`` lists calls waiting for the user. ``denied`` lists calls
    the agent's own policy refused. ``decision`` is set when the batch was
    fully decided on arrival (yolo mode).
    """

    batch_id: int = 0
    pending: list[str] = field(default_factory=list)
    denied: list[str] = field(default_factory=list)
    decision: BatchDecision | None = None

    @property
    def needs_decision(self) -> bool:
        return bool(self.pending)


class ToolCallCoordinator:
    """Correlates tool calls with permission decisions and results.

    Example:
        coordinator = ToolCallCoordinator()
        coordinator.on_tool_call(call)
        outcome = coordinator.on_tools_start(batch)
        if outcome.needs_decision:
            decision = coordinator.decide(call.tool_call_id, PermissionChoice.ALLOW)
    """

    def __init__(self, yolo_mode: bool = False) -> None:
        self.yolo_mode = yolo_mode
        self._records: dict[str, ToolCallRecord] = {}
        self._waiters: dict[str, asyncio.Future[PermissionChoice]] = {}
        self._next_batch_id = 1

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def records(self) -> list[ToolCallRecord]:
        """All records in the order their calls first appeared."""
        return list(self._records.values())

    @property
    def has_open_calls(self) -> bool:
        return any(record.is_open for record in self._records.values())

    def get(self, call_id: str) -> ToolCallRecord | None:
        return self._records.get(call_id)

    def pending_permission(self) -> list[ToolCallRecord]:
        return [r for r in self._records.values() if r.status == ToolCallStatus.PENDING_PERMISSION]

    def batch_settled(self, batch_id: int | None) -> bool:
        """True when every call of the batch has reached a final status."""
        if batch_id is None:
            return False
        batch = [r for r in self._records.values() if r.batch_id == batch_id]
        return bool(batch) and not any(r.is_open for r in batch)

    # -------------------------------------------------------------------------
    # Agent events
    # -------------------------------------------------------------------------

    def on_tool_call(self, event: ToolCallEvent) -> ToolStep:
        """Register a call. Its status is awaiting-result until a batch gates it."""
        if event.tool_call_id in self._records:
            return ToolStep(
                anomalies=[
                    _anomaly(
                        AnomalyKind.DUPLICATE_TOOL_CALL,
                        f"Tool call {event.tool_call_id} was already announced",
                        event.event_kind,
                        event.tool_call_id,
                    )
                ]
            )
        record = self._create(event)
        log.debug("Tool call %s (%s)", record.call_id, record.tool_name)
        return ToolStep(changed=[record])

    def on_tools_start(self, event: ToolCallsStartEvent) -> BatchOutcome:
        """Apply the agent's permission scenarios to a batch of calls."""
        outcome = BatchOutcome(batch_id=self._next_batch_id)
        self._next_batch_id += 1

        for tool in event.tools:
            record = self._records.get(tool.tool_call_id)
            if record is None:
                record = self._create(tool)
            elif record.batch_id is not None or record.status != ToolCallStatus.AWAITING_RESULT:
                outcome.anomalies.append(
                    _anomaly(
                        AnomalyKind.DUPLICATE_TOOL_CALL,
                        f"Tool call {record.call_id} is already {record.status.value}",
                        event.event_kind,
                        record.call_id,
                    )
                )
                continue

            record.batch_id = outcome.batch_id
            record.scenario = self._resolve_scenario(event, record)

            if record.scenario == PermissionScenario.ALLOWED:
                record.status = ToolCallStatus.AWAITING_RESULT
            elif record.scenario == PermissionScenario.DENIED:
                record.status = ToolCallStatus.DENIED
                outcome.denied.append(record.call_id)
                log.info("Tool call %s (%s) denied by agent policy", record.call_id, record.tool_name)
            elif self.yolo_mode:
                record.choice = PermissionChoice.ALLOW
                record.status = ToolCallStatus.ALLOWED
            else:
                record.status = ToolCallStatus.PENDING_PERMISSION
                outcome.pending.append(record.call_id)
            outcome.changed.append(record)

        if not outcome.pending:
            outcome.decision = self._complete_batch(outcome.batch_id)
        return outcome

    def on_tool_return(self, event: ToolReturnEvent) -> ToolStep:
        record = self._records.get(event.tool_call_id)
        if record is None:
            return ToolStep(
                anomalies=[
                    _anomaly(
                        AnomalyKind.UNKNOWN_TOOL_CALL,
                        f"Result for unknown tool call {event.tool_call_id}",
                        event.event_kind,
                        event.tool_call_id,
                    )
                ]
            )

        result = ToolResult(
            content=event.content,
            parsed_content=event.parsed_content,
            timestamp=event.timestamp,
        )
        if record.status in (ToolCallStatus.AWAITING_RESULT, ToolCallStatus.ALLOWED):
            record.status = ToolCallStatus.COMPLETED
            record.result = result
            return ToolStep(changed=[record])
        if record.status in (ToolCallStatus.DENIED, ToolCallStatus.ABANDONED):
            # Late result; kept for display, status is final
            record.result = result
            return ToolStep(changed=[record])

        return ToolStep(
            anomalies=[
                _anomaly(
                    AnomalyKind.UNEXPECTED_TOOL_RETURN,
                    f"Result for tool call {record.call_id} while {record.status.value}",
                    event.event_kind,
                    record.call_id,
                )
            ]
        )

    def on_retry_prompt(self, event: RetryPromptEvent) -> ToolStep:
        record = self._records.get(event.tool_call_id)
        if record is None:
            return ToolStep(
                anomalies=[
                    _anomaly(
                        AnomalyKind.UNKNOWN_TOOL_CALL,
                        f"Retry for unknown tool call {event.tool_call_id}",
                        event.event_kind,
                        event.tool_call_id,
                    )
                ]
            )
        record.retry_content = event.content
        if record.status != ToolCallStatus.ABANDONED:
            record.status = ToolCallStatus.RETRIED
        self._cancel_waiter(record.call_id)
        return ToolStep(changed=[record])

    # -------------------------------------------------------------------------
    # User decisions
    # -------------------------------------------------------------------------

    def decide(self, call_id: str, choice: PermissionChoice) -> BatchDecision | None:
        """Record the user's choice for one call.

        Returns:
            The batch's full decision once every ASK call in it is decided,
            otherwise None.

        Raises:
            UnknownToolCallError: No record for call_id.
            ToolCallAlreadyDecidedError: The call is not pending permission.
        """
        record = self._records.get(call_id)
        if record is None:
            raise UnknownToolCallError(call_id)
        if record.status != ToolCallStatus.PENDING_PERMISSION:
            raise ToolCallAlreadyDecidedError(call_id, record.status)

        choice = PermissionChoice(choice)
        record.choice = choice
        record.status = ToolCallStatus.ALLOWED if choice == PermissionChoice.ALLOW else ToolCallStatus.DENIED
        log.debug("Tool call %s: %s", call_id, choice.value)

        waiter = self._waiters.pop(call_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(choice)

        if record.batch_id is None:
            raise RuntimeError(f"Tool call {call_id} is pending permission outside a batch")
        return self._complete_batch(record.batch_id)

    def decide_all(self, choice: PermissionChoice) -> list[BatchDecision]:
        """Apply one choice to every call still pending permission."""
        decisions: list[BatchDecision] = []
        for record in self.pending_permission():
            decision = self.decide(record.call_id, choice)
            if decision is not None:
                decisions.append(decision)
        return decisions

    async def wait_for_decision(self, call_id: str) -> PermissionChoice:
        """Suspend until the user decides call_id.

        Only this call waits; other calls keep being processed.

        Raises:
            UnknownToolCallError: No record for call_id.
            asyncio.CancelledError: The call was abandoned before a decision.
        """
        record = self._records.get(call_id)
        if record is None:
            raise UnknownToolCallError(call_id)
        if record.choice is not None:
            return record.choice
        if record.status == ToolCallStatus.ABANDONED:
            raise asyncio.CancelledError(f"Tool call {call_id} was abandoned")

        waiter = self._waiters.get(call_id)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[call_id] = waiter
        return await asyncio.shield(waiter)

    # -------------------------------------------------------------------------
    # Session control
    # -------------------------------------------------------------------------

    def abandon_open(self) -> list[ToolCallRecord]:
        """Mark every open call abandoned, returning the records changed."""
        abandoned: list[ToolCallRecord] = []
        for record in self._records.values():
            if record.is_open:
                record.status = ToolCallStatus.ABANDONED
                self._cancel_waiter(record.call_id)
                abandoned.append(record)
        if abandoned:
            log.info("Abandoned %d open tool call(s)", len(abandoned))
        return abandoned

    def reset(self) -> None:
        """Forget every record (new session)."""
        for call_id in list(self._waiters):
            self._cancel_waiter(call_id)
        self._records.clear()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _create(self, event: ToolCallEvent) -> ToolCallRecord:
        record = ToolCallRecord(
            call_id=event.tool_call_id,
            tool_name=event.tool_name,
            args=event.args,
            mcp_server_name=event.mcp_server,
        )
        self._records[record.call_id] = record
        return record

    @staticmethod
    def _resolve_scenario(event: ToolCallsStartEvent, record: ToolCallRecord) -> PermissionScenario:
        if not event.permission_required:
            return PermissionScenario.ALLOWED
        scenario = event.permissions.get(record.call_id) or event.permissions.get(record.tool_name)
        return scenario or PermissionScenario.ASK

    def _complete_batch(self, batch_id: int) -> BatchDecision | None:
        asked = [
            r
            for r in self._records.values()
            if r.batch_id == batch_id and r.scenario == PermissionScenario.ASK
        ]
        if any(r.status == ToolCallStatus.PENDING_PERMISSION for r in asked):
            return None
        for record in asked:
            if record.status == ToolCallStatus.ALLOWED:
                record.status = ToolCallStatus.AWAITING_RESULT
        if not asked:
            return None
        choices = {r.call_id: r.choice for r in asked if r.choice is not None}
        return BatchDecision(batch_id=batch_id, choices=choices)

    def _cancel_waiter(self, call_id: str) -> None:
        waiter = self._waiters.pop(call_id, None)
        if waiter is not None and not waiter.done():
            waiter.cancel()


def _anomaly(kind: AnomalyKind, message: str, event_kind: str, call_id: str | None) -> ProtocolAnomaly:
    log.warning("Protocol anomaly: %s", message)
    return ProtocolAnomaly(kind=kind, message=message, event_kind=event_kind, call_id=call_id)
