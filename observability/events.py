"""
Structured JSON event emission (shared).

This module is shared by the Proposal API server and the voice pipeline.
It implements the event envelope and the taxonomy helpers for pipeline runs.
"""

from __future__ import annotations

import json
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import EventStore, event_store


class Component(str, Enum):
    """Event source components."""

    API_SERVER = "api_server"
    PIPELINE = "pipeline"
    CAPTURE = "capture"
    PLAYBACK = "playback"
    PROVIDER = "provider"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}


class EventEmitter:
    """Emits structured JSON events and keeps them queryable by run."""

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def __init__(self, component: Component, store: Optional[EventStore] = None):
        self.component = component
        self.store = store if store is not None else event_store

    def emit(
        self,
        event_type: str,
        run_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        """
        Emit one event.

        Args:
            event_type: Stable event type string (e.g., "pipeline.state_changed")
            run_id: Pipeline run identifier ("" for events outside a run)
            severity: Event severity level
            correlation_id: Optional correlation ID (defaults to run_id)
            pii: PII metadata dict with contains_pii, fields, handling
            **kwargs: Additional event-specific fields
        """
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "run_id": run_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or run_id,
            "pii": pii or DEFAULT_PII,
        }

        event.update(kwargs)

        json_output = json.dumps(event, ensure_ascii=False, default=str)

        if kwargs.get("latency_ms") is not None:
            no_color = os.environ.get('NO_COLOR', '').lower() in ('1', 'true', 'yes')
            pattern = r'("latency_ms"\s*:\s*)(\d+)'
            if no_color:
                replacement = r'\1\2 ms'
            else:
                replacement = rf'\1{self.ORANGE}\2 ms{self.RESET}'
            json_output = re.sub(pattern, replacement, json_output)

        sys.stdout.write(json_output)
        sys.stdout.write("\n")
        sys.stdout.flush()

        # The store keeps the uncoloured dict
        self.store.store(event)

    # --- Taxonomy helpers ---

    def run_started(self, run_id: str, trigger: str) -> None:
        self.emit("pipeline.run_started", run_id=run_id, trigger=trigger)

    def state_changed(
        self,
        run_id: str,
        from_state: str,
        to_state: str,
        message: str,
        cause: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "from_state": from_state,
            "to_state": to_state,
            "message": message,
        }
        if cause:
            payload["cause"] = cause
        self.emit(
            "pipeline.state_changed",
            run_id=run_id,
            severity=Severity.WARN if to_state == "error" else Severity.INFO,
            **payload,
        )

    def run_discarded(self, run_id: str, stage: str) -> None:
        """A cancelled or superseded run produced a result that was dropped."""
        self.emit("pipeline.run_discarded", run_id=run_id, stage=stage)

    def capture_started(self, run_id: str, mime_type: str) -> None:
        self.emit("capture.started", run_id=run_id, mime_type=mime_type)

    def capture_completed(
        self,
        run_id: str,
        size: int,
        mime_type: str,
        latency_ms: Optional[int] = None,
        auto_stopped: bool = False,
    ) -> None:
        payload: Dict[str, Any] = {
            "size": size,
            "mime_type": mime_type,
            "auto_stopped": auto_stopped,
        }
        if latency_ms is not None:
            payload["latency_ms"] = latency_ms
        self.emit("capture.completed", run_id=run_id, **payload)

    def capture_failed(self, run_id: str, kind: str, reason: str) -> None:
        self.emit(
            "capture.failed",
            run_id=run_id,
            severity=Severity.WARN,
            kind=kind,
            reason=reason,
        )

    def playback_attempt(
        self,
        run_id: str,
        strategy_id: str,
        attempt_number: int,
        outcome: str,
        error: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "strategy_id": strategy_id,
            "attempt_number": attempt_number,
            "outcome": outcome,
        }
        if error:
            payload["error"] = error
        self.emit(
            "playback.attempt",
            run_id=run_id,
            severity=Severity.INFO if outcome == "success" else Severity.WARN,
            **payload,
        )

    def playback_completed(self, run_id: str, strategy_id: str, stopped: bool = False) -> None:
        self.emit("playback.completed", run_id=run_id, strategy_id=strategy_id, stopped=stopped)

    def playback_exhausted(self, run_id: str, attempts: int) -> None:
        self.emit(
            "playback.exhausted",
            run_id=run_id,
            severity=Severity.ERROR,
            attempts=attempts,
        )

    def proposal_evaluated(
        self,
        run_id: str,
        proposal_id: str,
        total: float,
        consensus_index: float,
        approved: bool,
        high_consensus: bool,
    ) -> None:
        self.emit(
            "proposal.evaluated",
            run_id=run_id,
            proposal_id=proposal_id,
            total=round(total, 4),
            consensus_index=round(consensus_index, 4),
            approved=approved,
            high_consensus=high_consensus,
        )
