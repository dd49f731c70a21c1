"""Buffered audit logger with periodic JSONL persistence."""

import asyncio
import hashlib
import logging
import secrets
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from trustgate.audit.models import AuditEvent, AuditOutcome, AuditSource
from trustgate.config import Settings, get_settings

logger = logging.getLogger(__name__)


def generate_event_id() -> str:
    """Derive a unique 16 hex character event ID."""
    seed = f"{time.time_ns()}-{secrets.token_hex(8)}"
    return hashlib.sha256(seed.encode()).hexdigest()[:16]


class AuditLogger:
    """Append-only audit event sink.

    Events are appended to an in-memory buffer and written to a
    date-named JSONL file:
    - when the buffer reaches MAX_BUFFER_SIZE
    - every FLUSH_INTERVAL_SECONDS while started
    - on shutdown

    Disk persistence is optional; without it events still accumulate in
    the buffer for introspection. Disk failures are logged and never
    propagate to the caller.
    """

    MAX_BUFFER_SIZE = 1000
    FLUSH_INTERVAL_SECONDS = 5 * 60

    def __init__(
        self,
        settings: Settings | None = None,
        log_directory: str | Path | None = None,
        file_logging: bool | None = None,
    ):
        """Initialize audit logger.

        Args:
            settings: Application settings.
            log_directory: Override for the audit log directory.
            file_logging: Override for on-disk persistence.
        """
        self._settings = settings or get_settings()
        self._log_directory = Path(log_directory or self._settings.audit_log_dir)
        self._file_logging = (
            self._settings.audit_all_access if file_logging is None else file_logging
        )
        self._events: list[AuditEvent] = []
        self._flush_task: asyncio.Task | None = None
        self._flush_scheduled = False
        self._directory_ready = False
        self._running = False

    @property
    def file_logging_enabled(self) -> bool:
        """Whether events are persisted to disk."""
        return self._file_logging

    @property
    def log_directory(self) -> Path:
        """Directory audit files are written to."""
        return self._log_directory

    @property
    def events(self) -> tuple[AuditEvent, ...]:
        """Snapshot of the buffered events."""
        return tuple(self._events)

    def log_event(
        self,
        action: str,
        outcome: AuditOutcome | str,
        source: AuditSource | str = AuditSource.SYSTEM,
        *,
        subject_id: str | None = None,
        organization_id: str | None = None,
        resource: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEvent:
        """Stamp and buffer an audit event.

        Returns:
            The buffered event.
        """
        event = AuditEvent(
            event_id=generate_event_id(),
            timestamp=datetime.now(UTC),
            subject_id=subject_id,
            organization_id=organization_id,
            action=action,
            outcome=outcome,
            resource=resource,
            details=details,
            source=source,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self._events.append(event)

        logger.debug(
            "[AUDIT] %s: outcome=%s subject=%s org=%s source=%s event_id=%s",
            event.action,
            event.outcome,
            event.subject_id,
            event.organization_id,
            event.source,
            event.event_id,
        )

        if self._file_logging and len(self._events) >= self.MAX_BUFFER_SIZE:
            self._schedule_flush()

        return event

    def flush_to_disk(self) -> int:
        """Append every buffered event to today's audit file.

        The buffer is only trimmed after the write succeeds, so a failed
        write keeps the events for the next attempt.

        Returns:
            Number of events written.
        """
        if not self._file_logging or not self._events:
            return 0

        if not self._ensure_directory():
            return 0

        batch = list(self._events)
        log_file = self._log_directory / f"audit-{datetime.now(UTC):%Y-%m-%d}.jsonl"
        data = "\n".join(event.to_json_line() for event in batch) + "\n"

        try:
            with log_file.open("a", encoding="utf-8") as handle:
                handle.write(data)
        except OSError as e:
            logger.error("Failed to flush audit events to %s: %s", log_file, e)
            return 0

        # Events logged while writing sit after the batch
        del self._events[: len(batch)]

        logger.debug("Flushed %d audit events to %s", len(batch), log_file)
        return len(batch)

    async def start(self) -> None:
        """Prepare the log directory and start the periodic flush task."""
        if self._running:
            return

        self._running = True

        if self._file_logging:
            self._ensure_directory()
            self._flush_task = asyncio.create_task(
                self._run_periodic_flush(),
                name="audit_periodic_flush",
            )

        self.log_event(
            "audit_logger_initialized",
            AuditOutcome.SUCCESS,
            AuditSource.SYSTEM,
            details={
                "file_logging_enabled": self._file_logging,
                "log_directory": str(self._log_directory),
            },
        )

    async def shutdown(self) -> None:
        """Cancel the periodic flush and write out remaining events."""
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        self.flush_to_disk()
        self._running = False

    def get_stats(self) -> dict[str, Any]:
        """Get audit logger statistics.

        Returns:
            Statistics dictionary.
        """
        return {
            "running": self._running,
            "buffered_events": len(self._events),
            "file_logging_enabled": self._file_logging,
            "log_directory": str(self._log_directory),
        }

    def clear_buffer(self) -> None:
        """Drop all buffered events without writing them."""
        self._events.clear()

    async def _run_periodic_flush(self) -> None:
        while True:
            await asyncio.sleep(self.FLUSH_INTERVAL_SECONDS)
            try:
                self.flush_to_disk()
            except Exception as e:
                logger.exception("Periodic audit flush failed: %s", e)

    def _schedule_flush(self) -> None:
        if self._flush_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush_to_disk()
            return
        self._flush_scheduled = True
        loop.call_soon(self._run_scheduled_flush)

    def _run_scheduled_flush(self) -> None:
        self._flush_scheduled = False
        self.flush_to_disk()

    def _ensure_directory(self) -> bool:
        if self._directory_ready:
            return True
        try:
            self._log_directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(
                "Failed to create audit log directory %s: %s", self._log_directory, e
            )
            return False
        self._directory_ready = True
        return True


def log_auth_event(
    audit: AuditLogger,
    action: str,
    outcome: AuditOutcome | str,
    details: dict[str, Any] | None = None,
) -> AuditEvent:
    """Log a token resolution / rotation / validation event."""
    return audit.log_event(
        f"auth_{action}", outcome, AuditSource.TOKEN_MANAGER, details=details
    )


def log_api_event(
    audit: AuditLogger,
    action: str,
    outcome: AuditOutcome | str,
    resource: str | None = None,
    details: dict[str, Any] | None = None,
) -> AuditEvent:
    """Log an API access event."""
    return audit.log_event(
        f"api_{action}",
        outcome,
        AuditSource.API_CLIENT,
        resource=resource,
        details=details,
    )


def log_tool_event(
    audit: AuditLogger,
    tool_name: str,
    outcome: AuditOutcome | str,
    details: dict[str, Any] | None = None,
) -> AuditEvent:
    """Log a tool execution event."""
    return audit.log_event(
        f"tool_{tool_name}", outcome, AuditSource.TOOL_EXECUTION, details=details
    )


def log_org_event(
    audit: AuditLogger,
    action: str,
    outcome: AuditOutcome | str,
    organization_id: str | None = None,
    subject_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> AuditEvent:
    """Log an organization membership / access event."""
    return audit.log_event(
        f"org_{action}",
        outcome,
        AuditSource.SYSTEM,
        organization_id=organization_id,
        subject_id=subject_id,
        details=details,
    )
