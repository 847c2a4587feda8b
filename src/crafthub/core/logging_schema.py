"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (crafthub)
- event: Event type (instance_created, rcon_connected, etc.)
- trace_id: Request trace ID
- duration_ms: Duration in milliseconds

High cardinality fields (OK in logs):
- instance_id: Instance ID
- instance_name: Instance name
- user_id: User ID
- channel_id: Live console channel ID
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types.

    Use these event types in the 'event' extra field for consistent
    log filtering and analysis.
    """

    # Lifecycle events
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"

    # API events
    REQUEST_COMPLETE = "request_complete"
    REQUEST_FAILED = "request_failed"
    REQUEST_SLOW = "request_slow"

    # DB events
    DB_CONNECTED = "db_connected"
    DB_ERROR = "db_error"

    # Instance events
    INSTANCE_CREATED = "instance_created"
    INSTANCE_UPDATED = "instance_updated"
    INSTANCE_DELETED = "instance_deleted"
    INSTANCE_STARTED = "instance_started"
    INSTANCE_STOPPED = "instance_stopped"
    INSTANCE_RESTARTED = "instance_restarted"
    INSTANCE_COMPENSATED = "instance_compensated"
    STATE_CHANGED = "state_changed"
    OPERATION_FAILED = "operation_failed"
    GRANT_CREATED = "grant_created"
    GRANT_REVOKED = "grant_revoked"

    # Container runtime events
    CONTAINER_CREATED = "container_created"
    CONTAINER_STARTED = "container_started"
    CONTAINER_STOPPED = "container_stopped"
    CONTAINER_RESTARTED = "container_restarted"
    CONTAINER_REMOVED = "container_removed"
    VOLUME_CREATED = "volume_created"
    VOLUME_REMOVED = "volume_removed"
    VOLUME_REMOVE_FAILED = "volume_remove_failed"
    RUNTIME_ERROR = "runtime_error"

    # RCON events
    RCON_CONNECTED = "rcon_connected"
    RCON_CLOSED = "rcon_closed"
    RCON_SWEPT = "rcon_swept"
    RCON_COMMAND_FAILED = "rcon_command_failed"

    # Live console events
    CHANNEL_OPENED = "channel_opened"
    CHANNEL_CLOSED = "channel_closed"
    CHANNEL_AUTHENTICATED = "channel_authenticated"
    CHANNEL_AUTH_FAILED = "channel_auth_failed"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    POLL_STARTED = "poll_started"
    POLL_STOPPED = "poll_stopped"
    POLL_FAILED = "poll_failed"

    # Version catalog events
    VERSIONS_REFRESHED = "versions_refreshed"
    VERSIONS_FETCH_FAILED = "versions_fetch_failed"


class ErrorClass(StrEnum):
    """Error classification for structured error logging.

    Use these in the 'error_class' extra field to enable
    filtering by error type and setting up alerts.
    """

    TRANSIENT = "transient"  # Retryable (network timeout, temp failure)
    PERMANENT = "permanent"  # Not retryable (invalid input, not found)
    TIMEOUT = "timeout"
    CONFLICT = "conflict"  # Uniqueness violation
