from __future__ import annotations

from .dynamodb.admission import (
    AdmissionGate,
    init_admission_gate,
    log_admission_gate_stats,
    shutdown_admission_gate,
)
from .dynamodb.table import DynamoTable
from .observability.logging import configure_logging, get_logger
from .observability.otel import configure_otel
from .settings import Settings, settings as _default_settings


def start_gateway(
    s: Settings | None = None, *, connect: bool = True, log_level: str | int = "INFO"
) -> DynamoTable:
    """
    Process startup: logging, optional tracing, the admission gate, then the main table.

    Safe to call more than once; logging setup and an open gate are reused.
    """
    s = s or _default_settings
    # Logging must be configured before the first backend call.
    configure_logging(level=log_level)
    log = get_logger("startup")

    # Optional tracing (no-op unless OTEL_ENABLED=true)
    configure_otel(s)

    log.info("gateway_starting", settings=s.to_log_safe_dict())
    gate: AdmissionGate = init_admission_gate(s.ddb_max_concurrency)
    return DynamoTable.from_settings(s, gate=gate, connect=connect)


def stop_gateway(table: DynamoTable | None = None) -> None:
    """Drain in-flight operations, then drop backend handles."""
    log = get_logger("shutdown")
    log_admission_gate_stats()
    shutdown_admission_gate()
    if table is not None:
        table.backends.close()
    log.info("gateway_stopped")
