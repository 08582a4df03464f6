from __future__ import annotations

import threading
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import boto3
from botocore.config import Config

from ..observability.logging import get_logger
from ..settings import Settings, settings as _default_settings
from .errors import DdbValidation

log = get_logger("ddb_client")

NO_BACKEND_MESSAGE = "No DynamoDB or Dax Connection Available"


@lru_cache(maxsize=1)
def botocore_config() -> Config:
    # Keep botocore's own retries on (adaptive is best-effort); the gateway still runs its
    # classified retry loop above it.
    s = _default_settings
    return _build_config(s)


def _build_config(s: Settings) -> Config:
    return Config(
        retries={"max_attempts": int(s.ddb_sdk_max_attempts), "mode": s.ddb_sdk_retry_mode},
        connect_timeout=s.ddb_connect_timeout_s,
        read_timeout=s.ddb_read_timeout_s,
        max_pool_connections=int(s.ddb_max_pool_connections),
    )


def new_dynamodb_client(s: Settings | None = None):
    s = s or _default_settings
    kwargs: dict[str, Any] = {
        "region_name": s.aws_region,
        "config": botocore_config() if s is _default_settings else _build_config(s),
    }
    if s.ddb_endpoint_url:
        kwargs["endpoint_url"] = s.ddb_endpoint_url
    return boto3.client("dynamodb", **kwargs)


def new_dax_client(s: Settings | None = None):
    """DAX client for the configured cluster endpoint (needs the ``dax`` extra)."""
    s = s or _default_settings
    if not s.dax_enabled:
        raise DdbValidation(message="Dax Endpoint is Required")
    from amazondax import AmazonDaxClient

    return AmazonDaxClient(endpoint_url=str(s.dax_endpoint).strip(), region_name=s.aws_region)


@dataclass(frozen=True, slots=True)
class BackendSnapshot:
    primary: Any = None
    accelerator: Any = None
    skip_accelerator: bool = False


def select_backend(snapshot: BackendSnapshot, operation: str | None = None) -> Any:
    """Accelerator when present and not skipped, else primary."""
    if snapshot.accelerator is not None and not snapshot.skip_accelerator:
        return snapshot.accelerator
    if snapshot.primary is not None:
        return snapshot.primary
    raise DdbValidation(message=NO_BACKEND_MESSAGE, operation=operation)


class Backends:
    """
    Primary DynamoDB client plus an optional DAX accelerator.

    Handles are swapped under a lock and read through :meth:`snapshot`, so reconnects and
    accelerator toggles never race an in-flight call.
    """

    def __init__(
        self,
        primary: Any = None,
        accelerator: Any = None,
        *,
        skip_accelerator: bool = False,
        settings: Settings | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._primary = primary
        self._accelerator = accelerator
        self._skip = bool(skip_accelerator)
        self._settings = settings or _default_settings

    def connect(self) -> None:
        client = new_dynamodb_client(self._settings)
        with self._lock:
            self._primary = client
        log.info("ddb_connected", region=self._settings.aws_region)

    def enable_accelerator(self) -> None:
        client = new_dax_client(self._settings)
        with self._lock:
            old = self._accelerator
            self._accelerator = client
        _close_quietly(old)
        log.info("dax_enabled", endpoint=self._settings.dax_endpoint)

    def disable_accelerator(self) -> None:
        with self._lock:
            old = self._accelerator
            self._accelerator = None
        _close_quietly(old)
        if old is not None:
            log.info("dax_disabled")

    def set_skip_accelerator(self, skip: bool) -> None:
        with self._lock:
            self._skip = bool(skip)

    def close(self) -> None:
        self.disable_accelerator()
        with self._lock:
            self._primary = None

    def snapshot(self) -> BackendSnapshot:
        with self._lock:
            return BackendSnapshot(
                primary=self._primary,
                accelerator=self._accelerator,
                skip_accelerator=self._skip,
            )

    def select(self, operation: str | None = None) -> Any:
        return select_backend(self.snapshot(), operation)


def _close_quietly(client: Any) -> None:
    close = getattr(client, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception as e:
        log.warning("dax_close_failed", error=str(e))
