from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Runtime
    environment: str = Field(default="development", validation_alias="APP_ENV")

    # AWS / data
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    # Optional: point at DynamoDB Local or a VPC endpoint.
    ddb_endpoint_url: str | None = Field(default=None, validation_alias="DDB_ENDPOINT_URL")
    ddb_table_name: str | None = Field(default=None, validation_alias="DDB_TABLE_NAME")
    ddb_pk_name: str = Field(default="PK", validation_alias="DDB_PK_NAME")
    ddb_sk_name: str = Field(default="SK", validation_alias="DDB_SK_NAME")

    # Accelerator (DAX). Routing goes to DAX only when enabled and not skipped.
    dax_endpoint: str | None = Field(default=None, validation_alias="DAX_ENDPOINT")
    skip_dax: bool = Field(default=False, validation_alias="DDB_SKIP_DAX")

    # HTTP transport tuning (botocore).
    ddb_connect_timeout_s: float = Field(default=2.0, validation_alias="DDB_CONNECT_TIMEOUT_S")
    ddb_read_timeout_s: float = Field(default=10.0, validation_alias="DDB_READ_TIMEOUT_S")
    ddb_max_pool_connections: int = Field(default=50, validation_alias="DDB_MAX_POOL_CONNECTIONS")
    ddb_sdk_max_attempts: int = Field(default=3, validation_alias="DDB_SDK_MAX_ATTEMPTS")
    ddb_sdk_retry_mode: str = Field(default="adaptive", validation_alias="DDB_SDK_RETRY_MODE")

    # Admission gate capacity; fixed for the life of the process (until shutdown/reinit).
    ddb_max_concurrency: int = Field(default=150, validation_alias="DDB_MAX_CONCURRENCY")

    # Crud facade defaults.
    ddb_default_retries: int = Field(default=4, validation_alias="DDB_DEFAULT_RETRIES")
    ddb_default_timeout_s: int = Field(default=5, validation_alias="DDB_DEFAULT_TIMEOUT_S")
    pk_app_name: str = Field(default="", validation_alias="DDB_PK_APP_NAME")
    pk_service_name: str = Field(default="", validation_alias="DDB_PK_SERVICE_NAME")

    # When true, throughput / request-limit / internal-server failures that outlive the
    # retry budget are reported as success (empty result) instead of raised.
    ddb_suppress_transient_errors: bool = Field(
        default=True, validation_alias="DDB_SUPPRESS_TRANSIENT_ERRORS"
    )

    # Observability (OpenTelemetry)
    otel_enabled: bool = Field(default=False, validation_alias="OTEL_ENABLED")
    otel_service_name: str | None = Field(
        default="dynamo-gateway", validation_alias="OTEL_SERVICE_NAME"
    )
    # OTLP/HTTP endpoint (e.g. http://adot-collector:4318/v1/traces)
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None, validation_alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )

    # ---- helpers / derived flags ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("stage", "staging"):
            return "staging"
        if v in ("dev", "development"):
            return "development"
        return v or "development"

    @property
    def is_production(self) -> bool:
        return self.normalized_environment == "production"

    @property
    def dax_enabled(self) -> bool:
        return bool(self.dax_endpoint and str(self.dax_endpoint).strip())

    def require_in_production(self) -> None:
        """
        Enforce required settings in production.

        Development/staging may run against partial config (DynamoDB Local, tests),
        but production must name its table and size the admission gate.
        """
        if not self.is_production:
            return

        missing: list[str] = []

        if not self.ddb_table_name:
            missing.append("DDB_TABLE_NAME")
        if self.ddb_max_concurrency <= 0:
            missing.append("DDB_MAX_CONCURRENCY (> 0)")

        if missing:
            raise RuntimeError(
                "Missing required production environment variables: "
                + ", ".join(missing)
            )

    def to_log_safe_dict(self) -> dict[str, object]:
        """
        A redacted representation safe for structured logs / diagnostics.
        """
        def _has(v: object) -> bool:
            return v is not None and str(v).strip() != ""

        return {
            "environment": self.normalized_environment,
            "aws": {
                "aws_region": self.aws_region,
                "ddb_endpoint_url": self.ddb_endpoint_url,
                "ddb_table_name": self.ddb_table_name,
                "ddb_pk_name": self.ddb_pk_name,
                "ddb_sk_name": self.ddb_sk_name,
            },
            "dax": {
                "dax_endpoint": self.dax_endpoint if _has(self.dax_endpoint) else None,
                "skip_dax": bool(self.skip_dax),
            },
            "transport": {
                "connect_timeout_s": self.ddb_connect_timeout_s,
                "read_timeout_s": self.ddb_read_timeout_s,
                "max_pool_connections": self.ddb_max_pool_connections,
                "sdk_max_attempts": self.ddb_sdk_max_attempts,
                "sdk_retry_mode": self.ddb_sdk_retry_mode,
            },
            "admission": {"max_concurrency": self.ddb_max_concurrency},
            "retry": {
                "default_retries": self.ddb_default_retries,
                "default_timeout_s": self.ddb_default_timeout_s,
                "suppress_transient_errors": bool(self.ddb_suppress_transient_errors),
            },
            "otel_enabled": bool(self.otel_enabled),
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings()
    s.require_in_production()
    return s


# Module-level singleton.
settings = get_settings()
