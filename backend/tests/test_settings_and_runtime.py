from __future__ import annotations

import pytest


def test_log_safe_dict_shape(monkeypatch):
    from dynamo_gateway.settings import Settings

    monkeypatch.setenv("DDB_TABLE_NAME", "main")
    monkeypatch.setenv("DAX_ENDPOINT", "   ")
    s = Settings()

    safe = s.to_log_safe_dict()
    assert safe["aws"]["ddb_table_name"] == "main"
    assert safe["dax"]["dax_endpoint"] is None
    assert safe["admission"]["max_concurrency"] == s.ddb_max_concurrency


def test_production_requires_table_and_gate_capacity(monkeypatch):
    from dynamo_gateway.settings import Settings

    monkeypatch.setenv("APP_ENV", "prod")
    monkeypatch.setenv("DDB_MAX_CONCURRENCY", "0")
    monkeypatch.delenv("DDB_TABLE_NAME", raising=False)

    with pytest.raises(RuntimeError) as ei:
        Settings().require_in_production()
    assert "DDB_TABLE_NAME" in str(ei.value)
    assert "DDB_MAX_CONCURRENCY" in str(ei.value)


def test_dax_routing_flag(monkeypatch):
    from dynamo_gateway.settings import Settings

    monkeypatch.setenv("DAX_ENDPOINT", "  ")
    assert Settings().dax_enabled is False
    monkeypatch.setenv("DAX_ENDPOINT", "dax://cluster.example:8111")
    assert Settings().dax_enabled is True


def test_dax_client_needs_an_endpoint():
    from dynamo_gateway.dynamodb.client import new_dax_client
    from dynamo_gateway.dynamodb.errors import DdbValidation
    from dynamo_gateway.settings import settings

    s = settings.model_copy(update={"dax_endpoint": None})
    with pytest.raises(DdbValidation) as ei:
        new_dax_client(s)
    assert str(ei.value) == "Dax Endpoint is Required"


def test_timeout_duration():
    from dynamo_gateway.dynamodb.table import timeout_duration

    assert timeout_duration(0) is None
    assert timeout_duration(None) is None
    assert timeout_duration(5) == 5.0


def test_start_and_stop_gateway(monkeypatch):
    from dynamo_gateway import runtime
    from dynamo_gateway.dynamodb import admission
    from dynamo_gateway.dynamodb.errors import DdbValidation
    from dynamo_gateway.settings import Settings

    monkeypatch.setenv("DDB_TABLE_NAME", "main")
    monkeypatch.setenv("DDB_MAX_CONCURRENCY", "7")
    monkeypatch.setattr(admission, "_gate", None)
    configured: list[dict] = []
    monkeypatch.setattr(runtime, "configure_logging", lambda **kw: configured.append(kw))

    table = runtime.start_gateway(Settings(), connect=False, log_level="DEBUG")

    assert configured == [{"level": "DEBUG"}]
    assert table.table_name == "main"
    assert table.gate is admission.get_admission_gate()
    assert table.gate.max_capacity() == 7
    assert admission.is_admission_gate_initialized() is True

    runtime.stop_gateway(table)

    assert admission.is_admission_gate_initialized() is False
    with pytest.raises(DdbValidation):
        table.backends.select("GetItem")


def test_main_table_requires_a_table_name(monkeypatch):
    from dynamo_gateway.dynamodb.errors import DdbInternal
    from dynamo_gateway.dynamodb.table import DynamoTable
    from dynamo_gateway.settings import settings

    with pytest.raises(DdbInternal):
        DynamoTable.from_settings(settings.model_copy(update={"ddb_table_name": None}), connect=False)
