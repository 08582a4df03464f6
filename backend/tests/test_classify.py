from __future__ import annotations

import pytest


def test_none_is_the_no_error_sentinel():
    from dynamo_gateway.dynamodb.classify import classify

    assert classify(None) is None
    assert classify(None, "PutItem Failed:") is None


@pytest.mark.parametrize(
    "code,allow_retry,backoff,suppress",
    [
        ("ProvisionedThroughputExceededException", True, True, True),
        ("RequestLimitExceeded", True, True, True),
        ("ItemCollectionSizeLimitExceededException", True, True, False),
        ("LimitExceededException", True, True, False),
        ("InternalServerError", True, False, True),
        ("ConditionalCheckFailedException", False, False, False),
        ("ResourceNotFoundException", False, False, False),
        ("IdempotentParameterMismatchException", False, False, False),
        ("TransactionInProgressException", False, False, False),
        ("SomethingNewException", False, False, False),
    ],
)
def test_classification_table(client_error, code, allow_retry, backoff, suppress):
    from dynamo_gateway.dynamodb.classify import classify

    err = classify(client_error(code))
    assert err.aws_code == code
    assert err.allow_retry is allow_retry
    assert err.retryable is allow_retry
    assert err.retry_needs_backoff is backoff
    assert err.suppress is suppress


def test_message_format_and_metadata(client_error):
    from dynamo_gateway.dynamodb.classify import classify
    from dynamo_gateway.dynamodb.errors import DdbThrottled

    err = classify(
        client_error("ProvisionedThroughputExceededException", "slow down"),
        "PutItem Failed:",
        operation="PutItem",
        table_name="main",
    )
    assert isinstance(err, DdbThrottled)
    assert str(err) == "PutItem Failed: [AWS] ProvisionedThroughputExceededException - slow down"
    assert err.aws_request_id == "req-123"
    assert err.operation == "PutItem"
    assert err.table_name == "main"
    assert err.cause is not None


def test_structural_codes_map_to_conflict_and_not_found(client_error):
    from dynamo_gateway.dynamodb.classify import classify
    from dynamo_gateway.dynamodb.errors import DdbConflict, DdbNotFound

    assert isinstance(classify(client_error("ResourceNotFoundException")), DdbNotFound)
    assert isinstance(classify(client_error("TableAlreadyExistsException")), DdbConflict)

    ccf = classify(client_error("ConditionalCheckFailedException"))
    assert isinstance(ccf, DdbConflict)
    assert ccf.conditional_check_failed is True


def test_cancelled_transaction_flags_conditional_conflict_from_message(client_error):
    from dynamo_gateway.dynamodb.classify import classify

    err = classify(
        client_error(
            "TransactionCanceledException",
            "Transaction cancelled, please refer cancellation reasons for specific reasons "
            "[ConditionalCheckFailed, None]",
            operation="TransactWriteItems",
        )
    )
    assert err.conditional_check_failed is True
    assert err.allow_retry is False
    assert err.suppress is False


def test_cancelled_transaction_flags_conditional_conflict_from_reasons(client_error):
    from dynamo_gateway.dynamodb.classify import classify

    err = classify(
        client_error(
            "TransactionCanceledException",
            "Transaction cancelled",
            reasons=[{"Code": "None"}, {"Code": "ConditionalCheckFailed"}],
        )
    )
    assert err.conditional_check_failed is True

    plain = classify(
        client_error("TransactionCanceledException", "Transaction cancelled", reasons=[{"Code": "None"}])
    )
    assert plain.conditional_check_failed is False


def test_non_backend_errors_are_general_and_final():
    from dynamo_gateway.dynamodb.classify import classify
    from dynamo_gateway.dynamodb.errors import DdbInternal

    err = classify(ValueError("bad input"), "GetItem Failed:")
    assert isinstance(err, DdbInternal)
    assert str(err) == "GetItem Failed: [General] bad input"
    assert err.allow_retry is False
    assert err.suppress is False


def test_botocore_errors_are_unavailable():
    from botocore.exceptions import EndpointConnectionError

    from dynamo_gateway.dynamodb.classify import classify
    from dynamo_gateway.dynamodb.errors import DdbUnavailable

    err = classify(EndpointConnectionError(endpoint_url="http://localhost:8000"))
    assert isinstance(err, DdbUnavailable)
    assert "[General]" in str(err)
    assert err.allow_retry is False


def test_client_side_parameter_errors_are_validation_errors():
    from botocore.exceptions import ParamValidationError

    from dynamo_gateway.dynamodb.classify import classify
    from dynamo_gateway.dynamodb.errors import DdbValidation

    err = classify(ParamValidationError(report="bad"), "PutItem Failed:")
    assert isinstance(err, DdbValidation)
    assert err.message.startswith("PutItem Failed: [General] ")
    assert err.allow_retry is False
    assert err.suppress is False


def test_missing_gateway_yields_fixed_object_nil():
    from dynamo_gateway.dynamodb.classify import OBJECT_NIL_MESSAGE, classify
    from dynamo_gateway.dynamodb.errors import DdbValidation

    err = classify(ValueError("ignored"), gateway_present=False)
    assert isinstance(err, DdbValidation)
    assert str(err) == OBJECT_NIL_MESSAGE
    assert classify(None, gateway_present=False).message == OBJECT_NIL_MESSAGE


def test_classified_errors_pass_through_with_prefix_and_are_not_mutated(client_error):
    from dynamo_gateway.dynamodb.classify import classify

    first = classify(client_error("InternalServerError", "oops"))
    wrapped = classify(first, "UpdateItem Failed:")

    assert wrapped is not first
    assert str(wrapped) == "UpdateItem Failed: " + str(first)
    assert str(first) == "[AWS] InternalServerError - oops"
    assert (wrapped.allow_retry, wrapped.retry_needs_backoff, wrapped.suppress) == (True, False, True)
    assert type(wrapped) is type(first)


def test_dax_style_errors_with_code_attribute_are_classified():
    from dynamo_gateway.dynamodb.classify import classify, is_backend_error

    class DaxError(Exception):
        def __init__(self, code, message):
            super().__init__(message)
            self.code = code

    e = DaxError("ProvisionedThroughputExceededException", "throttled")
    assert is_backend_error(e)
    err = classify(e)
    assert err.suppress is True
    assert str(err) == "[AWS] ProvisionedThroughputExceededException - throttled"
