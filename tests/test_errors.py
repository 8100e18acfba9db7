# tests/test_errors.py
from ndc_calculator.errors import (
    DependencyError,
    InternalError,
    ParseError,
    RateLimitError,
    ValidationError,
    error_to_response,
)


def test_error_codes_and_statuses():
    assert (ValidationError("x").error_code, ValidationError("x").status_code) == ("validation_error", 400)
    assert (ParseError("x").error_code, ParseError("x").status_code) == ("parse_error", 422)
    assert (DependencyError("x").error_code, DependencyError("x").status_code) == ("dependency_failure", 424)
    assert (RateLimitError("x").error_code, RateLimitError("x").status_code) == ("rate_limit_exceeded", 429)
    assert (InternalError("x").error_code, InternalError("x").status_code) == ("internal_error", 500)


def test_dependency_response_carries_retry_hint():
    error = DependencyError("Failed to retrieve drug information", detail="Both failed", retry_after_seconds=2.5)

    assert error.to_error_response() == {
        "error": "Failed to retrieve drug information",
        "error_code": "dependency_failure",
        "detail": "Both failed",
        "retry_after_ms": 2500,
    }


def test_validation_response_lists_fields():
    error = ValidationError("Invalid compute request", field_errors=[{"field": "sig", "message": "must not be empty"}])
    response = error.to_error_response()

    assert response["field_errors"] == [{"field": "sig", "message": "must not be empty"}]
    assert "detail" not in response
    assert "retry_after_ms" not in response


def test_unknown_exception_becomes_internal_error():
    response = error_to_response(KeyError("ndc"))

    assert response["error_code"] == "internal_error"
    assert response["detail"] == "An unexpected error occurred"
