import pytest

from kinstallutils.errors import (
    FIELD_IMMUTABLE_ERROR_MSG,
    OBJECT_IS_BEING_DELETED_ERROR_MSG,
    KubeApiError,
    StatusReason,
    is_already_exists,
    is_immutable_error,
    is_not_found,
)


def test_none_is_never_matched():
    assert is_immutable_error(None) is False
    assert is_already_exists(None) is False
    assert is_not_found(None) is False


def test_immutable_error_detected():
    err = KubeApiError(StatusReason.INVALID, f"spec.clusterIP: {FIELD_IMMUTABLE_ERROR_MSG}")
    assert is_immutable_error(err) is True


def test_invalid_without_immutable_message_is_not_immutable():
    err = KubeApiError(StatusReason.INVALID, "spec.ports: Required value")
    assert is_immutable_error(err) is False


def test_immutable_message_with_other_reason_is_not_immutable():
    err = KubeApiError(StatusReason.CONFLICT, FIELD_IMMUTABLE_ERROR_MSG)
    assert is_immutable_error(err) is False


def test_already_exists_detected():
    err = KubeApiError(StatusReason.ALREADY_EXISTS, 'configmaps "a" already exists')
    assert is_already_exists(err) is True
    assert is_not_found(err) is False


def test_already_exists_while_terminating_is_not_already_exists():
    err = KubeApiError(StatusReason.ALREADY_EXISTS, OBJECT_IS_BEING_DELETED_ERROR_MSG)
    assert is_already_exists(err) is False


def test_not_found_detected():
    assert is_not_found(KubeApiError(StatusReason.NOT_FOUND, "gone")) is True


def test_plain_exception_is_not_api_error():
    assert is_not_found(ValueError("NotFound")) is False
    assert is_already_exists(RuntimeError("AlreadyExists")) is False


def test_wrapped_error_is_found_through_cause():
    with pytest.raises(RuntimeError) as info:
        try:
            raise KubeApiError(StatusReason.NOT_FOUND, "missing")
        except KubeApiError as inner:
            raise RuntimeError("deleting resource") from inner
    assert is_not_found(info.value) is True


def test_error_string_is_message():
    err = KubeApiError(StatusReason.INVALID, "bad thing")
    assert str(err) == "bad thing"
    assert err.reason is StatusReason.INVALID


def test_reason_accepts_string_value():
    err = KubeApiError("NotFound", "x")
    assert err.reason is StatusReason.NOT_FOUND