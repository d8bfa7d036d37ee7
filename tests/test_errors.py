import pytest

from etcdbr.errors import EtcdError, SnapstoreError


@pytest.mark.parametrize("error_type", [EtcdError, SnapstoreError])
def test_str_is_message(error_type):
    error = error_type("something broke")
    assert str(error) == "something broke"
    assert error.message == "something broke"


@pytest.mark.parametrize("error_type", [EtcdError, SnapstoreError])
def test_operation_is_kept(error_type):
    error = error_type("failed", operation="defragment")
    assert error.operation == "defragment"
    assert str(error) == "failed"


def test_operation_defaults_to_empty():
    assert EtcdError("x").operation == ""


@pytest.mark.parametrize(
    "error_type, message",
    [(SnapstoreError, "no store"), (EtcdError, "no member")],
)
def test_errors_keep_message_when_raised(error_type, message):
    error = error_type(message, operation="list")
    with pytest.raises(error_type) as info:
        raise error
    caught = info.value
    assert caught.message == message
    assert str(caught) == message
    assert caught.operation == "list"


def test_categories_are_distinct():
    etcd_error = EtcdError("etcd failure")
    snapstore_error = SnapstoreError("store failure")
    assert isinstance(etcd_error, Exception)
    assert isinstance(snapstore_error, Exception)
    assert not isinstance(etcd_error, SnapstoreError)
    assert not isinstance(snapstore_error, EtcdError)
    assert etcd_error.message == "etcd failure"
    assert snapstore_error.message == "store failure"