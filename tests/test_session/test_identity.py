import pytest

from steerline.exceptions import SessionIdentityError
from steerline.session.identity import (
    SessionIdentity,
    parse_file_key,
    parse_session_key,
    parse_storage_key,
)


def test_keys_are_derived_from_triplet():
    identity = SessionIdentity.create(42, thread=7, tenant="acme")

    assert identity.session_key == "acme:42:7"
    assert identity.storage_key == "acme/42/7"
    assert identity.file_key == "acme_42_7"


def test_missing_and_general_topic_threads_map_to_main():
    assert SessionIdentity.create(42).thread == "main"
    assert SessionIdentity.create(42, thread=1).thread == "main"
    assert SessionIdentity.create(42, thread="").thread == "main"


@pytest.mark.parametrize(
    ("kwargs", "code"),
    [
        ({"channel": ""}, "IDENTITY_EMPTY"),
        ({"channel": "  "}, "IDENTITY_EMPTY"),
        ({"channel": "a:b"}, "IDENTITY_CONTAINS_SEPARATOR"),
        ({"channel": "42", "tenant": "x/y"}, "IDENTITY_CONTAINS_SEPARATOR"),
        ({"channel": "42", "thread": "t\\1"}, "IDENTITY_CONTAINS_SEPARATOR"),
    ],
)
def test_invalid_segments_are_rejected(kwargs, code):
    with pytest.raises(SessionIdentityError) as exc:
        SessionIdentity.create(**kwargs)
    assert exc.value.code == code


def test_parsers_invert_builders():
    identity = SessionIdentity.create("chat_1", thread="topic%5", tenant="t")

    assert parse_session_key(identity.session_key) == identity
    assert parse_storage_key(identity.storage_key) == identity
    assert parse_file_key(identity.file_key) == identity


def test_malformed_keys():
    with pytest.raises(SessionIdentityError) as exc:
        parse_session_key("a:b")
    assert exc.value.code == "SESSION_KEY_INVALID_FORMAT"

    with pytest.raises(SessionIdentityError) as exc:
        parse_storage_key("a/b/c/d")
    assert exc.value.code == "STORAGE_PARTITION_INVALID_FORMAT"


def test_legacy_file_names_do_not_decode():
    assert parse_file_key("12345") is None
    assert parse_file_key("a_b") is None
