import pytest

from wherewhen.errors import (
    DomainFailure,
    ErrorCode,
    ErrorKind,
    Result,
    fail,
    returns_result,
)
from wherewhen.main import build_core
from wherewhen.schemas.social import FriendshipRead
from wherewhen.stores.friendship_store import FriendshipStore


def test_every_code_has_a_kind():
    for code in ErrorCode:
        error = fail(code, "detail").error
        assert isinstance(error.kind, ErrorKind)


@pytest.mark.parametrize(
    "code, kind",
    [
        (ErrorCode.INVALID_IDENTIFIER, ErrorKind.VALIDATION),
        (ErrorCode.EMPTY_CONTENT, ErrorKind.VALIDATION),
        (ErrorCode.FRIENDSHIP_NOT_FOUND, ErrorKind.NOT_FOUND),
        (ErrorCode.NOT_CHAT_PARTICIPANT, ErrorKind.UNAUTHORIZED),
        (ErrorCode.DUPLICATE_REQUEST, ErrorKind.CONFLICT),
        (ErrorCode.BACKEND_FAILURE, ErrorKind.BACKEND),
    ],
)
def test_code_kinds(code, kind):
    assert fail(code, "detail").error.kind == kind


def test_fail_stringifies_context():
    error = fail(ErrorCode.CHAT_NOT_FOUND, "Chat not found", count=3, flag=None).error
    assert error.context == {"count": "3", "flag": "None"}


def test_result_unwrap():
    assert Result.success(5).unwrap() == 5
    assert Result.success(None).ok

    failed = Result.failure(fail(ErrorCode.SELF_CHAT, "nope").error)
    assert not failed.ok
    with pytest.raises(DomainFailure) as excinfo:
        failed.unwrap()
    assert excinfo.value.error.code == ErrorCode.SELF_CHAT


@pytest.mark.asyncio
async def test_returns_result_maps_domain_failure():
    @returns_result
    async def operation():
        raise fail(ErrorCode.INVALID_STATE, "already accepted")

    result = await operation()
    assert result.error.code == ErrorCode.INVALID_STATE
    assert result.error.detail == "already accepted"


@pytest.mark.asyncio
async def test_returns_result_maps_unexpected_errors(monkeypatch):
    captured = []
    monkeypatch.setattr("wherewhen.errors.sentry_sdk.capture_exception", captured.append)

    @returns_result
    async def operation():
        raise ConnectionResetError("database went away")

    result = await operation()
    assert result.error.code == ErrorCode.BACKEND_FAILURE
    assert result.error.kind == ErrorKind.BACKEND
    assert result.error.context["type"] == "ConnectionResetError"
    assert isinstance(captured[0], ConnectionResetError)


class BrokenFriendshipStore(FriendshipStore):
    async def create(self, db, user_a, user_b) -> FriendshipRead:
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_backend_failure_rolls_back_accept(monkeypatch, session_factory, alice, bob):
    monkeypatch.setattr("wherewhen.errors.sentry_sdk.capture_exception", lambda exc: None)
    core = build_core(session_factory)
    core.friendships._friendships = BrokenFriendshipStore()

    request = (await core.friendships.send_request(alice.id, bob.id)).unwrap()
    result = await core.friendships.accept_request(request.id, bob.id)
    assert result.error.code == ErrorCode.BACKEND_FAILURE

    # The request transition was rolled back with the failed insert
    pending = (await core.friendships.get_pending_requests(bob.id)).value
    assert [entry.request.id for entry in pending] == [request.id]
