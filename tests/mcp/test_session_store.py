"""Tests for the SQLite session store."""

from yari.mcp.models import (
    AuthServerMetadata,
    ClientInfo,
    Credentials,
    ExternalSession,
    OAuthTokens,
    SessionStatus,
    ToolUsageRecord,
)
from yari.mcp.store import SessionStore


def make_session(session_id="s1", user_id="alice", updated_at=1_000, **kwargs):
    return ExternalSession(
        session_id=session_id,
        user_id=user_id,
        server_url="https://tools.example.com/mcp",
        callback_url="http://localhost:8765/callback",
        created_at=updated_at,
        updated_at=updated_at,
        **kwargs,
    )


def test_save_and_get_full_session(session_store):
    session = make_session(
        status=SessionStatus.CONNECTED,
        credentials=Credentials(auth_headers={"X-Key": "k"}),
        tokens=OAuthTokens(access_token="a", refresh_token="r", expires_at=5_000),
        auth_metadata=AuthServerMetadata(authorization_endpoint="https://a/authorize", token_endpoint="https://a/token"),
        client_info=ClientInfo(client_id="c", client_secret="s"),
    )

    session_store.save(session)

    assert session_store.get("s1") == session
    assert session_store.get("missing") is None


def test_save_is_an_upsert(session_store):
    session_store.save(make_session())
    session_store.save(make_session(status=SessionStatus.DISCONNECTED, updated_at=2_000))

    sessions = session_store.list_sessions()
    assert len(sessions) == 1
    assert sessions[0].status == SessionStatus.DISCONNECTED
    assert sessions[0].updated_at == 2_000


def test_list_filters(session_store):
    session_store.save(make_session("s1", "alice", 1_000))
    session_store.save(make_session("s2", "alice", 3_000, status=SessionStatus.CONNECTED))
    session_store.save(make_session("s3", "bob", 2_000))

    assert [s.session_id for s in session_store.list_sessions()] == ["s2", "s3", "s1"]
    assert [s.session_id for s in session_store.list_sessions(user_id="alice")] == ["s2", "s1"]
    assert [s.session_id for s in session_store.list_sessions(status=SessionStatus.PENDING_AUTH)] == ["s3", "s1"]


def test_delete_and_stale_lookup(session_store):
    for i, ts in enumerate((1_000, 2_000, 3_000)):
        session_store.save(make_session(f"s{i}", updated_at=ts))

    assert session_store.delete("s0")
    assert not session_store.delete("s0")
    assert session_store.stale_session_ids(3_000) == ["s1"]
    assert [s.session_id for s in session_store.list_sessions()] == ["s2", "s1"]


def test_conditional_delete_spares_fresh_rows(session_store):
    session_store.save(make_session("s1", updated_at=1_000))
    session_store.save(make_session("s2", updated_at=5_000))

    assert not session_store.delete_if_older("s2", 3_000)
    assert session_store.delete_if_older("s1", 3_000)
    assert not session_store.delete_if_older("missing", 3_000)
    assert [s.session_id for s in session_store.list_sessions()] == ["s2"]


def test_survives_reopen(tmp_path):
    path = tmp_path / "nested" / "sessions.db"
    SessionStore(path).save(make_session())

    assert SessionStore(path).get("s1").user_id == "alice"


def test_usage_log(session_store):
    session_store.record_usage(ToolUsageRecord(session_id="s1", user_id="alice", tool_name="a", success=True))
    session_store.record_usage(ToolUsageRecord(session_id="s1", user_id="alice", tool_name="b", success=False,
                                               error="boom"))
    session_store.record_usage(ToolUsageRecord(session_id="s2", user_id="bob", tool_name="c", success=True))

    usage = session_store.get_usage("s1")
    assert [(u.tool_name, u.success, u.error) for u in usage] == [("b", False, "boom"), ("a", True, None)]
    assert len(session_store.get_usage()) == 3
    assert len(session_store.get_usage(limit=1)) == 1


def test_usage_pruning(session_store):
    for i, ts in enumerate((1_000, 2_000, 3_000)):
        session_store.record_usage(ToolUsageRecord(session_id="s1", user_id="alice", tool_name=f"t{i}",
                                                   success=True, timestamp=ts))

    assert session_store.delete_usage_older_than(2_500) == 2
    assert [u.tool_name for u in session_store.get_usage()] == ["t2"]
    assert session_store.delete_usage_older_than(2_500) == 0
