from session_state import Action, SessionState, SessionStore, reduce


def test_reduce_does_not_mutate():
    state = SessionState()
    new_state = reduce(state, Action.SOCKET_CONNECTED)
    assert state.socket_connected is False
    assert state.server_offline is True
    assert new_state.socket_connected is True
    assert new_state.server_offline is False


def test_broadcast_lifecycle():
    store = SessionStore()
    store.dispatch(Action.SOCKET_CONNECTED)
    store.dispatch(Action.SOCKET_USER_ID, id="user-1")
    store.dispatch(Action.SET_JOIN_CODE, join_code="acde")
    store.dispatch(Action.BROADCAST_ROOM_CREATED, id="acde-fghj")
    assert store.state.is_broadcasting
    assert store.state.room_id == "acde-fghj"

    store.dispatch(Action.PEER_COUNT_UPDATED, count=2)
    store.dispatch(Action.END_BROADCAST_SUCCESS)
    store.dispatch(Action.CLEAR_JOIN_CODE)

    assert store.state.is_broadcasting is False
    assert store.state.room_id is None
    assert store.state.join_code is None
    assert store.state.user_id == "user-1"
    assert store.state.peer_connection_count == 2


def test_join_failure_records_error():
    store = SessionStore()
    store.dispatch(Action.JOIN_ROOM, id="wxyz-1234")
    store.dispatch(Action.JOIN_ROOM_SUCCESS)
    store.dispatch(Action.JOIN_ROOM_FAILURE, error="Invalid join code")
    assert store.state.is_viewing_broadcast is False
    assert store.state.error == "Invalid join code"
    assert store.state.room_id == "wxyz-1234"


def test_socket_connected_clears_error():
    store = SessionStore()
    store.dispatch(Action.SOCKET_CONNECT_FAILURE, error="refused")
    assert store.state.server_offline
    assert store.state.error == "refused"
    store.dispatch(Action.SOCKET_CONNECTED)
    assert store.state.error is None


def test_subscribers_see_every_dispatch_until_unsubscribed():
    store = SessionStore()
    seen = []
    unsubscribe = store.subscribe(lambda state, action: seen.append((action, state.peer_connected)))

    store.dispatch(Action.PEER_SERVER_CONNECTED)
    store.dispatch(Action.PEER_SERVER_DISCONNECTED)
    unsubscribe()
    store.dispatch(Action.PEER_SERVER_CONNECTED)

    assert seen == [(Action.PEER_SERVER_CONNECTED, True), (Action.PEER_SERVER_DISCONNECTED, False)]


def test_reset_restores_defaults():
    store = SessionStore()
    store.dispatch(Action.SOCKET_CONNECTED)
    store.dispatch(Action.SET_JOIN_CODE, join_code="acde")
    store.reset()
    assert store.state == SessionState()


def test_reset_notifies_subscribers():
    store = SessionStore()
    store.dispatch(Action.SOCKET_CONNECTED)
    seen = []
    store.subscribe(lambda state, action: seen.append((action, state)))

    store.reset()

    assert seen == [(Action.RESET, SessionState())]


def test_viewing_ended_clears_room():
    store = SessionStore()
    store.dispatch(Action.JOIN_ROOM, id="wxyz-1234")
    store.dispatch(Action.JOIN_ROOM_SUCCESS)
    store.dispatch(Action.VIEWING_ENDED)
    assert store.state.room_id is None
    assert store.state.is_viewing_broadcast is False
