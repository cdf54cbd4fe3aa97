from zapninja.infrastructure.observability.logging import _add_session_context


def test_session_name_is_renamed_to_session():
    event = _add_session_context(None, "info", {"event": "Session started", "session_name": "vendas"})

    assert event == {"event": "Session started", "session": "vendas"}


def test_existing_session_field_wins():
    event = _add_session_context(None, "info", {"session": "a", "session_name": "b"})

    assert event == {"session": "a"}
