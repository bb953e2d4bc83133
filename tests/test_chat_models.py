import pytest

from chat_models import ChatSession, Message


def test_session_seeded_with_system_message():
    session = ChatSession()
    assert session.payload() == [{"role": "system", "content": "You are a helpful assistant."}]
    assert session.turns == 0


def test_custom_system_prompt():
    session = ChatSession(system_prompt="Be terse.")
    assert session.messages[0] == Message("system", "Be terse.")


def test_turn_adds_two_messages():
    session = ChatSession()
    session.add_user("hi")
    session.add_assistant("hello")
    assert len(session) == 3
    assert session.turns == 1
    assert [m["role"] for m in session.payload()] == ["system", "user", "assistant"]


def test_discard_last_user():
    session = ChatSession()
    session.add_user("hi")
    assert session.discard_last_user() == Message("user", "hi")
    assert len(session) == 1
    # nothing dangling to remove
    assert session.discard_last_user() is None
    assert len(session) == 1


@pytest.mark.parametrize("role,content", [("tool", "x"), ("", "x"), ("user", "")])
def test_invalid_message(role, content):
    with pytest.raises(ValueError):
        Message(role, content)


def test_message_is_immutable():
    msg = Message("user", "hi")
    with pytest.raises(AttributeError):
        msg.content = "changed"
