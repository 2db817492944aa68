import threading

import pytest

from llm_core.domain.conversation import Conversation, new_conversation
from llm_core.domain.exceptions import InvalidRequestError, TokenLimitExceededError
from llm_core.domain.models import Message
from llm_core.domain.tokens import estimate_message_tokens


def test_estimate_hi_is_five_tokens():
    assert estimate_message_tokens(Message.text_message("user", "hi")) == 5


def test_append_updates_running_total():
    conv = Conversation(max_tokens=100)
    conv.add_user_message("hi")
    conv.add_assistant_message("hello there")
    assert len(conv) == 2
    assert conv.token_count == sum(estimate_message_tokens(m) for m in conv.get_messages())


def test_append_over_budget_leaves_state_unchanged():
    conv = Conversation(max_tokens=10)
    conv.add_user_message("hi")
    with pytest.raises(TokenLimitExceededError):
        conv.add_user_message("this message is far too long for the budget")
    assert len(conv) == 1
    assert conv.token_count == 5


def test_system_prompt_counts_and_survives_truncation():
    conv = new_conversation("sys", max_tokens=20, resources_enabled=False)
    assert conv.get_messages()[0].role == "system"
    conv.add_user_message("hi")
    conv.add_assistant_message("hi")
    conv.set_max_tokens(12)
    evicted = conv.truncate_to_fit()
    assert [m.role for m in evicted] == ["user"]
    assert [m.role for m in conv.get_messages()] == ["system", "assistant"]
    assert conv.token_count <= conv.max_tokens


def test_system_prompt_over_budget_raises():
    with pytest.raises(TokenLimitExceededError):
        Conversation(system_prompt="x" * 100, max_tokens=10)


def test_truncate_failure_restores_state():
    conv = Conversation(system_prompt="a" * 40, max_tokens=100)
    conv.add_user_message("hi")
    conv.set_max_tokens(5)
    before = conv.get_messages()
    with pytest.raises(TokenLimitExceededError):
        conv.truncate_to_fit()
    assert conv.get_messages() == before


def test_max_tokens_non_positive_uses_default():
    assert Conversation(max_tokens=0).max_tokens == 100_000


def test_seed_is_all_or_nothing():
    conv = Conversation(max_tokens=30)
    with pytest.raises(TokenLimitExceededError):
        conv.seed([("hi", "hello"), ("q" * 80, "a")])
    assert len(conv) == 0
    assert conv.token_count == 0

    assert conv.seed({"hi": "hello"}) == 2
    assert [m.role for m in conv.get_messages()] == ["user", "assistant"]


def test_remove_last_message_if_role():
    conv = Conversation()
    conv.add_user_message("hi")
    assert conv.remove_last_message_if_role("assistant") is False
    assert conv.remove_last_message_if_role("user") is True
    assert len(conv) == 0
    assert conv.token_count == 0
    assert conv.remove_last_message_if_role("user") is False


def test_add_reference_requires_resources_enabled():
    conv = Conversation()
    with pytest.raises(InvalidRequestError):
        conv.add_reference("notes.txt", "body")

    conv = Conversation(resources_enabled=True)
    msg = conv.add_reference("notes.txt", "body")
    assert msg.role == "user"
    assert msg.content == "Reference notes.txt:\nbody"


def test_clear_keeps_system_message():
    conv = Conversation(system_prompt="sys")
    conv.add_user_message("hi")
    conv.clear()
    assert [m.role for m in conv.get_messages()] == ["system"]
    conv.clear(keep_system=False)
    assert len(conv) == 0
    assert conv.token_count == 0


def test_reads_return_copies():
    conv = Conversation()
    conv.add_user_message("hi")
    msgs = conv.get_messages()
    msgs.clear()
    assert len(conv) == 1
    assert conv.get_last_message().content == "hi"
    assert len(conv.get_messages_by_role("user")) == 1


def test_clone_and_export():
    conv = Conversation(system_prompt="sys", metadata={"k": "v"})
    conv.add_user_message("hi")
    copy = conv.clone()
    assert copy.id != conv.id
    assert copy.get_messages() == conv.get_messages()
    copy.add_assistant_message("yo")
    assert len(conv) == 2

    data = conv.export()
    assert data["estimated_tokens"] == conv.token_count
    assert data["messages"][1]["content"] == "hi"
    assert data["metadata"] == {"k": "v"}


def test_concurrent_appends_keep_total_consistent():
    conv = Conversation(max_tokens=1_000_000)

    def worker():
        for _ in range(50):
            conv.add_user_message("hi")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(conv) == 400
    assert conv.token_count == 400 * 5


def test_truncate_with_reserve_makes_room_for_next_message():
    conv = Conversation(system_prompt="sys", max_tokens=20)
    conv.add_user_message("hi")
    conv.add_assistant_message("hi")
    evicted = conv.truncate_to_fit(reserve=10)
    assert [m.role for m in evicted] == ["user"]
    assert conv.token_count + 10 <= conv.max_tokens


def test_truncate_evicts_k_oldest_in_order():
    conv = Conversation(system_prompt="sys", max_tokens=100)
    texts = ["m1", "m2", "m3", "m4", "m5", "m6"]
    for i, text in enumerate(texts):
        conv.append(Message.text_message("user" if i % 2 == 0 else "assistant", text))
    # system 5 + 6 条各 5 个 token = 35，降到 22 需要淘汰 3 条
    assert conv.token_count == 35
    conv.set_max_tokens(22)

    evicted = conv.truncate_to_fit()

    assert [m.content for m in evicted] == ["m1", "m2", "m3"]
    assert [m.content for m in conv.get_messages()] == ["sys", "m4", "m5", "m6"]
    assert conv.token_count == 20
