from common.events import EventEmitter, MessageAdded, MessageRemoved, MessageUpdated, ToolStatusChanged
from llamachat.models import Message
from llamachat.store import MessageStore, normalize_history


def make_store():
    events = []
    return MessageStore(EventEmitter(events.append)), events


def test_orders_are_strictly_increasing():
    store, _ = make_store()
    created = [store.add_message("user", str(i)) for i in range(5)]
    created.append(store.add_system_log("log"))
    orders = [m.order for m in created]
    assert orders == list(range(1, 7))


def test_hidden_message_is_revealed_once():
    store, events = make_store()
    message = store.add_hidden_message("assistant")
    assert events == []
    assert store.renderable() == []

    assert store.reveal(message.id) is True
    assert store.reveal(message.id) is False
    assert events == [MessageUpdated(message_id=message.id, field="hidden")]
    assert store.renderable() == [message]


def test_renderable_sorts_messages_and_logs_together():
    store, _ = make_store()
    user = store.add_message("user", "q")
    log = store.add_system_log("between")
    reply = store.add_message("assistant", "a")
    assert store.renderable() == [user, log, reply]


def test_delete_drops_later_system_logs():
    store, events = make_store()
    store.add_message("user", "q")
    early_log = store.add_system_log("early")
    reply = store.add_message("assistant", "a")
    store.add_system_log("late")

    assert store.delete_message(reply.id) is True

    assert [m.content for m in store.messages] == ["q"]
    assert store.system_logs == [early_log]
    assert events[-1] == MessageRemoved(message_id=reply.id)
    assert store.delete_message("missing") is False


def test_cut_keeps_or_drops_the_anchor():
    store, _ = make_store()
    first = store.add_message("user", "1")
    second = store.add_message("assistant", "2")
    store.add_message("user", "3")

    store.cut(second.id, keep=True)
    assert [m.content for m in store.messages] == ["1", "2"]

    store.cut(second.id, keep=False)
    assert store.messages == [first]
    assert store.cut("missing", keep=True) is None


def test_tool_status_change_is_announced():
    store, events = make_store()
    tool = store.add_message("tool", tool_call_id="c1", tool_name="search", tool_status="pending")

    store.set_tool_status(tool.id, "cancelled", no_context=True)

    assert tool.tool_status == "cancelled"
    assert tool.no_context is True
    assert events[-1] == ToolStatusChanged(
        message_id=tool.id, tool_call_id="c1", tool_name="search", status="cancelled", is_error=False
    )


def test_set_ui_and_content_only_announces_changes():
    store, events = make_store()
    message = store.add_message("tool")
    events.clear()

    store.set_ui_and_content(message.id, "shown", "full")
    store.set_ui_and_content(message.id, "shown", "full")

    assert message.display_text == "shown"
    assert message.content == "full"
    assert len(events) == 1


def test_timings_are_upserted_per_message():
    store, _ = make_store()
    message = store.add_message("assistant", "a")
    store.set_timings(message.id, {"predicted_n": 1})
    store.set_timings(message.id, {"predicted_n": 2})

    assert len(store.timings_log) == 1
    assert store.latest_timings(message.id) == {"predicted_n": 2}


def test_sync_sequence_never_moves_backwards():
    store, _ = make_store()
    for _ in range(4):
        store.next_order()
    store.load([Message(role="user", content="x", order=2)], [], [])
    assert store.seq == 4
    store.load([Message(role="user", content="x", order=9)], [], [])
    assert store.seq == 9


def test_add_message_announces_role():
    store, events = make_store()
    message = store.add_message("user", "hi")
    assert events == [MessageAdded(message_id=message.id, role="user")]


class TestNormalizeHistory:
    def test_tool_messages_recover_name_and_arguments(self):
        history = [
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {"id": "c1", "type": "function", "function": {"name": "search", "arguments": '{"q":1}'}}
                ],
            },
            {"role": "tool", "content": "result", "tool_call_id": "c1"},
        ]

        messages = normalize_history(history)

        assert messages[1].tool_name == "search"
        assert messages[1].tool_arguments == '{"q":1}'

    def test_unknown_roles_and_bad_entries_are_dropped(self):
        messages = normalize_history([{"role": "wizard"}, "text", {"role": "user", "content": None}])
        assert len(messages) == 1
        assert messages[0].content == ""

    def test_attachments_are_normalized(self):
        messages = normalize_history(
            [
                {
                    "role": "user",
                    "content": "see",
                    "attachments": [
                        {"type": "image_url", "url": "/a.png"},
                        {"type": "file", "url": "/b.txt", "name": "b"},
                        {"type": "bogus", "url": "/c"},
                        {"type": "file", "url": "  "},
                    ],
                }
            ]
        )
        attachments = messages[0].attachments
        assert [a.url for a in attachments] == ["/a.png", "/b.txt"]
        assert attachments[0].is_image is True
        assert attachments[1].is_image is False

    def test_existing_ids_and_flags_survive(self):
        raw = {"id": "m1", "role": "assistant", "content": "a", "noContext": True, "hidden": True, "order": 3}
        message = normalize_history([raw])[0]
        assert message.id == "m1"
        assert message.no_context is True
        assert message.hidden is True
        assert message.order == 3
