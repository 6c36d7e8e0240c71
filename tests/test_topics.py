import pytest

from common.events import EventEmitter, MessagesReset, TopicSwitched
from llamachat.store import MessageStore
from llamachat.topics import DEFAULT_TOPIC_TITLE, UNTITLED_TOPIC, TopicManager, TopicState


@pytest.fixture
def manager():
    events = []
    store = MessageStore(EventEmitter(events.append))
    topics = TopicManager(store)
    topics.adopt_legacy([], [], [])
    topics.events = events
    return topics


def test_round_trip_through_other_topic_is_identical(manager):
    store = manager.store
    store.add_message("user", "question")
    store.add_message("assistant", "answer", reasoning="because")
    store.add_system_log("note")
    store.set_timings(store.messages[1].id, {"predicted_n": 3})
    topic_a = manager.active_topic_id
    before = [m.to_wire() for m in store.messages]
    logs_before = [m.to_wire() for m in store.system_logs]

    manager.create_topic("B")
    assert store.messages == []
    manager.switch_topic(topic_a)

    assert [m.to_wire() for m in store.messages] == before
    assert [m.to_wire() for m in store.system_logs] == logs_before
    assert store.timings_log[0]["timings"] == {"predicted_n": 3}


def test_order_keeps_increasing_across_switches(manager):
    store = manager.store
    first = store.add_message("user", "a")
    topic_a = manager.active_topic_id
    manager.create_topic("B")
    second = store.add_message("user", "b")
    manager.switch_topic(topic_a)
    third = store.add_message("user", "c")

    assert [first.order, second.order, third.order] == [1, 2, 3]


def test_create_topic_goes_first_and_becomes_active(manager):
    topic = manager.create_topic("  ")
    assert manager.topics[0] is topic
    assert topic.title == UNTITLED_TOPIC
    assert manager.active_topic_id == topic.id
    assert manager.topic_data[topic.id].history == []


def test_switch_emits_events_and_requests_save(manager):
    saves = []
    manager.on_save = saves.append
    topic_a = manager.active_topic_id
    topic_b = manager.create_topic("B")
    manager.events.clear()

    manager.switch_topic(topic_a)

    assert saves == ["new topic", "switch topic"]
    assert manager.events == [
        TopicSwitched(topic_id=topic_a, previous_topic_id=topic_b.id),
        MessagesReset(reason="topic"),
    ]


def test_switch_to_unknown_topic_raises(manager):
    with pytest.raises(ValueError):
        manager.switch_topic("t-missing")


def test_rename_topic(manager):
    topic_id = manager.active_topic_id
    manager.rename_topic(topic_id, " Renamed ")
    assert manager.get_topic(topic_id).title == "Renamed"


def test_load_picks_first_topic_when_active_is_unknown(manager):
    manager.store.timings_log = [{"messageId": "m", "timings": {}}]
    topics = [
        {"id": "t-1", "title": "One", "createdAt": 1, "updatedAt": 2},
        {"id": "t-2", "title": "Two"},
        "garbage",
    ]
    data = {"t-1": {"history": [{"role": "user", "content": "x", "order": 9}], "systemLogs": []}}

    manager.load(topics, data, "t-404")

    assert manager.active_topic_id == "t-1"
    assert [t.id for t in manager.topics] == ["t-1", "t-2"]
    assert [m.content for m in manager.store.messages] == ["x"]
    assert manager.store.timings_log == [{"messageId": "m", "timings": {}}]
    assert manager.store.next_order() == 10


def test_load_without_readable_topics_raises(manager):
    with pytest.raises(ValueError):
        manager.load(["nope"], {}, None)


def test_legacy_system_messages_move_to_logs(manager):
    manager.adopt_legacy(
        [{"role": "user", "content": "q"}, {"role": "system", "content": "old log"}], None, []
    )
    assert manager.topics[0].title == DEFAULT_TOPIC_TITLE
    assert [m.role for m in manager.store.messages] == ["user"]
    assert [m.content for m in manager.store.system_logs] == ["old log"]


def test_topic_state_wire_format(manager):
    manager.store.add_message("user", "hi")
    topics, data = manager.to_wire()
    state = data[manager.active_topic_id]
    assert state["history"][0]["content"] == "hi"
    assert state["systemLogs"] == []
    assert state["timingsLog"] == []
    assert topics[0]["title"] == DEFAULT_TOPIC_TITLE
    assert TopicState.from_wire(state).history[0]["content"] == "hi"
