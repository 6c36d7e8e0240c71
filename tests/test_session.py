import json

from lzstring import LZString

from common.compression import LZ_PREFIX, decompress_if_needed
from llamachat.backend import CHAT_COMPLETIONS_PATH, COMPLETIONS_PATH
from llamachat.config import ClientConfig, SamplingParams
from llamachat.models import Attachment, CompletionRecord
from llamachat.session import API_COMPLETIONS, NEW_CHAT_MARKER, ChatSession, normalize_speaker_name


def test_chat_request_shape(session):
    session.system_prompt = "be brief"
    session.prompt = "you are a cat"
    session.user_prefix = "<u>"
    session.store.add_message("user", "hi")
    session.store.add_message("assistant", "meow")
    session.store.add_message("assistant", "hidden aside", no_context=True)

    path, body = session.build_request([{"type": "function", "function": {"name": "t"}}])

    assert path == CHAT_COMPLETIONS_PATH
    assert body["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "system", "content": "you are a cat"},
        {"role": "system", "content": NEW_CHAT_MARKER},
        {"role": "user", "content": "<u>"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "meow"},
    ]
    assert body["tool_choice"] == "auto"
    assert body["parse_tool_calls"] is True
    assert body["stop"] == ["<|endoftext|>"]
    assert body["max_tokens"] == 1024
    assert "min_p" not in body


def test_include_no_context_adds_hidden_turns(session):
    session.store.add_message("assistant", "aside", no_context=True)
    _, body = session.build_request(include_no_context=True)
    assert body["messages"][-1] == {"role": "assistant", "content": "aside"}
    assert "tools" not in body


def test_attachments_become_content_parts(session):
    session.store.add_message(
        "user", "look", attachments=[Attachment(url="/files/a.png", name="a.png", is_image=True)]
    )
    _, body = session.build_request()
    assert body["messages"][-1]["content"] == [
        {"type": "text", "text": "look"},
        {"type": "file", "text": "/files/a.png"},
    ]


def test_completion_mode_builds_transcript(session):
    session.api_model = API_COMPLETIONS
    session.title = "Bot"
    session.user_name = "Ann:\n"
    session.system_prompt = "rules"
    session.store.add_message("user", "hello")
    session.store.add_message("assistant", "hi")

    path, body = session.build_request([{"type": "function"}])

    assert path == COMPLETIONS_PATH
    assert body["prompt"] == "System: rules\n***\nAnn: hello\nBot: hi\nBot: "
    assert body["stop"] == ["\nAnn", "\n***"]
    assert "tools" not in body
    assert "messages" not in body


def test_explicit_stop_overrides_default(session):
    session.params = SamplingParams(stop=["END"])
    _, body = session.build_request()
    assert body["stop"] == ["END"]


def test_normalize_speaker_name():
    assert normalize_speaker_name(" a:b\nc ", "x") == "a b c"
    assert normalize_speaker_name(None, "User") == "User"


def test_hint_text_joins_status_and_save_hint(session):
    session.set_status("done")
    session.set_save_hint("saved")
    assert session.hint_text == "done · saved"


def test_payload_round_trip(session, config):
    session.title = "Research"
    session.prompt = "p" * 400
    session.user_name = "Ann"
    session.enabled_mcp_tools = ["search", " fetch "]
    session.params = SamplingParams(temperature=0.2, stop=["###"])
    session.store.add_message("user", "hi")
    session.store.add_message("assistant", "hello")
    session.store.add_system_log("note")
    session.topics.create_topic("Second")
    session.store.add_message("user", "in second topic")

    record = session.build_payload()
    assert record.prompt.startswith(LZ_PREFIX)
    assert record.id == "42"

    restored = ChatSession(config, completion_id="42")
    restored.apply_payload(CompletionRecord.model_validate(record.to_wire()))

    assert restored.title == "Research"
    assert restored.prompt == "p" * 400
    assert restored.user_name == "Ann"
    assert restored.enabled_mcp_tools == ["search", "fetch"]
    assert restored.params.temperature == 0.2
    assert restored.params.stop == ["###"]
    assert [t.title for t in restored.topics.topics] == ["Second", "Default topic"]
    assert restored.topics.active_topic_id == session.topics.active_topic_id
    assert [m.content for m in restored.store.messages] == ["in second topic"]

    restored.topics.switch_topic(restored.topics.topics[1].id)
    assert [m.content for m in restored.store.messages] == ["hi", "hello"]
    assert [m.content for m in restored.store.system_logs] == ["note"]


def test_legacy_payload_without_topics(config):
    params = {
        "history": [
            {"role": "user", "content": "old question", "order": 4},
            {"role": "system", "content": "old log", "order": 5},
            {"role": "narrator", "content": "dropped"},
        ],
        "params": {"max_tokens": 64, "stop": "A\n\nB"},
    }
    record = CompletionRecord(id="1", params_json=json.dumps(params))

    session = ChatSession(config, completion_id="1")
    session.apply_payload(record)

    assert len(session.topics.topics) == 1
    assert [m.content for m in session.store.messages] == ["old question"]
    assert [m.content for m in session.store.system_logs] == ["old log"]
    assert session.store.system_logs[0].is_system_log
    assert session.params.max_tokens == 64
    assert session.params.stop == ["A", "B"]
    assert session.store.next_order() == 6


def test_unreadable_params_fall_back_to_defaults(config):
    session = ChatSession(config, completion_id="1")
    session.apply_payload(CompletionRecord(id="1", params_json="{not json", timings_json="[]"))
    assert session.params == SamplingParams()
    assert session.store.messages == []
    assert len(session.topics.topics) == 1


def test_build_payload_compresses_large_params(session):
    for i in range(20):
        session.store.add_message("user", f"message number {i}")
    record = session.build_payload()
    assert record.params_json.startswith(LZ_PREFIX)
    params = json.loads(decompress_if_needed(record.params_json))
    assert len(params["history"]) == 20
    assert params["apiModel"] == 1


def test_save_requests_go_through_on_save(config):
    reasons = []
    session = ChatSession(ClientConfig(backup_dir=config.backup_dir), completion_id="1")
    session.on_save = reasons.append
    session.topics.adopt_legacy([], [], [])
    session.topics.create_topic("x")
    assert reasons == ["new topic"]


def test_timings_text(session):
    message = session.store.add_message("assistant", "a")
    assert session.timings_text(message.id) == ""

    session.store.set_timings(message.id, {"cache_n": 100, "prompt_n": 20, "predicted_n": 30, "predicted_ms": 5})

    assert session.timings_text(message.id) == "tokens: prompt 120 (cache 100 + new 20), generated 30, total 150"


def test_unreadable_timings_render_empty(session):
    message = session.store.add_message("assistant", "a")
    session.store.set_timings(message.id, {"prompt_n": "lots"})
    assert session.timings_text(message.id) == ""


def test_payload_written_by_browser_client_is_readable(config):
    packer = LZString()
    params = {
        "history": [{"role": "user", "content": "from the browser", "order": 1}],
        "params": {"max_tokens": 77},
    }
    record = CompletionRecord(
        id="8",
        system_prompt="lz:" + packer.compressToEncodedURIComponent("S" * 300),
        params_json="lz:" + packer.compressToEncodedURIComponent(json.dumps(params)),
    )

    session = ChatSession(config, completion_id="8")
    session.apply_payload(record)

    assert session.system_prompt == "S" * 300
    assert [m.content for m in session.store.messages] == ["from the browser"]
    assert session.params.max_tokens == 77

    written = session.build_payload()
    assert packer.decompressFromEncodedURIComponent(written.system_prompt[len("lz:"):]) == "S" * 300
