"""本地运行时测试"""

import asyncio

from core.local_runtime import LocalSessionStore, build_local_runtime
from core.runtime import InboundContext, LastRoute, Peer


def make_ctx(text: str, timestamp: int) -> InboundContext:
    return InboundContext(
        body=text,
        raw_body=text,
        command_body=text,
        from_="dingtalk:U1",
        to="dingtalk:U1",
        session_key="",
        account_id="default",
        chat_type="direct",
        conversation_label="Alice (U1)",
        sender_name="Alice",
        sender_id="U1",
        provider="dingtalk",
        surface="dingtalk",
        timestamp=timestamp,
    )


def test_route_is_per_peer():
    runtime = build_local_runtime()
    dm = runtime.routing.resolve_agent_route({}, "dingtalk", "default", Peer(kind="dm", id="U1"))
    group = runtime.routing.resolve_agent_route({}, "dingtalk", "default", Peer(kind="group", id="cid"))
    assert dm.session_key == "agent:main:dingtalk:dm:U1"
    assert group.session_key == "agent:main:dingtalk:group:cid"
    assert dm.main_session_key == group.main_session_key == "agent:main:main"


def test_session_store_records_and_updates():
    store = LocalSessionStore(max_history=2)
    path = store.resolve_store_path("mem", "main")
    assert store.read_session_updated_at(path, "s1") is None

    route = LastRoute(session_key="main", channel="dingtalk", to="U1", account_id="default")

    async def scenario():
        for i in range(3):
            await store.record_inbound_session(path, "s1", make_ctx(f"msg {i}", 1000 + i), update_last_route=route)

    asyncio.run(scenario())
    session = store.get_session("s1")
    assert store.read_session_updated_at(path, "s1") == 1002
    assert session.message_count == 3
    assert session.history == ["msg 1", "msg 2"]
    assert store.get_session("main").last_route == route


def test_envelope_marks_elapsed_time():
    reply = build_local_runtime().reply
    options = reply.resolve_envelope_format_options({})
    body = reply.format_inbound_envelope(
        channel="DingTalk",
        from_="Alice (U1)",
        timestamp=1_700_000_120_000,
        body="hi",
        chat_type="direct",
        sender={"name": "Alice", "id": "U1"},
        previous_timestamp=1_700_000_000_000,
        envelope=options,
    )
    assert body == "[DingTalk Alice (U1) +2m] hi"

    first = reply.format_inbound_envelope("DingTalk", "Alice (U1)", 1, "hi", "direct", {}, None, options)
    assert first == "[DingTalk Alice (U1)] hi"


def test_echo_reply():
    runtime = build_local_runtime()
    handle = runtime.reply.create_reply_dispatcher()
    payload = asyncio.run(runtime.reply.dispatch_reply(make_ctx("你好", 1), {}, handle))
    assert payload.text == "收到你的消息: 你好"

    handle.mark_idle()
    handle.mark_idle()
    assert handle.idle


def test_activity_is_recorded():
    runtime = build_local_runtime()
    runtime.activity.record("dingtalk", "default", "start")
    runtime.activity.record("dingtalk", "default", "stop")
    assert runtime.activity.events == [("dingtalk", "default", "start"), ("dingtalk", "default", "stop")]
