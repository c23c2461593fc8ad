"""消息发送测试"""

import asyncio
import json

import httpx

from core.accounts import DingTalkAccount
from core.reply_encoder import (
    DEFAULT_TITLE,
    GROUP_SEND_URL,
    OTO_SEND_URL,
    ReplyEncoder,
    build_markdown_body,
    build_reply_body,
    build_text_body,
    choose_markdown,
    derive_title,
    wants_markdown,
)
from core.token_cache import TOKEN_URL, TokenCache

WEBHOOK = "https://oapi.dingtalk.com/robot/sendBySession?session=abc"
ACCOUNT = DingTalkAccount(client_id="k", client_secret="s", robot_code="robot-1")


class MockPlatform:
    """模拟钉钉接口，记录发出的请求"""

    def __init__(self, send_status: int = 200):
        self.send_status = send_status
        self.sent: list[tuple[str, dict, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"accessToken": "tok", "expireIn": 7200})
        body = json.loads(request.content)
        self.sent.append((str(request.url), body, request.headers.get("x-acs-dingtalk-access-token")))
        return httpx.Response(self.send_status, json={"errcode": 0, "errmsg": "ok"})


def run(platform, coro_fn):
    async def _main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(platform)) as http:
            encoder = ReplyEncoder(http, TokenCache(http))
            return await coro_fn(encoder)
    return asyncio.run(_main())


def test_markdown_heuristic():
    assert not wants_markdown("hello")
    assert not wants_markdown("hello back")
    assert wants_markdown("# Title\nbody")
    assert wants_markdown("line one\nline two")
    assert wants_markdown("- item")
    assert wants_markdown("> quote")
    assert wants_markdown("use `code` here")
    assert wants_markdown("see [link](http://x)")
    assert wants_markdown("**bold**")


def test_explicit_choice_wins():
    assert choose_markdown("hello", force_markdown=True)
    assert not choose_markdown("# Title", force_markdown=False)
    assert choose_markdown("# Title")
    assert not choose_markdown("hello")


def test_derive_title():
    assert derive_title("## 今日总结\n正文") == "今日总结"
    assert derive_title("- > 列表项") == "列表项"
    assert derive_title("a" * 50) == "a" * 20
    assert derive_title("###\n正文") == DEFAULT_TITLE
    assert derive_title("") == DEFAULT_TITLE


def test_text_body():
    assert build_text_body("hello") == {"msgtype": "text", "text": {"content": "hello"}}
    body = build_text_body("hello", at_user_id="U1")
    assert body["at"] == {"atUserIds": ["U1"], "isAtAll": False}
    assert body["text"]["content"] == "hello"


def test_markdown_body_appends_mention():
    body = build_markdown_body("# 标题\n内容", title="标题", at_user_id="U2")
    assert body["msgtype"] == "markdown"
    assert body["markdown"] == {"title": "标题", "text": "# 标题\n内容 @U2"}
    assert body["at"] == {"atUserIds": ["U2"], "isAtAll": False}

    plain = build_markdown_body("内容")
    assert "at" not in plain
    assert plain["markdown"]["title"] == DEFAULT_TITLE


def test_reply_body_selects_encoding():
    assert build_reply_body("hello")["msgtype"] == "text"
    assert build_reply_body("hello", force_markdown=True)["msgtype"] == "markdown"
    body = build_reply_body("# Title\nbody")
    assert body["msgtype"] == "markdown"
    assert body["markdown"]["title"] == "Title"


def test_send_posts_to_webhook_with_token():
    platform = MockPlatform()
    result = run(platform, lambda enc: enc.send(ACCOUNT, WEBHOOK, "hello"))

    assert result.ok
    assert result.data == {"errcode": 0, "errmsg": "ok"}
    assert platform.sent == [(WEBHOOK, {"msgtype": "text", "text": {"content": "hello"}}, "tok")]


def test_send_failure_is_returned_not_raised():
    platform = MockPlatform(send_status=500)
    result = run(platform, lambda enc: enc.send(ACCOUNT, WEBHOOK, "hello"))

    assert not result.ok
    assert result.error
    assert len(platform.sent) == 1


def test_send_without_webhook_fails():
    platform = MockPlatform()
    result = run(platform, lambda enc: enc.send(ACCOUNT, "", "hello"))
    assert not result.ok
    assert platform.sent == []


def test_proactive_send_requires_robot_code():
    platform = MockPlatform()
    account = DingTalkAccount(client_id="k", client_secret="s")
    result = run(platform, lambda enc: enc.send_proactive(account, "cid", "hello", is_group=True))
    assert not result.ok
    assert platform.sent == []


def test_proactive_send_routes_group_and_direct():
    platform = MockPlatform()

    async def scenario(enc):
        await enc.send_proactive(ACCOUNT, "cid-1", "hello", is_group=True)
        await enc.send_proactive(ACCOUNT, "U1", "# 标题\n内容")

    run(platform, scenario)
    (group_url, group_body, _), (oto_url, oto_body, _) = platform.sent

    assert group_url == GROUP_SEND_URL
    assert group_body["openConversationId"] == "cid-1"
    assert group_body["robotCode"] == "robot-1"
    assert group_body["msgKey"] == "sampleText"
    assert json.loads(group_body["msgParam"]) == {"content": "hello"}

    assert oto_url == OTO_SEND_URL
    assert oto_body["userIds"] == ["U1"]
    assert oto_body["msgKey"] == "sampleMarkdown"
    assert json.loads(oto_body["msgParam"]) == {"title": "标题", "text": "# 标题\n内容"}


class FlakyTokenPlatform:
    """token 接口返回异常内容，或发送接口返回 401"""

    def __init__(self, token_response: httpx.Response = None, send_statuses: list[int] = None):
        self.token_response = token_response
        self.send_statuses = list(send_statuses or [])
        self.token_calls = 0
        self.sent: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            self.token_calls += 1
            if self.token_response is not None:
                return self.token_response
            return httpx.Response(200, json={"accessToken": f"tok-{self.token_calls}", "expireIn": 7200})
        self.sent.append(request.headers.get("x-acs-dingtalk-access-token"))
        status = self.send_statuses.pop(0) if self.send_statuses else 200
        return httpx.Response(status, json={"errcode": 0})


def test_token_exchange_failure_is_returned_not_raised():
    bad_bodies = [
        httpx.Response(200, text="<html>bad gateway</html>", headers={"content-type": "text/html"}),
        httpx.Response(200, json={"accessToken": "t", "expireIn": "never"}),
        httpx.Response(200, json="tok"),
    ]
    for token_response in bad_bodies:
        platform = FlakyTokenPlatform(token_response=token_response)
        result = run(platform, lambda enc: enc.send(ACCOUNT, WEBHOOK, "hello"))
        assert not result.ok
        assert result.error
        assert platform.sent == []


def test_unauthorized_send_refreshes_token():
    platform = FlakyTokenPlatform(send_statuses=[401, 200])

    async def scenario(enc):
        first = await enc.send(ACCOUNT, WEBHOOK, "hello")
        second = await enc.send(ACCOUNT, WEBHOOK, "hello")
        return first, second

    first, second = run(platform, scenario)
    assert not first.ok
    assert second.ok
    assert platform.sent == ["tok-1", "tok-2"]
