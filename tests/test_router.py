"""Tests for the message router and response strategies."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from tests.fakes import text_message
from waworker.config.schema import AIConfig
from waworker.providers.base import LLMResponse
from waworker.router.events import InboundMessage, parse_message
from waworker.router.router import MessageRouter
from waworker.router.strategies import AIStrategy, StrategyResolver, WebhookStrategy
from waworker.storage.base import TranscriptEntry
from waworker.storage.memory import MemoryStore
from waworker.utils.helpers import utc_now

SENDER = "15550100@s.whatsapp.net"


class Sender:
    """Records replies sent through the connection."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    async def __call__(self, to: str, text: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append((to, text))


def webhook_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestParseMessage:
    """Tests for inbound message parsing."""

    def test_conversation_text(self) -> None:
        """Test plain conversation messages are parsed."""
        msg = parse_message("t1", text_message(SENDER, "hello"))
        assert msg is not None
        assert (msg.sender, msg.content, msg.push_name) == (SENDER, "hello", "Alice")

    def test_extended_text(self) -> None:
        """Test extendedTextMessage.text is used when conversation is absent."""
        raw = {"key": {"remoteJid": SENDER}, "message": {"extendedTextMessage": {"text": "link https://x"}}}
        assert parse_message("t1", raw).content == "link https://x"

    def test_own_messages_are_skipped(self) -> None:
        """Test echo suppression of messages sent by this instance."""
        assert parse_message("t1", text_message(SENDER, "hi", from_me=True)) is None

    def test_media_and_status_are_skipped(self) -> None:
        """Test messages without text and status broadcasts are ignored."""
        image = {"key": {"remoteJid": SENDER}, "message": {"imageMessage": {"url": "x"}}}
        assert parse_message("t1", image) is None
        assert parse_message("t1", text_message("status@broadcast", "story")) is None


class TestStrategyResolver:
    """Tests for strategy selection."""

    def test_webhook_wins_over_prompt(self, provider: Mock, ai_config: AIConfig) -> None:
        """Test a configured webhook URL selects the webhook strategy only."""
        store = MemoryStore()
        instance = store.add_instance("t1", system_prompt="be nice", webhook_url="https://hook.test/wa")
        resolver = StrategyResolver(provider, store, httpx.AsyncClient(), ai_config)

        strategy = resolver.resolve(instance)
        assert isinstance(strategy, WebhookStrategy)
        assert strategy.url == "https://hook.test/wa"

    def test_ai_with_instance_prompt(self, provider: Mock, ai_config: AIConfig) -> None:
        """Test the instance system prompt is used when no webhook is set."""
        store = MemoryStore()
        instance = store.add_instance("t1", system_prompt="be nice")
        strategy = StrategyResolver(provider, store, httpx.AsyncClient(), ai_config).resolve(instance)
        assert isinstance(strategy, AIStrategy)
        assert strategy.system_prompt == "be nice"

    def test_ai_with_default_prompt(self, provider: Mock, ai_config: AIConfig) -> None:
        """Test the default prompt is used when the instance has none or is unreadable."""
        resolver = StrategyResolver(provider, MemoryStore(), httpx.AsyncClient(), ai_config)
        assert resolver.resolve(MemoryStore().add_instance("t1")).system_prompt == "DEFAULT PROMPT"
        assert resolver.resolve(None).system_prompt == "DEFAULT PROMPT"


class TestWebhookStrategy:
    """Tests for the webhook response strategy."""

    @pytest.mark.asyncio
    async def test_posts_envelope_and_returns_reply(self) -> None:
        """Test the JSON envelope and the reply field."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"reply": "from hook"})

        strategy = WebhookStrategy("https://hook.test/wa", webhook_client(handler))
        reply = await strategy.reply(InboundMessage("t1", SENDER, "hi"))

        assert reply == "from hook"
        assert seen["url"] == "https://hook.test/wa"
        assert seen["body"] == {"event": "message", "instance_id": "t1", "from": SENDER, "body": "hi"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, json={"reply": "oops"}),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"status": "ok"}),
            httpx.Response(200, json={"reply": ""}),
        ],
    )
    async def test_failures_yield_no_reply(self, response: httpx.Response) -> None:
        """Test HTTP errors, bad JSON and missing reply all mean no reply."""
        strategy = WebhookStrategy("https://hook.test/wa", webhook_client(lambda request: response))
        assert await strategy.reply(InboundMessage("t1", SENDER, "hi")) is None

    @pytest.mark.asyncio
    async def test_network_error_yields_no_reply(self) -> None:
        """Test connection failures are swallowed."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        strategy = WebhookStrategy("https://hook.test/wa", webhook_client(handler))
        assert await strategy.reply(InboundMessage("t1", SENDER, "hi")) is None


class TestAIStrategy:
    """Tests for the AI response strategy."""

    @pytest.mark.asyncio
    async def test_history_is_last_ten_oldest_first(self, provider: Mock, ai_config: AIConfig) -> None:
        """Test only the ten most recent entries for the pair are sent, oldest first."""
        store = MemoryStore()
        base = utc_now() - timedelta(minutes=30)
        for i in range(12):
            await store.append_message(TranscriptEntry(
                instance_id="t1", sender=SENDER, content=f"m{i}",
                is_from_me=i % 2 == 1, created_at=base + timedelta(seconds=i),
            ))
        await store.append_message(TranscriptEntry("t1", "other@s.whatsapp.net", "elsewhere", False, base))
        await store.append_message(TranscriptEntry("t2", SENDER, "other tenant", False, base))

        strategy = AIStrategy("SYS", provider, store, ai_config)
        reply = await strategy.reply(InboundMessage("t1", SENDER, "now"))

        assert reply == "AI reply"
        messages = provider.chat.await_args.args[0]
        assert messages[0] == {"role": "system", "content": "SYS"}
        assert [m["content"] for m in messages[1:-1]] == [f"m{i}" for i in range(2, 12)]
        assert messages[1]["role"] == "user"
        assert messages[2]["role"] == "assistant"
        assert messages[-1] == {"role": "user", "content": "now"}

    @pytest.mark.asyncio
    async def test_history_stops_before_current_message(self, provider: Mock, ai_config: AIConfig) -> None:
        """Test the current message and anything received after it stay out of the history."""
        store = MemoryStore()
        message = InboundMessage("t1", SENDER, "now")
        await store.append_message(TranscriptEntry("t1", SENDER, "earlier", False, message.received_at - timedelta(seconds=5)))
        await store.append_message(TranscriptEntry("t1", SENDER, "now", False, message.received_at))
        await store.append_message(TranscriptEntry("t1", SENDER, "later", False, message.received_at + timedelta(seconds=1)))

        history = await AIStrategy("SYS", provider, store, ai_config).load_history(message)
        assert history == [{"role": "user", "content": "earlier"}]

    @pytest.mark.asyncio
    async def test_same_timestamp_keeps_insertion_order(self, provider: Mock, ai_config: AIConfig) -> None:
        """Test ties on created_at are broken by insertion order."""
        store = MemoryStore()
        at = utc_now() - timedelta(minutes=1)
        for text in ("first", "second", "third"):
            await store.append_message(TranscriptEntry("t1", SENDER, text, False, at))

        history = await AIStrategy("SYS", provider, store, ai_config).load_history(InboundMessage("t1", SENDER, "now"))
        assert [h["content"] for h in history] == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_provider_error_yields_no_reply(self, provider: Mock, ai_config: AIConfig) -> None:
        """Test an error completion is not sent."""
        provider.chat = AsyncMock(return_value=LLMResponse(content="Error calling LLM: 429", finish_reason="error"))
        strategy = AIStrategy("SYS", provider, MemoryStore(), ai_config)
        assert await strategy.reply(InboundMessage("t1", SENDER, "hi")) is None


class TestMessageRouter:
    """Tests for the routing pipeline."""

    @pytest.mark.asyncio
    async def test_first_message_with_no_config_uses_default_prompt(
        self, store: MemoryStore, router: MessageRouter, provider: Mock
    ) -> None:
        """Test an unconfigured instance replies via AI with the default prompt and empty history."""
        send = Sender()
        reply = await router.handle_message("t1", text_message(SENDER, "hi"), send)

        assert reply == "AI reply"
        assert provider.chat.await_count == 1
        messages = provider.chat.await_args.args[0]
        assert messages == [
            {"role": "system", "content": "DEFAULT PROMPT"},
            {"role": "user", "content": "hi"},
        ]
        assert send.sent == [(SENDER, "AI reply")]

        transcript = await store.recent_messages("t1", SENDER, 10)
        assert [(e.content, e.is_from_me) for e in transcript] == [("hi", False), ("AI reply", True)]

    @pytest.mark.asyncio
    async def test_connected_instance_answers_with_ai(self, store: MemoryStore, router: MessageRouter, provider: Mock) -> None:
        """Test an AI reply is sent and both directions land in the transcript in order."""
        store.add_instance("t3")
        provider.chat = AsyncMock(return_value=LLMResponse(content="hello"))
        send = Sender()

        await router.handle_batch("t3", [text_message("c1", "hi")], send)

        messages = provider.chat.await_args.args[0]
        assert messages[1:] == [{"role": "user", "content": "hi"}]
        assert send.sent == [("c1", "hello")]
        transcript = await store.recent_messages("t3", "c1", 10)
        assert [(e.sender, e.content, e.role) for e in transcript] == [
            ("c1", "hi", "user"),
            ("c1", "hello", "assistant"),
        ]

    @pytest.mark.asyncio
    async def test_webhook_instance_never_calls_ai(self, store: MemoryStore, provider: Mock, ai_config: AIConfig) -> None:
        """Test exactly one strategy runs per message."""
        store.instances["t1"].webhook_url = "https://hook.test/wa"
        client = webhook_client(lambda request: httpx.Response(200, json={"reply": "hooked"}))
        router = MessageRouter(store, StrategyResolver(provider, store, client, ai_config))
        send = Sender()

        await router.handle_message("t1", text_message(SENDER, "hi"), send)

        assert send.sent == [(SENDER, "hooked")]
        provider.chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_webhook_failure_sends_nothing(self, store: MemoryStore, provider: Mock, ai_config: AIConfig) -> None:
        """Test a failing webhook records the inbound message but sends no reply."""
        store.instances["t1"].webhook_url = "https://hook.test/wa"
        client = webhook_client(lambda request: httpx.Response(502))
        router = MessageRouter(store, StrategyResolver(provider, store, client, ai_config))
        send = Sender()

        assert await router.handle_message("t1", text_message(SENDER, "hi"), send) is None
        assert send.sent == []
        assert [e.content for e in await store.recent_messages("t1", SENDER, 10)] == ["hi"]
        provider.chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_own_messages_are_not_answered(self, store: MemoryStore, router: MessageRouter, provider: Mock) -> None:
        """Test fromMe messages produce no transcript entry and no reply."""
        send = Sender()
        await router.handle_batch("t1", [text_message(SENDER, "echo", from_me=True)], send)

        assert send.sent == []
        assert store.messages == []
        provider.chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_failure_is_not_recorded_as_outbound(self, store: MemoryStore, router: MessageRouter) -> None:
        """Test a reply that could not be sent is not appended to the transcript."""
        assert await router.handle_message("t1", text_message(SENDER, "hi"), Sender(fail=True)) is None
        assert [e.is_from_me for e in await store.recent_messages("t1", SENDER, 10)] == [False]

    @pytest.mark.asyncio
    async def test_batch_continues_after_a_failing_message(
        self, store: MemoryStore, router: MessageRouter, provider: Mock
    ) -> None:
        """Test one failing message does not stop the rest of the batch."""
        provider.chat = AsyncMock(side_effect=[RuntimeError("boom"), LLMResponse(content="second reply")])
        send = Sender()
        batch = [text_message(SENDER, "one", msg_id="A"), text_message(SENDER, "two", msg_id="B")]

        await router.handle_batch("t1", batch, send)

        assert send.sent == [(SENDER, "second reply")]

    @pytest.mark.asyncio
    async def test_concurrent_batches_keep_history_to_earlier_messages(
        self, provider: Mock, http_client: httpx.AsyncClient, ai_config: AIConfig
    ) -> None:
        """Test two quick messages from one contact never leak into each other's prompt."""
        store = YieldingStore()
        store.add_instance("t1")
        router = MessageRouter(store, StrategyResolver(provider=provider, store=store, http=http_client, ai_config=ai_config))
        send = Sender()

        await asyncio.gather(
            router.handle_batch("t1", [text_message("c1", "a", msg_id="A")], send),
            router.handle_batch("t1", [text_message("c1", "b", msg_id="B")], send),
        )

        prompts = {call.args[0][-1]["content"]: call.args[0] for call in provider.chat.await_args_list}
        assert set(prompts) == {"a", "b"}
        assert prompts["a"] == [
            {"role": "system", "content": "DEFAULT PROMPT"},
            {"role": "user", "content": "a"},
        ]
        history_b = [m["content"] for m in prompts["b"][1:-1]]
        assert "b" not in history_b
        assert set(history_b) <= {"a"}


class YieldingStore(MemoryStore):
    """MemoryStore whose instance lookup suspends once, like a network round trip."""

    async def get_instance(self, instance_id: str):
        await asyncio.sleep(0)
        return await super().get_instance(instance_id)
