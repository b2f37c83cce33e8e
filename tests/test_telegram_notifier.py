import json
import os
import threading
import unittest
from functools import partial
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import AsyncMock, patch

from telegram import Bot
from telegram.error import TelegramError

from papertrader.notifications.telegram_notifier import TelegramNotifier


def _mock_bot(bot_cls, send_message: AsyncMock):
    bot = bot_cls.return_value
    bot.__aenter__.return_value = bot
    bot.send_message = send_message
    return bot


class TelegramNotifierTest(unittest.TestCase):
    def test_without_credentials_only_logs(self):
        notifier = TelegramNotifier("", "")

        self.assertFalse(notifier.enabled)
        self.assertFalse(notifier.send("hello"))

    @patch("papertrader.notifications.telegram_notifier.Bot")
    def test_sends_message(self, bot_cls):
        bot = _mock_bot(bot_cls, AsyncMock())
        notifier = TelegramNotifier("token", "42")

        self.assertTrue(notifier.send("hello"))
        bot.send_message.assert_awaited_once_with(chat_id="42", text="hello")

    @patch("papertrader.notifications.telegram_notifier.Bot")
    def test_send_failure_is_reported_not_raised(self, bot_cls):
        _mock_bot(bot_cls, AsyncMock(side_effect=TelegramError("blocked")))
        notifier = TelegramNotifier("token", "42")

        self.assertFalse(notifier.send("hello"))

    @patch("papertrader.notifications.telegram_notifier.Bot")
    def test_system_alert_filters_levels(self, bot_cls):
        bot = _mock_bot(bot_cls, AsyncMock())
        notifier = TelegramNotifier("token", "42")

        self.assertFalse(notifier.send_system_alert("WARN", "trading", "minor"))
        self.assertTrue(notifier.send_system_alert("error", "trading", "major"))
        bot.send_message.assert_awaited_once()


class _BotApiHandler(BaseHTTPRequestHandler):
    """Answers getMe and sendMessage the way the Bot API does, keeping connections alive."""

    protocol_version = "HTTP/1.1"
    calls = []

    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        self.rfile.read(length)
        method = self.path.rsplit("/", 1)[-1]
        type(self).calls.append(method)

        if method == "getMe":
            result = {"id": 1, "is_bot": True, "first_name": "paper", "username": "paper_bot"}
        else:
            result = {
                "message_id": len(type(self).calls),
                "date": 0,
                "chat": {"id": 42, "type": "private"},
                "text": "ok",
            }
        body = json.dumps({"ok": True, "result": result}).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


class TelegramNotifierHttpTest(unittest.TestCase):
    """Real Bot and HTTP stack against a local Bot API stand-in."""

    def setUp(self):
        _BotApiHandler.calls = []
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), _BotApiHandler)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        host, port = self.server.server_address
        self.bot_factory = partial(Bot, base_url=f"http://{host}:{port}/bot")

    def tearDown(self):
        self.server.shutdown()
        self.server.server_close()
        self.thread.join()

    def test_consecutive_sends_all_delivered(self):
        with patch("papertrader.notifications.telegram_notifier.Bot", self.bot_factory), patch.dict(
            os.environ, {"NO_PROXY": "127.0.0.1,localhost", "no_proxy": "127.0.0.1,localhost"}
        ):
            notifier = TelegramNotifier("123:abc", "42")
            results = [notifier.send(f"message {i}") for i in range(3)]

        self.assertEqual(results, [True, True, True])
        self.assertEqual(_BotApiHandler.calls.count("sendMessage"), 3)


if __name__ == "__main__":
    unittest.main()
