from notifier import TelegramGateway, LogGateway


class StubBot:
    def __init__(self):
        self.sent = []

    async def send_message(self, chat_id, text, parse_mode=None):
        self.sent.append((chat_id, text, parse_mode))


async def test_telegram_gateway_sends_to_chat():
    bot = StubBot()
    assert await TelegramGateway(bot).send("12345", "<b>hi</b>") is True
    assert bot.sent == [(12345, "<b>hi</b>", "HTML")]


async def test_telegram_gateway_rejects_non_numeric_contact():
    bot = StubBot()
    assert await TelegramGateway(bot).send("+79990000000x", "hi") is False
    assert bot.sent == []


async def test_log_gateway_always_succeeds():
    assert await LogGateway().send("anyone", "hi") is True
