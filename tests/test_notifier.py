"""Result notifier: at most one terminal message per command."""
from modules.notifier import Outcome, ResultNotifier

from conftest import drain


def test_emits_once_per_command():
    notifier = ResultNotifier()
    received = []
    notifier.add_subscriber(received.append)

    first = notifier.emit("cmd-1", "LOCK-0001", Outcome.SUCCESS, "done", "confirmed")
    second = notifier.emit("cmd-1", "LOCK-0001", Outcome.FAILURE, "again", "failed")

    assert first is not None
    assert second is None
    assert received == [first]
    assert notifier.stats['duplicates'] == 1
    assert notifier.is_closed("cmd-1")


def test_default_kind_per_outcome():
    notifier = ResultNotifier()
    assert notifier.emit("a", "d", Outcome.SUCCESS, "ok", "confirmed").kind == "success"
    assert notifier.emit("b", "d", Outcome.PARTIAL, "hmm", "failed").kind == "success"
    assert notifier.emit("c", "d", Outcome.FAILURE, "no", "failed").kind == "error"
    assert notifier.emit("e", "d", Outcome.PARTIAL, "mismatch", "unconfirmed", kind="error").kind == "error"


def test_message_payload():
    notification = ResultNotifier().emit("a", "d", Outcome.SUCCESS, "Device locked", "confirmed")
    assert notification.message() == {"kind": "success", "text": "Device locked"}


def test_suppressed_command_is_never_published():
    notifier = ResultNotifier()
    received = []
    notifier.add_subscriber(received.append)

    assert notifier.suppress("cmd-1")
    assert notifier.emit("cmd-1", "d", Outcome.SUCCESS, "ok", "confirmed") is None
    assert received == []
    assert notifier.is_closed("cmd-1")
    assert notifier.stats['emitted'] == 0


def test_suppress_after_emit_is_a_no_op():
    notifier = ResultNotifier()
    notifier.emit("cmd-1", "d", Outcome.SUCCESS, "ok", "confirmed")
    assert not notifier.suppress("cmd-1")
    assert notifier.stats['suppressed'] == 0


def test_failing_subscriber_does_not_block_others():
    notifier = ResultNotifier()
    received = []

    def broken(_):
        raise RuntimeError("socket closed")

    notifier.add_subscriber(broken)
    notifier.add_subscriber(received.append)
    notifier.emit("cmd-1", "d", Outcome.SUCCESS, "ok", "confirmed")

    assert len(received) == 1
    assert notifier.stats['subscriber_errors'] == 1


async def test_async_subscribers_are_scheduled():
    notifier = ResultNotifier()
    received = []

    async def subscriber(notification):
        received.append(notification.command_id)

    notifier.add_subscriber(subscriber)
    notifier.emit("cmd-1", "d", Outcome.SUCCESS, "ok", "confirmed")
    assert received == []

    await drain()
    assert received == ["cmd-1"]


def test_tracking_is_bounded():
    notifier = ResultNotifier(max_tracked=2)
    for i in range(3):
        notifier.emit(f"cmd-{i}", "d", Outcome.SUCCESS, "ok", "confirmed")
    assert not notifier.is_closed("cmd-0")
    assert notifier.is_closed("cmd-2")
