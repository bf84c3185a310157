"""Tests for the chain stream supervisor and its reconnect state machine."""

import asyncio

from kraven.chain import CLANKER_FACTORY_ADDRESSES, DOPPLER_AIRLOCK_ADDRESS, build_log_watches
from kraven.models import PROTOCOL_CLANKER, PROTOCOL_DOPPLER
from kraven.supervisor import LOST_MESSAGE, RESTORED_MESSAGE, StreamSupervisor

from .conftest import CLANKER_FACTORY, DEPLOYER, TOKEN, TX, FakeNotifier, FakeTransport, SleepRecorder, run, topic_for


class Harness:
    def __init__(self, transports, sleep=None, notifier=None, **kwargs):
        self.transports = list(transports)
        self.connects = 0
        self.events = []
        self.notifier = notifier or FakeNotifier()
        self.sleep = sleep or SleepRecorder()
        self.supervisor = StreamSupervisor(
            build_log_watches(CLANKER_FACTORY_ADDRESSES, DOPPLER_AIRLOCK_ADDRESS),
            emit=self.emit,
            connect=self.connect,
            notify_status=self.notifier.send_status_message,
            sleep=self.sleep,
            **kwargs,
        )

    async def emit(self, event):
        self.events.append(event)

    async def connect(self):
        self.connects += 1
        transport = self.transports.pop(0) if len(self.transports) > 1 else self.transports[0]
        if isinstance(transport, Exception):
            raise transport
        return transport


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def clanker_log(topic0):
    return {
        "topics": [topic0, topic_for(TOKEN), topic_for(DEPLOYER)],
        "data": "0x",
        "transactionHash": TX,
        "blockNumber": "0x2a",
    }


class TestConnect:
    def test_subscribes_every_contract_and_emits_events(self):
        transport = FakeTransport(height=1234)
        h = Harness([transport])

        async def scenario():
            await h.supervisor.start()
            health = h.supervisor.health()
            watch = h.supervisor.watches[0]
            transport.subscriptions[watch.address].queue.put_nowait({"topics": []})
            transport.subscriptions[watch.address].queue.put_nowait(clanker_log(watch.topic0))
            await wait_until(lambda: h.events)
            await h.supervisor.stop()
            return health

        health = run(scenario())
        assert health["state"] == "connected"
        assert health["subscriptions"] == 4
        assert health["lastHeight"] == 1234
        assert health["families"] == {PROTOCOL_CLANKER: True, PROTOCOL_DOPPLER: True}
        assert h.events[0].contract_address == TOKEN
        assert h.events[0].block_number == 42
        assert h.supervisor.stats["dropped_logs"] == 1
        assert transport.closed
        assert h.supervisor.state == "disconnected"

    def test_one_failed_subscription_does_not_block_the_rest(self):
        transport = FakeTransport(fail_subscribe={DOPPLER_AIRLOCK_ADDRESS})
        h = Harness([transport])

        async def scenario():
            await h.supervisor.start()
            snapshot = (
                h.supervisor.is_connected,
                h.supervisor.health()["subscriptions"],
                h.supervisor.family_connected(PROTOCOL_CLANKER),
                h.supervisor.family_connected(PROTOCOL_DOPPLER),
            )
            await h.supervisor.stop()
            return snapshot

        connected, subscriptions, clanker_up, doppler_up = run(scenario())
        assert connected
        assert subscriptions == 3
        assert clanker_up
        assert not doppler_up

    def test_no_subscription_at_all_counts_as_failure(self):
        every = set(CLANKER_FACTORY_ADDRESSES) | {DOPPLER_AIRLOCK_ADDRESS}
        broken = FakeTransport(fail_subscribe=every)
        healthy = FakeTransport()
        h = Harness([broken, healthy])

        async def scenario():
            await h.supervisor.start()
            pending = h.supervisor.reconnect_pending
            await h.supervisor._reconnect_task
            connected = h.supervisor.is_connected
            await h.supervisor.stop()
            return pending, connected

        pending, connected = run(scenario())
        assert pending
        assert connected
        assert broken.closed
        assert h.connects == 2
        assert h.sleep.delays == [5.0]
        assert h.notifier.status == []


class TestReconnect:
    def test_schedule_twice_makes_one_attempt(self):
        h = Harness([FakeTransport()])

        async def scenario():
            first = h.supervisor.schedule_reconnect()
            second = h.supervisor.schedule_reconnect()
            await h.supervisor._reconnect_task
            await h.supervisor.stop()
            return first, second

        first, second = run(scenario())
        assert first is True
        assert second is False
        assert h.connects == 1
        assert h.supervisor.reconnect_attempts == 1

    def test_failed_attempt_rearms_same_delay(self):
        h = Harness([ConnectionError("refused"), ConnectionError("refused"), FakeTransport()])

        async def scenario():
            h.supervisor.schedule_reconnect()
            await h.supervisor._reconnect_task
            connected = h.supervisor.is_connected
            await h.supervisor.stop()
            return connected

        assert run(scenario())
        assert h.connects == 3
        assert h.sleep.delays == [5.0, 5.0, 5.0]

    def test_probe_failure_reconnects_with_one_message_each_way(self):
        first = FakeTransport(height=10)
        second = FakeTransport(height=11)
        h = Harness([first, second], probe_interval_sec=0.01)

        async def scenario():
            await h.supervisor.start()
            first.fail_height = True
            await wait_until(lambda: len(h.notifier.status) == 2)
            connected = h.supervisor.is_connected
            await h.supervisor.stop()
            return connected

        assert run(scenario())
        assert h.notifier.status == [LOST_MESSAGE, RESTORED_MESSAGE]
        assert first.closed
        assert len(first.unsubscribed) == 4
        assert second.closed
        assert h.supervisor.reconnect_attempts == 1
        assert h.supervisor.last_height == 11

    def test_loss_while_announcing_restore_schedules_new_reconnect(self):
        first = FakeTransport()
        second = FakeTransport()
        third = FakeTransport()

        class DropOnRestore(FakeNotifier):
            async def send_status_message(self, text):
                self.status.append(text)
                if text == RESTORED_MESSAGE and self.status.count(RESTORED_MESSAGE) == 1:
                    second.subscriptions[CLANKER_FACTORY].queue.put_nowait(None)
                    await asyncio.sleep(0.01)
                return True

        h = Harness([first, second, third], notifier=DropOnRestore())

        async def scenario():
            await h.supervisor.start()
            first.subscriptions[CLANKER_FACTORY].queue.put_nowait(None)
            await wait_until(lambda: len(h.notifier.status) == 4)
            connected = h.supervisor.is_connected
            await h.supervisor.stop()
            return connected

        assert run(scenario())
        assert h.notifier.status == [LOST_MESSAGE, RESTORED_MESSAGE, LOST_MESSAGE, RESTORED_MESSAGE]
        assert h.connects == 3
        assert second.closed
        assert h.supervisor.reconnect_attempts == 2

    def test_ended_stream_triggers_reconnect(self):
        first = FakeTransport()
        second = FakeTransport()
        h = Harness([first, second])

        async def scenario():
            await h.supervisor.start()
            first.subscriptions[CLANKER_FACTORY].queue.put_nowait(None)
            await wait_until(lambda: len(h.notifier.status) == 2)
            await h.supervisor.stop()

        run(scenario())
        assert h.notifier.status == [LOST_MESSAGE, RESTORED_MESSAGE]
        assert h.connects == 2
        assert first.closed

    def test_stop_cancels_pending_reconnect(self):
        h = Harness([ConnectionError("refused")], sleep=asyncio.sleep, reconnect_delay_sec=10)

        async def scenario():
            await h.supervisor.start()
            pending = h.supervisor.reconnect_pending
            await h.supervisor.stop()
            return pending

        assert run(scenario())
        assert not h.supervisor.reconnect_pending
        assert h.connects == 1
        assert h.supervisor.schedule_reconnect() is False
