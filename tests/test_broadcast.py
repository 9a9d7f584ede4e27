import threading
import time

from mbmd.broadcast import Broadcaster


def test_all_runners_receive_every_item_in_order():
    items = [1, 2, 3, 4]
    hub = Broadcaster(iter(items))
    first, second = [], []
    hub.attach_runner(first.extend)
    hub.attach_runner(second.extend)
    hub.run()
    assert hub.wait(1)
    assert first == items
    assert second == items


def test_attach_iterator_ends_when_source_ends():
    items = ["a", "b"]
    hub = Broadcaster(items)
    received = hub.attach()
    hub.run()
    assert list(received) == items


def test_wait_times_out_before_run():
    hub = Broadcaster([])
    assert hub.wait(0.01) is False


def test_run_waits_for_slow_runners():
    items = [1, 2]
    collected = []

    def slow(values):
        for value in values:
            time.sleep(0.02)
            collected.append(value)

    hub = Broadcaster(items)
    hub.attach_runner(slow)
    hub.run()
    assert collected == items


def test_run_in_thread_and_wait():
    items = list(range(10))
    hub = Broadcaster(items)
    total = []
    hub.attach_runner(lambda values: total.append(sum(values)))
    threading.Thread(target=hub.run, daemon=True).start()
    assert hub.wait(2)
    assert total == [sum(items)]