import threading

from serfkit.lamport import LamportClock


def test_lamport_clock_sequence():
    clock = LamportClock()
    assert clock.time() == 0
    assert clock.increment() == 1
    assert clock.time() == 1

    clock.witness(41)
    assert clock.time() == 42

    clock.witness(41)
    assert clock.time() == 42

    clock.witness(30)
    assert clock.time() == 42


def test_witness_equal_value_moves_ahead():
    clock = LamportClock()
    clock.witness(0)
    assert clock.time() == 1


def test_concurrent_increments_are_not_lost():
    clock = LamportClock()

    def bump():
        for _ in range(1000):
            clock.increment()

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert clock.time() == 4000