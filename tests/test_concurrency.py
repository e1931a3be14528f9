from flowci.concurrency import ConcurrencyLockTable
from flowci.definition import parse
from flowci.matrix import expand_all


def _instances(n):
    definition = parse({"jobs": {f"j{i}": {"steps": [{"run": "true"}]} for i in range(n)}})
    return expand_all(definition.jobs.values())


def test_second_instance_waits_for_the_holder():
    a, b = _instances(2)
    locks = ConcurrencyLockTable()

    assert locks.acquire("deploy", a) == (True, None)
    assert locks.acquire("deploy", b) == (False, None)
    assert locks.waiting("deploy") == [b]

    assert locks.release("deploy", a) is b
    assert locks.holder("deploy") is b
    assert locks.waiting("deploy") == []


def test_cancel_in_progress_displaces_the_holder():
    a, b = _instances(2)
    locks = ConcurrencyLockTable()
    locks.acquire("deploy", a)

    acquired, displaced = locks.acquire("deploy", b, cancel_in_progress=True)

    assert acquired is True
    assert displaced is a
    assert locks.holder("deploy") is b
    # the displaced holder releasing late must not free the group
    assert locks.release("deploy", a) is None
    assert locks.holder("deploy") is b


def test_groups_are_independent():
    a, b = _instances(2)
    locks = ConcurrencyLockTable()
    assert locks.acquire("deploy-main", a) == (True, None)
    assert locks.acquire("deploy-dev", b) == (True, None)


def test_release_all():
    a, b, c = _instances(3)
    locks = ConcurrencyLockTable()
    locks.acquire("x", a)
    locks.acquire("x", b)
    locks.acquire("y", c)

    assert locks.release_all() == ["x", "y"]
    assert locks.holder("x") is None
    assert locks.waiting("x") == []
