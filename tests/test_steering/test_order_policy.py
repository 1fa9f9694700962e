from steerline.order_policy import OrderPolicy, is_interrupt_text, thread_key


def test_stale_plain_message_is_rejected():
    policy = OrderPolicy()
    key = thread_key(1)

    assert policy.evaluate(key, 1000, "hello").accepted
    decision = policy.evaluate(key, 500, "hello")

    assert not decision.accepted
    assert policy.last_seen(key) == 1000


def test_stale_interrupt_bypasses_gate():
    policy = OrderPolicy()
    key = thread_key(1)
    policy.evaluate(key, 1000, "hello")

    decision = policy.evaluate(key, 500, "!hello")

    assert decision.accepted
    assert decision.interrupt_bypass_applied
    assert policy.last_seen(key) == 1000


def test_equal_timestamps_are_accepted():
    policy = OrderPolicy()
    key = thread_key(1)
    policy.evaluate(key, 1000, "a")

    assert policy.evaluate(key, 1000, "b").accepted


def test_threads_are_independent():
    policy = OrderPolicy()
    policy.evaluate(thread_key(1, 5), 1000, "a")

    assert policy.evaluate(thread_key(1, 6), 10, "b").accepted


def test_general_topic_shares_main_thread():
    assert thread_key(1, None) == thread_key(1, 1) == "1:main"
    assert thread_key(1, 7) == "1:7"


def test_interrupt_detection_ignores_leading_whitespace():
    assert is_interrupt_text("  !stop")
    assert not is_interrupt_text("stop!")
