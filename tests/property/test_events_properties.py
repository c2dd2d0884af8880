"""EventHub のプロパティベーステスト

- 登録・解除の任意の列の後、配信は有効なリスナーにちょうど1回ずつ届く
- 解除済みハンドルの dispose は他の登録に影響しない
"""
import unittest

from hypothesis import given, settings
from hypothesis import strategies as st

from authbridge.core.events import EventHub

EVENTS = ["AUTHORIZED", "UNAUTHORIZED", "ERROR"]

# (操作, リスナー番号, イベント) の列
operation_strategy = st.tuples(
    st.sampled_from(["add", "dispose"]),
    st.integers(min_value=0, max_value=4),
    st.sampled_from(EVENTS),
)


class TestEventHubDelivery(unittest.TestCase):
    """配信先が登録状態と一致することのプロパティテスト"""

    @given(operations=st.lists(operation_strategy, max_size=40), event=st.sampled_from(EVENTS))
    @settings(max_examples=200)
    def test_delivers_once_to_each_active_listener(self, operations, event):
        hub = EventHub()
        calls = []
        listeners = [lambda payload, i=i: calls.append((i, payload)) for i in range(5)]
        handles = {}
        expected = set()

        for action, index, event_type in operations:
            key = (index, event_type)
            if action == "add":
                handles.setdefault(key, []).append(hub.add_listener(event_type, listeners[index]))
                expected.add(key)
            elif handles.get(key):
                handles[key].pop().dispose()
                expected.discard(key)

        hub.trigger(event, "payload")

        active = sorted(index for index, event_type in expected if event_type == event)
        self.assertEqual(sorted(index for index, _ in calls), active)
        self.assertTrue(all(payload == "payload" for _, payload in calls))
        self.assertEqual(hub.listener_count(event), len(active))

    @given(repeat=st.integers(min_value=1, max_value=5))
    @settings(max_examples=20)
    def test_dispose_is_idempotent(self, repeat):
        hub = EventHub()
        calls = []
        first = hub.add_listener("ERROR", lambda payload: calls.append("first"))
        hub.add_listener("ERROR", lambda payload: calls.append("second"))

        for _ in range(repeat):
            first.dispose()
        hub.trigger("ERROR")

        self.assertEqual(calls, ["second"])


if __name__ == "__main__":
    unittest.main()
