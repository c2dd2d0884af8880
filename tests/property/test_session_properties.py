"""SessionState とストア射影のプロパティベーステスト

- 初期化完了後のステータスは AUTHORIZED / UNAUTHORIZED のいずれか
- STATUS_CHANGE / ERROR の配信回数は実際の変化回数と一致する
- ストアの authenticated は最後の認証イベントに従う
"""
import unittest

from hypothesis import given, settings
from hypothesis import strategies as st

from authbridge.bridge import StoreState, reduce
from authbridge.core.session import SessionState
from authbridge.errors import ClientError, ClientErrorType
from authbridge.models import ClientEvent, ClientStatus

status_strategy = st.sampled_from(list(ClientStatus))

error_strategy = st.one_of(
    st.none(),
    st.builds(
        ClientError,
        type=st.sampled_from(list(ClientErrorType)),
        message=st.text(max_size=20),
    ),
)


class TestStatusTransitions(unittest.TestCase):
    """ステータス遷移のプロパティテスト"""

    @given(statuses=st.lists(status_strategy, max_size=30))
    @settings(max_examples=200)
    def test_resolved_status_never_regresses(self, statuses):
        session = SessionState(detect_unexpected_auth_change=False)
        events = []
        session.add_listener(ClientEvent.STATUS_CHANGE, events.append)
        changes = 0
        resolved = False

        for status in statuses:
            changed = session.set_status(status)
            changes += int(changed)
            if resolved:
                self.assertIn(
                    session.get_status(), (ClientStatus.AUTHORIZED, ClientStatus.UNAUTHORIZED)
                )
            resolved = resolved or session.is_initialized()

        self.assertEqual(len(events), changes)
        self.assertEqual(session.is_authenticated(), session.get_status() == ClientStatus.AUTHORIZED)


class TestErrorDeduplication(unittest.TestCase):
    """エラー設定のプロパティテスト"""

    @given(errors=st.lists(error_strategy, max_size=30))
    @settings(max_examples=200)
    def test_error_event_only_on_type_change(self, errors):
        session = SessionState()
        events = []
        session.add_listener(ClientEvent.ERROR, events.append)
        expected = 0
        current_type = None

        for error in errors:
            new_type = error.type if error else None
            changed = session.set_error(error)
            self.assertEqual(changed, new_type != current_type)
            if changed:
                expected += 1
                current_type = new_type

        self.assertEqual(len(events), expected)
        current = session.get_error()
        self.assertEqual(current.type if current else None, current_type)


class TestStoreProjection(unittest.TestCase):
    """ストア射影のプロパティテスト"""

    @given(
        events=st.lists(
            st.sampled_from([ClientEvent.AUTHORIZED, ClientEvent.UNAUTHORIZED]), min_size=1
        )
    )
    @settings(max_examples=100)
    def test_authenticated_follows_last_event(self, events):
        state = StoreState()
        user = {"sub": "user-1"}

        for event in events:
            state = reduce(state, event, user if event == ClientEvent.AUTHORIZED else None)

        authorized = events[-1] == ClientEvent.AUTHORIZED
        self.assertEqual(state.authenticated, authorized)
        self.assertTrue(state.initialized)
        self.assertEqual(state.user, user if authorized else None)


if __name__ == "__main__":
    unittest.main()
