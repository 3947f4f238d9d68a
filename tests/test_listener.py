import tempfile
import unittest
from pathlib import Path
from unittest import mock


def _sync_body(next_batch: str, events):
    return {"next_batch": next_batch, "rooms": {"join": {"!r:example.org": {"timeline": {"events": events}}}}}


class TestMatrixListener(unittest.TestCase):
    def test_first_poll_skips_backlog(self) -> None:
        from matrix_port.ports.matrix.listener import MatrixListener

        client = mock.Mock(user_id="@bridge:example.org")
        client.sync.return_value = _sync_body("s1", [
            {"type": "m.room.message", "sender": "@me:example.org", "event_id": "$old", "content": {"msgtype": "m.text", "body": "old"}},
        ])
        with tempfile.TemporaryDirectory() as td:
            cursor = Path(td) / "sync_cursor.json"
            listener = MatrixListener(client, "matrix:main", cursor)
            self.assertEqual(listener.poll(), [])
            client.sync.assert_called_with(timeout_ms=0)

            client.sync.return_value = _sync_body("s2", [
                {"type": "m.room.message", "sender": "@me:example.org", "event_id": "$new", "content": {"msgtype": "m.text", "body": "new"}},
            ])
            resumed = MatrixListener(client, "matrix:main", cursor)
            events = resumed.poll(timeout_ms=10)
            client.sync.assert_called_with(since="s1", timeout_ms=10)
            self.assertEqual(len(events), 1)
            ev = events[0]
            self.assertEqual(ev.origin_bot_id, "@bridge:example.org")
            self.assertEqual(ev.adapter_id, "matrix:main")
            self.assertEqual(ev.channel_id, "!r:example.org")
            self.assertEqual(ev.user_id, "@me:example.org")
            self.assertEqual(ev.text, "new")

    def test_first_poll_without_next_batch_stays_initial(self) -> None:
        from matrix_port.ports.matrix.listener import MatrixListener

        client = mock.Mock(user_id="@bridge:example.org")
        client.sync.return_value = {"rooms": {}}
        with tempfile.TemporaryDirectory() as td:
            listener = MatrixListener(client, "matrix:main", Path(td) / "sync_cursor.json")
            self.assertEqual(listener.poll(), [])
            self.assertEqual(listener.poll(timeout_ms=10), [])
            self.assertEqual(client.sync.call_args_list, [mock.call(timeout_ms=0), mock.call(timeout_ms=0)])

    def test_parse_filters_and_maps_media(self) -> None:
        from matrix_port.ports.matrix.listener import MatrixListener

        client = mock.Mock(user_id="@bridge:example.org")
        with tempfile.TemporaryDirectory() as td:
            listener = MatrixListener(client, "matrix:main", Path(td) / "c.json")
            events = listener.parse_sync(_sync_body("s", [
                {"type": "m.room.member", "sender": "@x:example.org", "content": {"membership": "join"}},
                {"type": "m.room.message", "sender": "@me:example.org", "content": {
                    "msgtype": "m.text", "body": "* fixed", "m.new_content": {"body": "fixed"},
                }},
                {"type": "m.room.message", "sender": "@me:example.org", "content": {
                    "msgtype": "m.image", "body": "cat.png", "url": "mxc://example.org/cat", "info": {"mimetype": "image/png"},
                }},
                {"type": "m.room.message", "sender": "@me:example.org", "content": {"msgtype": "m.text", "body": ""}},
            ]))
            self.assertEqual(len(events), 1)
            (el,) = events[0].elements
            self.assertEqual((el.type, el.ref, el.name, el.mime_type), ("image", "mxc://example.org/cat", "cat.png", "image/png"))


if __name__ == "__main__":
    unittest.main()
