import tempfile
import unittest
from pathlib import Path

from fakenet import FakeClock

from ftb.config import Config
from ftb.files import DeleteCorrelator, DownloadCorrelator
from ftb.protocol import Family, MessageFactory, MsgKind, PortPayload
from ftb.search import SearchCorrelator

ALICE = "alice@lab-01"
BOB = "bob@lab-02"


class _Harness(unittest.TestCase):
    """alice asks, bob answers; both sides are driven by hand."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.bob_root = base / "bob"
        self.bob_root.mkdir()
        (self.bob_root / "notes.txt").write_text("hello")
        (self.bob_root / "old.txt").write_text("bye")

        self.clock = FakeClock()
        self.alice_cfg = Config(id="alice", hostname="lab-01", root_dir=base / "alice",
                                request_timeout=2000)
        self.bob_cfg = Config(id="bob", hostname="lab-02", root_dir=self.bob_root,
                              delete=True, search_match="path-filename")
        self.alice_f = MessageFactory(ALICE)
        self.bob_f = MessageFactory(BOB)
        self.alice_sent = []
        self.bob_sent = []
        self.outcomes = []

    def tearDown(self):
        self._tmp.cleanup()

    def make(self, cls, side, send_ok=True, serving=True):
        cfg, factory, sent = {
            "alice": (self.alice_cfg, self.alice_f, self.alice_sent),
            "bob": (self.bob_cfg, self.bob_f, self.bob_sent),
        }[side]

        def send(msg):
            sent.append(msg)
            return send_ok
        return cls(cfg, factory, send, self.outcomes.append, clock=self.clock,
                   serving=serving)


class DeleteCorrelationTests(_Harness):
    def setUp(self):
        super().setUp()
        self.alice = self.make(DeleteCorrelator, "alice")
        self.bob = self.make(DeleteCorrelator, "bob")

    def _round_trip(self, path):
        request = self.alice_f.target_request(Family.DELETE, BOB, path)
        self.assertTrue(self.alice.submit(request))
        self.bob.receive(request, "10.0.0.1")
        self.assertEqual(self.bob.process_incoming(), 1)
        (reply,) = self.bob_sent
        self.alice.receive(reply, "10.0.0.2")
        self.alice.process_incoming()
        return request, reply

    def test_hit_produces_one_outcome(self):
        request, reply = self._round_trip("/old.txt")
        self.assertIs(reply.kind, MsgKind.DELETE_RESULT)
        self.assertEqual(reply.response_key, request.key)
        self.assertFalse((self.bob_root / "old.txt").exists())

        (outcome,) = self.outcomes
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.request_key, request.key)
        self.assertIn("Successfully deleted /old.txt At bob@lab-02", outcome.render())
        self.assertEqual(self.alice.inbox_size(), 0)
        self.assertEqual(self.alice.pending(), [])

    def test_refused_delete(self):
        _, reply = self._round_trip("/missing.txt")
        self.assertIs(reply.kind, MsgKind.DELETE_ERROR)
        (outcome,) = self.outcomes
        self.assertFalse(outcome.success)
        self.assertIn("Failed To Delete /missing.txt", outcome.render())

    def test_duplicate_answer_ignored(self):
        _, reply = self._round_trip("/old.txt")
        self.alice.receive(reply, "10.0.0.2")
        self.alice.process_incoming()
        self.assertEqual(len(self.outcomes), 1)

    def test_unknown_response_ignored(self):
        foreign = MessageFactory("carol@lab-03").target_request(Family.DELETE, BOB, "/x.txt")
        self.alice.receive(self.bob_f.error(foreign), "10.0.0.2")
        self.assertEqual(self.alice.process_incoming(), 1)
        self.assertEqual(self.outcomes, [])

    def test_request_for_someone_else_dropped(self):
        request = self.alice_f.target_request(Family.DELETE, "carol@lab-03", "/old.txt")
        self.bob.receive(request, "10.0.0.1")
        self.bob.process_incoming()
        self.assertEqual(self.bob_sent, [])
        self.assertTrue((self.bob_root / "old.txt").exists())

    def test_disabled_service_answers_error(self):
        self.bob_cfg.delete = False
        request = self.alice_f.target_request(Family.DELETE, BOB, "/old.txt")
        self.bob.receive(request, "10.0.0.1")
        self.bob.process_incoming()
        (reply,) = self.bob_sent
        self.assertIs(reply.kind, MsgKind.DELETE_ERROR)
        self.assertTrue((self.bob_root / "old.txt").exists())

    def test_pending_expires(self):
        request = self.alice_f.target_request(Family.DELETE, BOB, "/old.txt")
        self.alice.submit(request)
        self.clock.advance(1.5)
        self.assertEqual(self.alice.evict_stale(), 0)
        self.clock.advance(1.0)
        self.assertEqual(self.alice.evict_stale(), 1)

        self.alice.receive(self.bob_f.reply(request, MsgKind.DELETE_RESULT), "10.0.0.2")
        self.alice.process_incoming()
        self.assertEqual(self.outcomes, [])

    def test_failed_send_leaves_nothing_pending(self):
        alice = self.make(DeleteCorrelator, "alice", send_ok=False)
        request = self.alice_f.target_request(Family.DELETE, BOB, "/old.txt")
        self.assertFalse(alice.submit(request))
        self.assertEqual(alice.pending(), [])

    def test_inbox_keyed_by_message(self):
        request = self.alice_f.target_request(Family.DELETE, BOB, "/old.txt")
        self.bob.receive(request, "10.0.0.1")
        self.bob.receive(request, "10.0.0.1")
        self.assertEqual(self.bob.inbox_size(), 1)

    def test_request_only_side_drops_requests_but_collects_answers(self):
        bob = self.make(DeleteCorrelator, "bob", serving=False)
        request = self.alice_f.target_request(Family.DELETE, BOB, "/old.txt")
        bob.receive(request, "10.0.0.1")
        self.assertEqual(bob.process_incoming(), 1)
        self.assertEqual(self.bob_sent, [])
        self.assertTrue((self.bob_root / "old.txt").exists())

        own = self.bob_f.target_request(Family.DELETE, ALICE, "/x.txt")
        self.assertTrue(bob.submit(own))
        bob.receive(self.alice_f.error(own), "10.0.0.1")
        bob.process_incoming()
        (outcome,) = self.outcomes
        self.assertEqual(outcome.request_key, own.key)
        self.assertFalse(outcome.success)


class SearchCorrelationTests(_Harness):
    def setUp(self):
        super().setUp()
        self.alice = self.make(SearchCorrelator, "alice")
        self.bob = self.make(SearchCorrelator, "bob")

    def _ask(self, search_type, query):
        request = self.alice_f.search_request(search_type, query)
        self.alice.submit(request)
        self.bob.receive(request, "10.0.0.1")
        self.bob.process_incoming()
        return request

    def test_results_fan_out(self):
        self._ask("filename", "notes.txt")
        (result,) = self.bob_sent
        self.assertIs(result.kind, MsgKind.SEARCH_RESULT)
        self.assertEqual(result.payload.matched_path, "/notes.txt")

        carol = MessageFactory("carol@lab-03")
        request = self.alice.pending()[0].request
        for reply in (result, carol.search_result(request, "/a/notes.txt")):
            self.alice.receive(reply, "10.0.0.9")
        self.alice.process_incoming()

        self.assertEqual(len(self.outcomes), 2)
        self.assertTrue(all(o.success for o in self.outcomes))
        text = "\n".join(o.render() for o in self.outcomes)
        self.assertIn("Search Request: Search Type: 'filename', Search String: 'notes.txt'.",
                      text)
        self.assertIn("Search Result: '/notes.txt' At bob@lab-02", text)
        self.assertIn("Search Result: '/a/notes.txt' At carol@lab-03", text)
        self.assertEqual(len(self.alice.pending()), 1)

    def test_no_match_answers_error(self):
        self._ask("path", "/nothing.txt")
        (reply,) = self.bob_sent
        self.assertIs(reply.kind, MsgKind.SEARCH_ERROR)
        self.alice.receive(reply, "10.0.0.2")
        self.alice.process_incoming()
        (outcome,) = self.outcomes
        self.assertFalse(outcome.success)
        self.assertIn("Search Result: No Result At bob@lab-02", outcome.render())

    def test_search_type_beyond_search_match_refused(self):
        self._ask("substring", "notes")
        (reply,) = self.bob_sent
        self.assertIs(reply.kind, MsgKind.SEARCH_ERROR)


class DownloadServeTests(_Harness):
    def test_owner_answers_with_listener_port(self):
        bob = self.make(DownloadCorrelator, "bob")
        request = self.alice_f.target_request(Family.DOWNLOAD, BOB, "/notes.txt")
        bob.receive(request, "10.0.0.1")
        bob.process_incoming()
        try:
            (reply,) = self.bob_sent
            self.assertIs(reply.kind, MsgKind.DOWNLOAD_RESULT)
            self.assertIsInstance(reply.payload, PortPayload)
            self.assertGreater(reply.payload.port, 0)
            self.assertEqual(bob.active_handoffs(), 1)
        finally:
            bob.stop()
            bob.join(timeout=5)

    def test_missing_file_answers_error(self):
        bob = self.make(DownloadCorrelator, "bob")
        request = self.alice_f.target_request(Family.DOWNLOAD, BOB, "/nothing.txt")
        bob.receive(request, "10.0.0.1")
        bob.process_incoming()
        (reply,) = self.bob_sent
        self.assertIs(reply.kind, MsgKind.DOWNLOAD_ERROR)
        self.assertEqual(bob.active_handoffs(), 0)

    def test_error_answer_renders_failure(self):
        alice = self.make(DownloadCorrelator, "alice")
        request = self.alice_f.target_request(Family.DOWNLOAD, BOB, "/nothing.txt")
        alice.submit(request, Path(self._tmp.name) / "out.txt")
        alice.receive(self.bob_f.error(request), "10.0.0.2")
        alice.process_incoming()
        (outcome,) = self.outcomes
        self.assertFalse(outcome.success)
        self.assertIn("Download Result: Could not download the file.", outcome.render())


if __name__ == "__main__":
    unittest.main()
