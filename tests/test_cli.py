import io
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest import mock

from ftb.__main__ import EXIT_FAILED, EXIT_NO_ANSWER, EXIT_OK, _build_parser, main
from ftb.outcome import Outcome
from ftb.protocol import Family, MessageFactory
from ftb.transport import StartupError


class FakePeer:
    """Answers every request with a scripted outcome (or none)."""

    answer = None           # None, True or False
    built: list = []

    def __init__(self, config, sink=None, progress=None, **kw):
        self.config = config
        self.sink = sink
        self.factory = MessageFactory("me@h")
        self.closed = False
        self.serve = kw.get("serve", True)
        FakePeer.built.append(self)

    def start(self):
        pass

    def close(self):
        self.closed = True

    def _reply(self, request):
        if self.answer is not None:
            self.sink(Outcome(request.family, self.answer, request.key, ("line",)))
        return request

    def search(self, search_type, query):
        return self._reply(self.factory.search_request(search_type, query))

    def delete(self, target, remote):
        return self._reply(self.factory.target_request(Family.DELETE, target, remote))


class CliTests(unittest.TestCase):
    def run_main(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err), \
                self.assertRaises(SystemExit) as cm:
            main(["--config", "/nonexistent/ftb.properties", *argv])
        return cm.exception.code, out.getvalue(), err.getvalue()

    def test_parser(self):
        args = _build_parser().parse_args(
            ["--root", "share", "download", "bob@h", "/notes.txt"])
        self.assertEqual(args.command, "download")
        self.assertEqual(args.root, "share")
        self.assertIsNone(args.local)
        self.assertEqual(args.wait, 30)

        args = _build_parser().parse_args(["search", "FileName", "notes"])
        self.assertEqual(args.type, "filename")

    def _with_answer(self, answer):
        peer_cls = type("ScriptedPeer", (FakePeer,), {"answer": answer})
        return mock.patch("ftb.__main__.Peer", peer_cls)

    def test_success_exit_code(self):
        with self._with_answer(True):
            code, _, _ = self.run_main("delete", "bob@h", "/x.txt", "--wait", "1")
        self.assertEqual(code, EXIT_OK)

    def test_failure_exit_code(self):
        with self._with_answer(False):
            code, _, _ = self.run_main("delete", "bob@h", "/x.txt", "--wait", "1")
        self.assertEqual(code, EXIT_FAILED)

    def test_one_shot_commands_do_not_serve(self):
        FakePeer.built.clear()
        with self._with_answer(True):
            self.run_main("delete", "bob@h", "/x.txt", "--wait", "1")
            self.run_main("search", "path", "/", "--wait", "0.2")
        self.assertEqual(len(FakePeer.built), 2)
        self.assertTrue(all(p.serve is False for p in FakePeer.built))

    def test_no_answer_exit_code(self):
        with self._with_answer(None):
            code, _, err = self.run_main("search", "path", "/", "--wait", "0.2")
        self.assertEqual(code, EXIT_NO_ANSWER)
        self.assertIn("No answer", err)

    def test_startup_error(self):
        class Broken(FakePeer):
            def start(self):
                raise StartupError("Cannot join 239.255.41.5:4105")
        with mock.patch("ftb.__main__.Peer", Broken):
            code, _, err = self.run_main("delete", "bob@h", "/x.txt")
        self.assertEqual(code, EXIT_FAILED)
        self.assertIn("Cannot join", err)

    def test_upload_missing_local_file(self):
        code, _, err = self.run_main("upload", "bob@h", "/nonexistent/file.txt", "/f.txt")
        self.assertEqual(code, EXIT_FAILED)
        self.assertIn("not a file", err)


if __name__ == "__main__":
    unittest.main()
