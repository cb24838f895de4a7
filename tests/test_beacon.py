import unittest

from fakenet import FakeClock

from ftb.beacon import BeaconDirectory, BeaconSender
from ftb.config import Config
from ftb.protocol import BeaconPayload, MessageFactory, MsgKind, Services


class BeaconDirectoryTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.config = Config(id="me", hostname="h", maximum_beacon_period=1000)
        self.directory = BeaconDirectory(self.config, clock=self.clock)
        self.bob = MessageFactory("bob@lab-02")

    def _beacon(self, port=4105, factory=None):
        return (factory or self.bob).beacon(port, Services(download=True))

    def test_upsert_keeps_one_entry_per_identity_and_port(self):
        self.directory.receive(self._beacon(), "10.0.0.2")
        self.clock.advance(0.5)
        latest = self._beacon()
        self.directory.receive(latest, "10.0.0.2")
        self.assertEqual(len(self.directory), 1)
        entry = self.directory.lookup("bob@lab-02", 4105)
        self.assertIs(entry.beacon, latest)
        self.assertEqual(entry.last_seen, self.clock.now)
        self.assertEqual(entry.host, "10.0.0.2")

    def test_distinct_ports_are_distinct_peers(self):
        self.directory.receive(self._beacon(4105), "10.0.0.2")
        self.directory.receive(self._beacon(4106), "10.0.0.2")
        self.assertEqual(len(self.directory), 2)

    def test_expiry(self):
        self.directory.receive(self._beacon(), "10.0.0.2")
        self.clock.advance(0.5)
        carol = MessageFactory("carol@lab-03")
        self.directory.receive(self._beacon(factory=carol), "10.0.0.3")

        self.clock.advance(0.5)          # bob exactly at the limit
        self.assertEqual(self.directory.expire(), 0)

        self.clock.advance(0.25)
        self.assertEqual(self.directory.expire(), 1)
        self.assertIsNone(self.directory.find("bob@lab-02"))
        self.assertIsNotNone(self.directory.find("carol@lab-03"))

    def test_refresh_postpones_expiry(self):
        self.directory.receive(self._beacon(), "10.0.0.2")
        self.clock.advance(0.9)
        self.directory.receive(self._beacon(), "10.0.0.2")
        self.clock.advance(0.9)
        self.assertEqual(self.directory.expire(), 0)
        self.assertEqual(len(self.directory), 1)

    def test_ignores_non_beacons(self):
        self.directory.receive(self.bob.search_request("path", "/"), "10.0.0.2")
        self.assertEqual(len(self.directory), 0)

    def test_entry_text(self):
        self.directory.receive(self._beacon(), "10.0.0.2")
        text = str(self.directory.entries()[0])
        self.assertTrue(text.startswith("Identifier: bob@lab-02, Port: 4105, Services: "))
        self.assertIn("download=true", text)


class BeaconSenderTests(unittest.TestCase):
    def test_announce(self):
        sent = []
        config = Config(id="me", hostname="h", server_port=6000, upload=True)
        sender = BeaconSender(config, MessageFactory(config.identity),
                              lambda m: sent.append(m) or True)
        self.assertTrue(sender.announce())
        (msg,) = sent
        self.assertIs(msg.kind, MsgKind.BEACON)
        self.assertEqual(msg.identity, "me@h")
        self.assertIsInstance(msg.payload, BeaconPayload)
        self.assertEqual(msg.payload.server_port, 6000)
        self.assertEqual(msg.payload.services, config.services)


if __name__ == "__main__":
    unittest.main()
