import os

from twisted.trial import unittest

from claimconfig import ClaimBotConfig

SAMPLE = """
[irc]
server = "irc.example.net"
port = 6667
ssl = false
nick = "FreeLoot"
channels = ["#games", "#loot"]

[access]
allowed_users = ["alice", "bob"]
admins = ["alice"]

[claim]
claim_command = "/opt/claim/claim_games.sh --dryrun"
claim_timeout = 120
lockdir = "/run/claimbot"
"""


class ClaimBotConfigTests(unittest.TestCase):
    def write(self, text, name="ClaimBot.toml"):
        d = self.mktemp()
        os.makedirs(d)
        path = os.path.join(d, name)
        with open(path, "w") as f:
            f.write(text)
        return d, path

    def test_defaults(self):
        c = ClaimBotConfig()
        self.assertEqual(c.trigger, "$")
        self.assertEqual(c.allowed_users, [])
        self.assertEqual(c.claim_command, "~/claim_games_bot/claim_games.sh")
        self.assertEqual(c.claim_timeout, 600)
        self.assertIsNone(c.claim_cwd)

    def test_tables_are_flattened(self):
        _, path = self.write(SAMPLE)
        c = ClaimBotConfig().fetch(path)
        self.assertEqual((c.server, c.port, c.ssl, c.nick),
                         ("irc.example.net", 6667, False, "FreeLoot"))
        self.assertEqual(c.channels, ["#games", "#loot"])
        self.assertEqual(c.allowed_users, ["alice", "bob"])
        self.assertEqual(c.admins, ["alice"])
        self.assertEqual(c.claim_command, "/opt/claim/claim_games.sh --dryrun")
        self.assertEqual(c.lockdir, "/run/claimbot")
        # untouched keys keep their defaults
        self.assertEqual(c.trigger, "$")
        self.assertEqual(c.line_delay, 1.0)

    def test_search_path(self):
        d, _ = self.write(SAMPLE)
        c = ClaimBotConfig()
        self.patch(ClaimBotConfig, "__search_path__", [self.mktemp(), d])
        c.fetch()
        self.assertEqual(c.nick, "FreeLoot")

    def test_missing_file(self):
        self.patch(ClaimBotConfig, "__search_path__", [self.mktemp()])
        self.assertRaises(FileNotFoundError, ClaimBotConfig().fetch)

    def test_broken_file(self):
        _, path = self.write("[irc\nnick = ")
        self.assertRaises(Exception, ClaimBotConfig().fetch, path)
        self.assertEqual(len(self.flushLoggedErrors()), 1)
