import os

from twisted.internet import task
from twisted.internet.error import ProcessDone, ProcessExitedAlready, ProcessTerminated
from twisted.python.failure import Failure
from twisted.trial import unittest

from claimrun import (ScriptRunner, ScriptResult, ScriptAlreadyRunning,
                      ScriptTimeout)


class FakeProcessTransport:
    def __init__(self):
        self.stdinClosed = False
        self.signals = []

    def closeStdin(self):
        self.stdinClosed = True

    def signalProcess(self, signal):
        self.signals.append(signal)


class FakeProcessReactor(task.Clock):
    """A Clock that records spawned processes instead of running them."""
    def __init__(self):
        task.Clock.__init__(self)
        self.spawned = []

    def spawnProcess(self, processProtocol, executable, args=(), env=None, path=None):
        transport = FakeProcessTransport()
        processProtocol.makeConnection(transport)
        self.spawned.append((processProtocol, executable, list(args), env, path))
        return transport


class FailingReactor(FakeProcessReactor):
    def spawnProcess(self, *args, **kwargs):
        raise OSError("no such file")


class ScriptRunnerTests(unittest.TestCase):
    def setUp(self):
        self.lockdir = self.mktemp()
        os.makedirs(self.lockdir)
        self.reactor = FakeProcessReactor()
        self.runner = ScriptRunner("~/claim/claim_games.sh --headless", self.lockdir,
                                   timeout=60, cwd="/srv/claim", env={"A": "1"},
                                   reactor=self.reactor)

    def finish(self, proto, out=b"", err=b"", exitCode=0):
        if out:
            proto.childDataReceived(1, out)
        if err:
            proto.childDataReceived(2, err)
        if exitCode == 0:
            reason = Failure(ProcessDone(0))
        else:
            reason = Failure(ProcessTerminated(exitCode=exitCode))
        proto.processEnded(reason)

    def test_spawns_command(self):
        self.runner.run("run")
        proto, executable, args, env, path = self.reactor.spawned[0]
        home = os.path.expanduser("~")
        self.assertEqual(executable, home + "/claim/claim_games.sh")
        self.assertEqual(args, [home + "/claim/claim_games.sh", "--headless"])
        self.assertEqual(env, {"A": "1"})
        self.assertEqual(path, "/srv/claim")
        self.assertTrue(proto.transport.stdinClosed)

    def test_collects_output(self):
        d = self.runner.run("run")
        proto = self.reactor.spawned[0][0]
        proto.childDataReceived(1, b"started checking gog\n")
        proto.childDataReceived(1, b"Currently no free giveaway!\n")
        self.finish(proto, err=b"")
        result = self.successResultOf(d)
        self.assertEqual(result, ScriptResult(
            "started checking gog\nCurrently no free giveaway!\n", "", 0))
        self.assertFalse(result.failed)

    def test_nonzero_exit(self):
        d = self.runner.run("debug")
        self.finish(self.reactor.spawned[0][0], out=b"partial", err=b"boom\n", exitCode=3)
        result = self.successResultOf(d)
        self.assertEqual((result.err, result.exitCode), ("boom\n", 3))
        self.assertTrue(result.failed)

    def test_stderr_alone_is_a_failure(self):
        self.assertTrue(ScriptResult("out", "warning\n", 0).failed)
        self.assertFalse(ScriptResult("out", "  \n", 0).failed)

    def test_one_run_per_mode(self):
        self.runner.run("run")
        self.assertTrue(self.runner.isRunning("run"))
        self.assertRaises(ScriptAlreadyRunning, self.runner.run, "run")
        self.assertFalse(self.runner.isRunning("raw"))
        self.runner.run("raw")
        self.assertEqual(len(self.reactor.spawned), 2)

    def test_lock_is_shared_between_runners(self):
        self.runner.run("run")
        other = ScriptRunner("claim", self.lockdir, reactor=FakeProcessReactor())
        self.assertTrue(other.isRunning("run"))
        self.assertRaises(ScriptAlreadyRunning, other.run, "run")

    def test_lock_released_when_done(self):
        d = self.runner.run("run")
        self.finish(self.reactor.spawned[0][0], out=b"x")
        self.successResultOf(d)
        self.assertFalse(self.runner.isRunning("run"))
        self.assertFalse(os.path.lexists(self.runner.lockPath("run")))
        self.runner.run("run")

    def test_timeout_kills_process(self):
        d = self.runner.run("run")
        proto = self.reactor.spawned[0][0]
        self.reactor.advance(59)
        self.assertNoResult(d)
        self.reactor.advance(1)
        self.assertEqual(proto.transport.signals, ["KILL"])
        # still locked until the killed process is reaped
        self.assertNoResult(d)
        self.assertTrue(self.runner.isRunning("run"))
        self.assertRaises(ScriptAlreadyRunning, self.runner.run, "run")
        self.finish(proto, out=b"half", exitCode=9)
        failure = self.failureResultOf(d, ScriptTimeout)
        self.assertEqual(failure.value.timeout, 60)
        self.assertFalse(self.runner.isRunning("run"))

    def test_timeout_after_exit_waits_for_process_ended(self):
        d = self.runner.run("run")
        proto = self.reactor.spawned[0][0]
        def exited(signal):
            raise ProcessExitedAlready()
        proto.transport.signalProcess = exited
        self.reactor.advance(60)
        self.assertNoResult(d)
        self.finish(proto)
        self.failureResultOf(d, ScriptTimeout)
        self.assertFalse(self.runner.isRunning("run"))

    def test_finished_run_cancels_timeout(self):
        d = self.runner.run("run")
        self.finish(self.reactor.spawned[0][0])
        self.successResultOf(d)
        self.assertEqual(self.reactor.getDelayedCalls(), [])

    def test_spawn_failure_releases_lock(self):
        runner = ScriptRunner("missing", self.lockdir, reactor=FailingReactor())
        self.assertRaises(OSError, runner.run, "run")
        self.assertFalse(runner.isRunning("run"))
