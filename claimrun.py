"""
claimrun.py - run the external free game claim script for the bot.

One run per mode at a time: a FilesystemLock marker named after the mode
is held for as long as the script is alive, so a second bot process (or a
second request) sees the run in progress too.
"""

import os
import shlex
from collections import namedtuple

from twisted.internet import defer, protocol
from twisted.internet.error import ProcessDone, ProcessExitedAlready
from twisted.python import log
from twisted.python.lockfile import FilesystemLock


class ClaimError(Exception):
    pass

class ScriptAlreadyRunning(ClaimError):
    def __init__(self, mode):
        ClaimError.__init__(self, f"a {mode} check is already running")
        self.mode = mode

class ScriptTimeout(ClaimError):
    def __init__(self, mode, timeout):
        ClaimError.__init__(self, f"{mode} check timed out after {timeout}s")
        self.mode = mode
        self.timeout = timeout


class ScriptResult(namedtuple("ScriptResult", "out err exitCode")):
    @property
    def failed(self):
        return self.exitCode != 0 or bool(self.err.strip())


class _CollectingProtocol(protocol.ProcessProtocol):
    """Collect the whole of stdout/stderr and fire once the process ends."""
    def __init__(self, deferred):
        self.deferred = deferred
        self.out = []
        self.err = []
        self.timedOut = None  # ScriptTimeout once the kill has been sent

    def connectionMade(self):
        self.transport.closeStdin()

    def childDataReceived(self, childFD, data):
        if childFD == 1:
            self.out.append(data)
        elif childFD == 2:
            self.err.append(data)

    def processEnded(self, reason):
        if self.deferred.called: return
        if self.timedOut is not None:
            self.deferred.errback(self.timedOut)
            return
        if reason.check(ProcessDone):
            code = 0
        else:
            code = getattr(reason.value, "exitCode", None)
            if code is None:
                code = -1  # killed by a signal
        out = b"".join(self.out).decode("utf-8", errors="replace")
        err = b"".join(self.err).decode("utf-8", errors="replace")
        self.deferred.callback(ScriptResult(out, err, code))


class ScriptRunner:
    def __init__(self, command, lockdir, timeout=None, cwd=None, env=None, reactor=None):
        if reactor is None:
            from twisted.internet import reactor
        self.reactor = reactor
        self.args = [os.path.expanduser(a) for a in shlex.split(command)]
        self.lockdir = lockdir
        self.timeout = timeout
        self.cwd = os.path.expanduser(cwd) if cwd else None
        self.env = env
        self.running = {}  # mode -> FilesystemLock

    def lockPath(self, mode):
        return os.path.join(self.lockdir, f"claim-{mode}.lock")

    def isRunning(self, mode):
        if mode in self.running:
            return True
        lock = FilesystemLock(self.lockPath(mode))
        if lock.lock():
            lock.unlock()
            return False
        return True

    def run(self, mode):
        """Start the script for mode; fires with a ScriptResult.

        Raises ScriptAlreadyRunning straight away if mode is locked.
        """
        lock = FilesystemLock(self.lockPath(mode))
        if mode in self.running or not lock.lock():
            log.msg(f"claim: {mode} requested while already running")
            raise ScriptAlreadyRunning(mode)
        self.running[mode] = lock

        d = defer.Deferred()
        proto = _CollectingProtocol(d)
        env = self.env if self.env is not None else dict(os.environ)
        try:
            self.reactor.spawnProcess(proto, self.args[0], self.args,
                                      env=env, path=self.cwd)
        except Exception:
            self._release(mode)
            raise
        log.msg(f"claim: started {' '.join(self.args)} for {mode}")

        timer = None
        if self.timeout:
            timer = self.reactor.callLater(self.timeout, self._expire, mode, proto)

        def finished(result):
            if timer is not None and timer.active():
                timer.cancel()
            self._release(mode)
            return result
        d.addBoth(finished)
        d.addCallback(self._logResult, mode)
        return d

    def _expire(self, mode, proto):
        # the lock stays held until processEnded reports the kill
        log.msg(f"claim: {mode} exceeded {self.timeout}s, killing it")
        proto.timedOut = ScriptTimeout(mode, self.timeout)
        try:
            proto.transport.signalProcess("KILL")
        except ProcessExitedAlready:
            pass  # processEnded is already on its way

    def _release(self, mode):
        lock = self.running.pop(mode, None)
        if lock is not None and lock.locked:
            lock.unlock()

    def _logResult(self, result, mode):
        log.msg(f"claim: {mode} finished with exit code {result.exitCode}, "
                f"{len(result.out)} bytes out, {len(result.err)} bytes err")
        return result
