#!/usr/bin/env python3
# -*- coding: UTF-8 -*-
"""

*** THIS IS THE CLAIM BOT ***

claimbot.py - an IRC front end for the free game claim script.
              Allowed users ask for a run and get back which stores
              are giving a game away and whether it is already owned.

Copyright (c) 2026, the claimbot developers
All rights reserved.

Redistribution and use in source and binary forms, with or without
modification, are permitted provided that the following conditions are
met:

1. Redistributions of source code must retain the above copyright
notice, this list of conditions and the following disclaimer.

2. Redistributions in binary form must reproduce the above copyright
notice, this list of conditions and the following disclaimer in the
documentation and/or other materials provided with the distribution.

THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS
IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED
TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A
PARTICULAR PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT
HOLDER OR CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL,
SPECIAL, EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED
TO, PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR
PROFITS; OR BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF
LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING
NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE OF THIS
SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.
"""

from twisted.internet import reactor, ssl, task
from twisted.internet.protocol import ReconnectingClientFactory
from twisted.words.protocols import irc
from twisted.python import log
from twisted.python.logfile import DailyLogFile
import base64
import sys

from claimconfig import ClaimBotConfig
from claimrun import ScriptRunner, ScriptAlreadyRunning, ScriptTimeout
import claimparse

# Rate limiting constants
RATE_LIMIT_WINDOW = 60  # Rate limiting time window in seconds
RATE_LIMIT_COMMANDS = 20   # Commands per window per host
BURST_WINDOW = 1        # Burst protection: only 1 command per second window
ABUSE_THRESHOLD = 10    # Consecutive commands before abuse penalty
ABUSE_WINDOW = 30       # Time window for abuse detection (seconds)
ABUSE_PENALTY = 900     # Abuse penalty duration in seconds (15 minutes)
RESPONSE_RATE_LIMIT = 1   # Max penalty messages per 2 minutes to prevent spam
RESPONSE_RATE_WINDOW = 120  # Penalty message rate limit window (2 minutes)
STALE_BURST_TIMEOUT = 3600  # 1 hour before removing burst protection data

# Time constants
SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400
NICK_CHECK_INTERVAL = 30  # seconds between nick checks
CLEANUP_INTERVAL = 300  # seconds between rate limit cleanups

def readPassword(pwfile):
    try:
        with open(pwfile, "r") as f:
            return f.read().strip()
    except (IOError, OSError) as e:
        log.msg(f"Warning: Could not read password file {pwfile}: {e}")
        return None

class ClaimBotProtocol(irc.IRCClient):
    versionName = "claimbot.py"
    versionNum = "0.1"

    looping_calls = None
    commands = {}
    clock = reactor

    def __init__(self, config, runner, clock=None):
        if clock is not None:
            self.clock = clock
        self.config = config
        self.runner = runner
        self.nickname = config.nick
        self.username = config.username
        self.realname = config.realname
        self.password = readPassword(config.pwfile)
        self.starttime = self.clock.seconds()
        self._initializeRateLimiting()
        self._initializeCommands()

    def _initializeRateLimiting(self):
        """Initialize rate limiting data structures."""
        self.rate_limits = {}  # host -> list of command timestamps
        self.abuse_penalties = {}  # host -> penalty end timestamp
        self.consecutive_commands = {}  # host -> [command_time, command_time, ...]
        self.penalty_responses = {}  # host -> [timestamp, timestamp, ...]
        self.last_command_time = {}  # host -> timestamp of last command

    def _initializeCommands(self):
        """Initialize command handlers."""
        # Commands must be lowercase here.
        self.commands = {"start"    : self.doStart,
                         "help"     : self.doStart,
                         "run"      : self.doClaim,
                         "debug"    : self.doClaim,
                         "raw"      : self.doClaim,
                         "ping"     : self.doPing,
                         "commands" : self.doCommands,
                         "status"   : self.doStatus}

    def _startMonitoringTasks(self):
        """Start periodic housekeeping tasks."""
        self.looping_calls = {}
        # keep an eye on our nick to make sure it's right
        self.looping_calls["nick"] = task.LoopingCall(self.nickCheck)
        self.looping_calls["nick"].clock = self.clock
        self.looping_calls["nick"].start(NICK_CHECK_INTERVAL)
        self.looping_calls["cleanup"] = task.LoopingCall(self._cleanupRateLimits)
        self.looping_calls["cleanup"].clock = self.clock
        self.looping_calls["cleanup"].start(CLEANUP_INTERVAL, now=False)

    # SASL auth nonsense required if we run on AWS
    # copied from https://github.com/habnabit/txsocksx/blob/master/examples/tor-irc.py
    # irc_CAP and irc_9xx are UNDOCUMENTED.
    def connectionMade(self):
        self.sendLine('CAP REQ :sasl')
        irc.IRCClient.connectionMade(self)

    def irc_CAP(self, prefix, params):
        if params[1] != 'ACK' or params[2].split() != ['sasl']:
            log.msg('sasl not available')
            self.quit('')
            return
        sasl_string = f'{self.nickname}\0{self.nickname}\0{self.password}'
        sasl_b64_bytes = base64.b64encode(sasl_string.encode(encoding='UTF-8',errors='strict'))
        self.sendLine('AUTHENTICATE PLAIN')
        self.sendLine(f'AUTHENTICATE {sasl_b64_bytes.decode("UTF-8")}')

    def irc_903(self, prefix, params):
        self.sendLine('CAP END')

    def irc_904(self, prefix, params):
        log.msg(f'sasl auth failed {params}')
        self.quit('')
    irc_905 = irc_904

    def signedOn(self):
        self.factory.resetDelay()
        self.startHeartbeat()
        for c in self.config.channels:
            self.join(c)
        self.starttime = self.clock.seconds()
        self._startMonitoringTasks()

    def nickCheck(self):
        # also rejoin the channels here, in case we drop off for any reason
        for c in self.config.channels: self.join(c)
        if (self.nickname != self.config.nick):
            self.setNick(self.config.nick)

    def nickChanged(self, nn):
        # catch successful changing of nick from above and identify with nickserv
        if self.password:
            self.msg("NickServ", f"identify {nn} {self.password}")

    # construct and send response.
    # replyto is channel, or private nick
    # sender is original sender of query
    def respond(self, replyto, sender, message):
        if (replyto.lower() == sender.lower()): #private
            self.sendReply(replyto, message)
        else: #channel - prepend "Nick: " to message
            self.sendReply(replyto, sender + ": " + message)

    def sendReply(self, replyto, message):
        try:
            self.msg(replyto, message)
        except Exception:
            log.err(None, f"Error sending response to {replyto}")

    # Multi-line output goes out one line at a time, spaced out so
    # the server doesn't kick us for flooding.
    def respondLines(self, replyto, sender, text):
        lines = [l for l in text.splitlines() if l.strip()]
        if not lines:
            self.respond(replyto, sender, "(no output)")
            return
        self.respond(replyto, sender, lines[0])
        for i, line in enumerate(lines[1:], 1):
            self.clock.callLater(i * self.config.line_delay, self.sendReply, replyto, line)

    def isAllowed(self, sender):
        allowed = [u.lower() for u in self.config.allowed_users + self.config.admins]
        return sender.lower() in allowed

    def isAdmin(self, sender):
        return sender.lower() in [u.lower() for u in self.config.admins]

    def _checkRateLimit(self, sender, command):
        """
        Check if host is rate limited for this command.
        Returns True if command should be allowed, False if rate limited.
        """
        now = self.clock.seconds()

        # Check if host is currently under abuse penalty
        if sender in self.abuse_penalties:
            if now < self.abuse_penalties[sender]:
                return False  # Still under penalty
            # Penalty expired, clean up
            del self.abuse_penalties[sender]
            self.consecutive_commands.pop(sender, None)

        self.rate_limits[sender] = [
            timestamp for timestamp in self.rate_limits.get(sender, [])
            if now - timestamp < RATE_LIMIT_WINDOW
        ]
        if len(self.rate_limits[sender]) >= RATE_LIMIT_COMMANDS:
            return False  # Rate limited
        self.rate_limits[sender].append(now)

        # Track consecutive commands for abuse detection
        self.consecutive_commands[sender] = [
            timestamp for timestamp in self.consecutive_commands.get(sender, [])
            if now - timestamp < ABUSE_WINDOW
        ]
        self.consecutive_commands[sender].append(now)

        if len(self.consecutive_commands[sender]) >= ABUSE_THRESHOLD:
            self.abuse_penalties[sender] = now + ABUSE_PENALTY
            self.rate_limits.pop(sender, None)
            log.msg(f"Abuse penalty applied to {sender} after {command}")
            return False

        return True

    def _shouldSendPenaltyMessage(self, sender):
        """Check if we should send a rate limit penalty message."""
        now = self.clock.seconds()
        self.penalty_responses[sender] = [
            timestamp for timestamp in self.penalty_responses.get(sender, [])
            if now - timestamp < RESPONSE_RATE_WINDOW
        ]
        if len(self.penalty_responses[sender]) >= RESPONSE_RATE_LIMIT:
            return False
        self.penalty_responses[sender].append(now)
        return True

    def _checkBurstProtection(self, sender, command):
        """
        Check if host is sending commands too rapidly (burst protection).
        Returns True if command should be allowed, False if it should be silently ignored.
        """
        now = self.clock.seconds()
        if sender in self.last_command_time:
            if now - self.last_command_time[sender] < BURST_WINDOW:
                return False
        self.last_command_time[sender] = now
        return True

    def _cleanupRateLimits(self):
        """Clean up old rate limiting data to prevent memory leaks."""
        now = self.clock.seconds()
        for user in list(self.rate_limits):
            self.rate_limits[user] = [t for t in self.rate_limits[user]
                                      if now - t < RATE_LIMIT_WINDOW]
            if not self.rate_limits[user]:
                del self.rate_limits[user]
        for user in list(self.abuse_penalties):
            if now >= self.abuse_penalties[user]:
                del self.abuse_penalties[user]
                self.consecutive_commands.pop(user, None)
        for user in list(self.consecutive_commands):
            self.consecutive_commands[user] = [t for t in self.consecutive_commands[user]
                                               if now - t < ABUSE_WINDOW * 2]
            if not self.consecutive_commands[user]:
                del self.consecutive_commands[user]
        for user in list(self.penalty_responses):
            self.penalty_responses[user] = [t for t in self.penalty_responses[user]
                                            if now - t < RESPONSE_RATE_WINDOW]
            if not self.penalty_responses[user]:
                del self.penalty_responses[user]
        for user in list(self.last_command_time):
            if now - self.last_command_time[user] > STALE_BURST_TIMEOUT:
                del self.last_command_time[user]

    # implement commands here
    def doStart(self, sender, replyto, msgwords):
        self.respond(replyto, sender, f"Send {self.config.trigger}run to execute the script.")

    def doPing(self, sender, replyto, msgwords):
        self.respond(replyto, sender, "Pong! " + " ".join(msgwords[1:]))

    def doCommands(self, sender, replyto, msgwords):
        t = self.config.trigger
        commands_list = " ".join(t + c for c in ("start", "run", "debug", "raw", "ping", "commands", "status"))
        self.respond(replyto, sender, f"available commands are: {commands_list}")

    def doClaim(self, sender, replyto, msgwords):
        mode = msgwords[0].lower()
        if not self.isAllowed(sender):
            log.msg(f"claim: refused {mode} for {sender}")
            self.respond(replyto, sender, "Sorry, you are not authorized to use this command.")
            return
        try:
            d = self.runner.run(mode)
        except ScriptAlreadyRunning:
            self.respond(replyto, sender, f"A {mode} check is already running, please wait.")
            return
        except OSError as e:
            log.err(None, f"claim: could not start {mode}")
            self.respond(replyto, sender, f"Execution failed: {e}")
            return
        self.respond(replyto, sender, "Looking for free games...")
        d.addCallback(self.claimFinished, sender, replyto, mode)
        d.addErrback(self.claimFailed, sender, replyto, mode)
        return d

    def claimFinished(self, result, sender, replyto, mode):
        if not result.failed:
            self.respondLines(replyto, sender, claimparse.render(result.out, mode))
        elif result.err.strip():
            self.respondLines(replyto, sender, f"Error: {result.err.strip()}")
        else:
            self.respond(replyto, sender, f"Execution failed: exit code {result.exitCode}")

    def claimFailed(self, failure, sender, replyto, mode):
        if failure.check(ScriptTimeout):
            log.msg(f"claim: {failure.getErrorMessage()}")
        else:
            log.err(failure, f"claim: {mode} failed")
        self.respond(replyto, sender, f"Execution failed: {failure.getErrorMessage()}")

    def doStatus(self, sender, replyto, msgwords):
        if not self.isAdmin(sender):
            self.respond(replyto, sender, "Admin access required.")
            return

        # Calculate uptime
        uptime_seconds = int(self.clock.seconds() - self.starttime)
        uptime_days = uptime_seconds // SECONDS_PER_DAY
        uptime_hours = (uptime_seconds % SECONDS_PER_DAY) // SECONDS_PER_HOUR
        uptime_mins = (uptime_seconds % SECONDS_PER_HOUR) // SECONDS_PER_MINUTE

        running = [m for m in claimparse.MODES if self.runner.isRunning(m)]

        status_parts = []
        status_parts.append(f"Status: {self.nickname}")
        status_parts.append(f"Uptime: {uptime_days}d {uptime_hours}h {uptime_mins}m")
        status_parts.append(f"Running: {', '.join(running) if running else 'none'}")
        status_parts.append(f"RateLimit: {len(self.rate_limits)}")
        if self.abuse_penalties:
            status_parts.append(f"AbusePenalty: {len(self.abuse_penalties)}")
        self.respond(replyto, sender, " | ".join(status_parts))

    # Listen to the chatter
    def privmsg(self, sender, dest, message):
        # Extract both nick and hostmask for rate limiting
        sender_full = sender
        sender = sender.partition("!")[0]
        sender_host = sender_full.partition("!")[2] or sender
        trigger = self.config.trigger
        if (dest in self.config.channels): #public message
            replyto = dest
        else: #private msg
            replyto = sender
        # ignore other channel noise unless !command
        if not message.startswith(trigger):
            if (dest in self.config.channels): return
        else: # pop the trigger
            message = message[len(trigger):]
        msgwords = message.strip().split(" ")
        command = msgwords[0].lower()
        if command not in self.commands:
            return

        # Apply burst protection (use host for rate limiting)
        if not self._checkBurstProtection(sender_host, command):
            return  # Silently ignore burst commands

        if not self._checkRateLimit(sender_host, command):
            if not self._shouldSendPenaltyMessage(sender_host):
                return  # Silently ignore to prevent penalty message spam
            if sender_host in self.abuse_penalties:
                remaining = int(self.abuse_penalties[sender_host] - self.clock.seconds())
                msg = (f"Abuse penalty active: {remaining//60}m {remaining%60}s remaining. "
                       "(Triggered by spamming consecutive commands)")
                self.respond(replyto, sender, msg)
            else:
                self.respond(replyto, sender, f"Rate limit exceeded. Please wait before using {trigger}{command} again.")
            return

        log.msg(f"{sender} used {trigger}{command} in {replyto}")
        self.commands[command](sender, replyto, msgwords)

    def connectionLost(self, reason=None):
        irc.IRCClient.connectionLost(self, reason)
        if self.looping_calls is None: return
        for call in self.looping_calls.values():
            if call.running:
                call.stop()

class ClaimBotFactory(ReconnectingClientFactory):
    def __init__(self, config, runner):
        self.config = config
        self.runner = runner

    def startedConnecting(self, connector):
        log.msg('Started to connect.')

    def buildProtocol(self, addr):
        log.msg('Connected.')
        log.msg('Resetting reconnection delay')
        self.resetDelay()
        p = ClaimBotProtocol(self.config, self.runner)
        p.factory = self
        return p

    def clientConnectionLost(self, connector, reason):
        log.msg(f'Lost connection.  Reason: {reason}')
        ReconnectingClientFactory.clientConnectionLost(self, connector, reason)

    def clientConnectionFailed(self, connector, reason):
        log.msg(f'Connection failed. Reason: {reason}')
        ReconnectingClientFactory.clientConnectionFailed(self, connector,
                                                         reason)

def setupLogging(logfile, stdout=None):
    # daily rotated log file, echoed to the console
    stdout = sys.stdout if stdout is None else stdout
    log.startLogging(DailyLogFile.fromFullPath(logfile), setStdout=False)
    log.addObserver(log.FileLogObserver(stdout).emit)

def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    config = ClaimBotConfig().fetch(argv[0] if argv else None)

    setupLogging(config.logfile)

    runner = ScriptRunner(config.claim_command, config.lockdir,
                          timeout=config.claim_timeout, cwd=config.claim_cwd)

    # create factory protocol and application
    f = ClaimBotFactory(config, runner)

    # connect factory to this host and port
    if config.ssl:
        reactor.connectSSL(config.server, config.port, f, ssl.ClientContextFactory())
    else:
        reactor.connectTCP(config.server, config.port, f)

    # run bot
    reactor.run()

if __name__ == '__main__':
    main()
