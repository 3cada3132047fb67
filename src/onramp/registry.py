# -*- test-case-name: onramp.test.test_registry -*-

import threading
from twisted.internet import defer

from onramp.logging import log
from onramp.logging.log import UNUSUAL


class SessionRegistry:
    """A process-wide table of name -> session.

    'factory' is called with a name to build a session the first time that
    name is asked for. Entries stay for the life of the process: closing a
    session, or a session failing, does not remove it. The table itself is
    guarded by a lock, so it may be consulted from other threads, but the
    sessions in it belong to the reactor thread.
    """

    def __init__(self, factory, facility="onramp.registry"):
        self._factory = factory
        self._facility = facility
        self._lock = threading.Lock()
        self._sessions = {}

    def __repr__(self):
        return "<SessionRegistry %s>" % ",".join(self.names())

    def __contains__(self, name):
        with self._lock:
            return name in self._sessions

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def names(self):
        with self._lock:
            return sorted(self._sessions)

    def get(self, name):
        with self._lock:
            return self._sessions.get(name)

    def get_or_create(self, name):
        with self._lock:
            s = self._sessions.get(name)
            if s is None:
                s = self._factory(name)
                self._sessions[name] = s
                log.msg(format="registered session %(name)s", name=name,
                        facility=self._facility)
            return s

    def close_one(self, name):
        """Close the named session. Unknown names are ignored."""
        s = self.get(name)
        if s is None:
            return defer.succeed(None)
        log.msg(format="closing %(name)s", name=name,
                facility=self._facility)
        return s.close()

    def close_all(self):
        """Close every session. A session that fails to close is logged, and
        does not stop the others from being closed."""
        with self._lock:
            items = sorted(self._sessions.items())
        dl = []
        for name, s in items:
            d = defer.maybeDeferred(s.close)
            d.addErrback(log.err, "error closing %s" % name,
                         facility=self._facility, level=UNUSUAL)
            dl.append(d)
        d = defer.DeferredList(dl)
        d.addCallback(lambda _: None)
        return d
