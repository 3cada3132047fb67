# -*- test-case-name: onramp.test.test_observer -*-

from twisted.internet import defer
from twisted.python.failure import Failure

class OneShotObserverList:
    """A one-shot event distributor: whenFired() hands out a new Deferred to
    each caller, and fire() delivers the same result to all of them, both
    those waiting now and those who ask later. Results are delivered
    synchronously, so a caller that receives a Failure must handle it."""

    def __init__(self):
        self._fired = False
        self._result = None
        self._watchers = []

    def __repr__(self):
        if self._fired:
            return "<OneShotObserverList [%s]>" % (self._result, )
        return "<OneShotObserverList [%d watchers]>" % len(self._watchers)

    def hasFired(self):
        return self._fired

    def whenFired(self):
        if self._fired:
            if isinstance(self._result, Failure):
                return defer.fail(self._result)
            return defer.succeed(self._result)
        d = defer.Deferred()
        self._watchers.append(d)
        return d

    def fire(self, result):
        assert not self._fired
        self._fired = True
        self._result = result
        watchers, self._watchers = self._watchers, []
        for w in watchers:
            if w.called:
                continue # the watcher was cancelled
            if isinstance(result, Failure):
                w.errback(result)
            else:
                w.callback(result)
        if isinstance(result, Failure):
            # every watcher got its own copy, so absorb the original
            return None
        return result

    def fireIfNotFired(self, result):
        if not self._fired:
            self.fire(result)
