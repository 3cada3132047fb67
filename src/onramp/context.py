# -*- test-case-name: onramp.test.test_context -*-

from twisted.internet import defer, error


class Context:
    """A cancellation scope for dial_context().

    Every Deferred handed to watch() is cancelled when cancel() is called or
    the deadline passes. Once done, err() returns the exception that caused
    it: CancelledError for cancel(), or twisted.internet.error.TimeoutError
    for an expired deadline. A done context fails new work immediately.
    """

    def __init__(self, timeout=None, reactor=None):
        self._err = None
        self._watched = set()
        self._timer = None
        if timeout is not None:
            if reactor is None:
                from twisted.internet import reactor
            self._timer = reactor.callLater(timeout, self._expire)

    @classmethod
    def background(cls):
        """A context which is never cancelled and has no deadline."""
        return cls()

    @classmethod
    def with_timeout(cls, timeout, reactor=None):
        return cls(timeout=timeout, reactor=reactor)

    def __repr__(self):
        if self._err is not None:
            return "<Context done: %r>" % (self._err,)
        return "<Context watching %d>" % len(self._watched)

    def done(self):
        return self._err is not None

    def err(self):
        return self._err

    def cancel(self):
        self._finish(defer.CancelledError("context cancelled"))

    def _expire(self):
        self._timer = None
        self._finish(error.TimeoutError("context deadline exceeded"))

    def _finish(self, err):
        if self._err is not None:
            return
        self._err = err
        if self._timer is not None and self._timer.active():
            self._timer.cancel()
        self._timer = None
        watched, self._watched = self._watched, set()
        for d in watched:
            d.cancel()

    def check(self):
        """Raise the context's error if it is already done."""
        if self._err is not None:
            raise self._err

    def watch(self, d):
        """Tie 'd' to this context: it is cancelled when the context is.
        Returns a Deferred which fails with err() in that case, and
        otherwise fires with d's result."""
        if self._err is not None:
            d.cancel()
            d.addErrback(self._translate)
            return d
        self._watched.add(d)
        def _done(res):
            self._watched.discard(d)
            return res
        d.addBoth(_done)
        d.addErrback(self._translate)
        return d

    def _translate(self, f):
        if self._err is not None and f.check(defer.CancelledError):
            raise self._err
        return f
