# -*- test-case-name: onramp.test.test_logging -*-

import itertools
import time
import traceback
from twisted.python import failure
from twisted.logger import Logger, LogLevel

from onramp.logging.levels import NOISY, OPERATIONAL, UNUSUAL, \
     INFREQUENT, CURIOUS, WEIRD, SCARY, BAD

# hush pyflakes, these are imported to be available to other callers
_unused = [NOISY, OPERATIONAL, UNUSUAL, INFREQUENT, CURIOUS, WEIRD, SCARY, BAD]

def level_to_loglevel(level):
    if level < OPERATIONAL:
        return LogLevel.debug
    if level < WEIRD:
        return LogLevel.info
    if level < BAD:
        return LogLevel.warn
    return LogLevel.error

def format_message(e):
    try:
        if "format" in e:
            assert isinstance(e['format'], str)
            return e['format'] % e
        elif "args" in e:
            assert "message" in e
            assert isinstance(e['message'], str)
            return e['message'] % e['args']
        elif "message" in e:
            assert isinstance(e['message'], str)
            return e['message']
        else:
            return ""
    except (ValueError, TypeError, KeyError):
        return e.get('message', "[no message]") + " [formatting failed]"


class OnrampLogger:
    """I turn flog-style msg()/err() calls into twisted.logger events.

    Each event is a dict. Callers provide either message= (or a positional
    string), or format= plus keyword arguments that fill it. level= is one of
    the numeric levels from onramp.logging.levels, facility= is a
    dot-separated name which becomes the twisted.logger namespace.
    """
    DEFAULT_THRESHOLD = NOISY
    DEFAULT_FACILITY = "onramp"

    def __init__(self):
        self.seqnum = itertools.count()
        self.thresholds = {}
        self._loggers = {}
        self._immediate_observers = []

    def addImmediateObserver(self, observer):
        self._immediate_observers.append(observer)
    def removeImmediateObserver(self, observer):
        self._immediate_observers.remove(observer)

    def set_generation_threshold(self, level, facility=None):
        self.thresholds[facility] = level
    def get_generation_threshold(self, facility=None):
        if facility in self.thresholds:
            return self.thresholds[facility]
        return self.thresholds.get(None, self.DEFAULT_THRESHOLD)

    def _logger_for(self, facility):
        namespace = facility or self.DEFAULT_FACILITY
        if namespace not in self._loggers:
            self._loggers[namespace] = Logger(namespace=namespace)
        return self._loggers[namespace]

    def msg(self, *args, **kwargs):
        """
        @param parent: the event number of the most direct parent of this
                       event
        @param facility: the dot-joined facility name, or None
        @param level: the numeric severity level, like NOISY or SCARY
        @param stacktrace: True to attach a stacktrace
        @returns: the event number for this logevent, intended to be passed
                  to parent= in a subsequent call to msg()
        """
        if "num" not in kwargs:
            num = next(self.seqnum)
            kwargs['num'] = num
        else:
            num = kwargs['num']

        try:
            self._msg(*args, **kwargs)
        except Exception as e:
            errormsg = ("internal error in log._msg,"
                        " args=%r, kwargs=%r, exception=%r"
                        % (args, kwargs, e))
            self._logger_for("onramp.internal-error").error(
                "{onramp_message}", onramp_message=errormsg)
        return num

    def _msg(self, *args, **kwargs):
        facility = kwargs.get('facility')
        if "level" not in kwargs:
            kwargs['level'] = OPERATIONAL
        level = kwargs["level"]
        if level < self.get_generation_threshold(facility):
            return # not worth logging

        event = kwargs
        if "format" in event:
            pass
        elif "message" in event:
            event['message'] = str(event['message'])
        elif args:
            event['message'], posargs = str(args[0]), args[1:]
            if posargs:
                event['args'] = posargs
        else:
            event['message'] = ""

        if "time" not in event:
            event['time'] = time.time()
        if event.get('stacktrace', False) is True:
            event['stacktrace'] = traceback.format_stack()

        for o in self._immediate_observers:
            o(event)

        text = format_message(event)
        if event.get("why"):
            text = "%s: %s" % (event["why"], text) if text else event["why"]
        fields = {"onramp_message": text,
                  "onramp_level": level,
                  "onramp_num": event["num"]}
        if "failure" in event:
            fields["log_failure"] = event["failure"]
        self._logger_for(facility).emit(level_to_loglevel(level),
                                        "{onramp_message}", **fields)

    def err(self, _stuff=None, _why=None, **kw):
        """
        Write a failure to the log.
        """
        kw.setdefault("level", WEIRD)
        if _stuff is None:
            _stuff = failure.Failure()
        if isinstance(_stuff, failure.Failure):
            return self.msg(failure=_stuff, why=_why, isError=1, **kw)
        elif isinstance(_stuff, Exception):
            return self.msg(failure=failure.Failure(_stuff), why=_why,
                            isError=1, **kw)
        else:
            return self.msg(repr(_stuff), why=_why, isError=1, **kw)


theLogger = OnrampLogger()

msg = theLogger.msg
err = theLogger.err
set_generation_threshold = theLogger.set_generation_threshold
get_generation_threshold = theLogger.get_generation_threshold
