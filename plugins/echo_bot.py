"""
Example plugin: replies to "/echo <text>" and counts every event it sees.

Drop files like this one into the plugins directory; the bridge imports
each of them at startup.
"""

import logging
import threading

EVENT_COUNTER = {"count": 0}
COUNTER_LOCK = threading.Lock()


def IsEchoCommand(event) -> bool:
    return event.eventType in ("MESSAGE_PRIVATE", "MESSAGE_GROUP") and event.TextMessage().startswith("/echo ")


def EchoReplier(event) -> str:
    return event.TextMessage()[len("/echo "):]


def EventCounter(event) -> None:
    with COUNTER_LOCK:
        EVENT_COUNTER["count"] += 1


def StartupAnnouncer() -> None:
    logging.getLogger(__name__).info("echo plugin ready")


MANIFEST = {
    "name": "echo",
    "filters": {"cmd": "IsEchoCommand"},
    "handlers": {"cmd": "EchoReplier", "count": "EventCounter"},
    "loaded": "StartupAnnouncer",
}
