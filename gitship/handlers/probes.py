import datetime
import kopf

from gitship.handlers.gitshipapp import wakeups


# Liveness probe
@kopf.on.probe(id="now")
def get_current_timestamp(**kwargs):
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@kopf.on.probe(id="apps")
def count_tracked_apps(**kwargs):
    return len(wakeups)
