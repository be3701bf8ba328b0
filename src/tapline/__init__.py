"""tapline -- scheduled network interception.

Fires schedules against monitored targets, opens isolated browser
sandboxes, hooks their traffic at two visibility levels, and records every
matching request/response pair (plus the payload found at a configured
path) in the capture store.
"""

__version__ = "0.1.0"
